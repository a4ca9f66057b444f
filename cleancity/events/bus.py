"""
CleanCity - Domain Events
In-process publish/subscribe for workflow events.

Events are published only after the unit of work that produced them has
committed, so subscribers never observe rolled-back state.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from cleancity.core.clock import utcnow

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Workflow event types."""
    REPORT_SUBMITTED = "report.submitted"
    REPORT_STATUS_CHANGED = "report.status_changed"
    VERIFICATION_APPROVED = "verification.approved"
    VERIFICATION_REJECTED = "verification.rejected"
    POINTS_AWARDED = "points.awarded"


@dataclass
class DomainEvent:
    """Something that happened to a report, verification or ledger."""
    kind: EventKind
    report_id: Optional[str] = None
    device_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "report_id": self.report_id,
            "device_id": self.device_id,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
        }


Subscriber = Callable[[DomainEvent], None]


class EventBus:
    """
    Synchronous event dispatcher.

    A failing subscriber is logged and skipped; it never fails the
    operation that published the event.
    """

    def __init__(self):
        self._subscribers: Dict[Optional[EventKind], List[Subscriber]] = {}
        self.history: List[DomainEvent] = []
        self.keep_history = False

    def subscribe(self, handler: Subscriber, kind: Optional[EventKind] = None) -> None:
        """
        Register a handler.

        Args:
            handler: Callable receiving the event
            kind: Only deliver this event type (default: all)
        """
        self._subscribers.setdefault(kind, []).append(handler)

    def publish(self, event: DomainEvent) -> int:
        """
        Deliver an event to matching subscribers.

        Returns:
            Number of subscribers that handled the event without error
        """
        if self.keep_history:
            self.history.append(event)

        handlers = self._subscribers.get(None, []) + self._subscribers.get(event.kind, [])
        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    f"Event subscriber failed for {event.kind.value} "
                    f"(report={event.report_id})"
                )
        return delivered

    def publish_all(self, events: List[DomainEvent]) -> None:
        for event in events:
            self.publish(event)
