"""
CleanCity - Notifications
Turns workflow events into citizen/worker notification messages.

Delivery transports (push, SMS) live outside this service; the notifier
builds the message and hands it to a sender callable, logging it by default.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional

from .bus import DomainEvent, EventBus, EventKind

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """Outgoing notification."""
    recipient: str
    title: str
    body: str
    data: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient": self.recipient,
            "title": self.title,
            "body": self.body,
            "data": self.data,
        }


# Message shown to the submitting citizen when their report changes status
STATUS_MESSAGES: Dict[str, str] = {
    "assigned": "A sanitation worker has been assigned to your report",
    "in_progress": "Cleanup has started at your reported location",
    "verified": "Cleanup completed and awaiting approval",
    "resolved": "Your report has been resolved. Thank you!",
    "open": "Your report is back in the queue",
}

# Most recent notifications kept in memory; older ones are dropped
RECENT_LIMIT = 50


class LoggingNotifier:
    """Event subscriber that builds notifications and sends them."""

    def __init__(self, sender: Optional[Callable[[Notification], None]] = None):
        """
        Initialize notifier.

        Args:
            sender: Delivery callable (default: log the notification)
        """
        self.sender = sender or self._log_notification
        self.recent: Deque[Notification] = deque(maxlen=RECENT_LIMIT)

    def attach(self, bus: EventBus) -> None:
        """Subscribe to the events that produce notifications."""
        bus.subscribe(self.handle, EventKind.REPORT_STATUS_CHANGED)
        bus.subscribe(self.handle, EventKind.VERIFICATION_REJECTED)
        bus.subscribe(self.handle, EventKind.POINTS_AWARDED)

    def handle(self, event: DomainEvent) -> None:
        notification = self.build(event)
        if notification is None:
            return
        self.sender(notification)
        self.recent.append(notification)

    def build(self, event: DomainEvent) -> Optional[Notification]:
        """Map an event to a notification, or None if nobody is told."""
        if event.kind == EventKind.REPORT_STATUS_CHANGED:
            status = event.payload.get("to")
            body = STATUS_MESSAGES.get(status)
            if body is None or not event.device_id:
                return None
            return Notification(
                recipient=event.device_id,
                title="Report Update",
                body=body,
                data={"report_id": event.report_id, "status": status},
            )

        if event.kind == EventKind.VERIFICATION_REJECTED:
            worker_id = event.payload.get("worker_id")
            if not worker_id:
                return None
            reason = event.payload.get("reason") or "No reason given"
            return Notification(
                recipient=worker_id,
                title="Cleanup Rejected",
                body=f"Please redo the cleanup: {reason}",
                data={"report_id": event.report_id},
            )

        if event.kind == EventKind.POINTS_AWARDED:
            points = event.payload.get("points", 0)
            return Notification(
                recipient=event.device_id,
                title="Points Earned",
                body=f"You earned {points} points for a resolved report",
                data={"report_id": event.report_id, "points": points},
            )

        return None

    @staticmethod
    def _log_notification(notification: Notification) -> None:
        logger.info(
            f"Notify {notification.recipient}: {notification.title} - {notification.body}"
        )
