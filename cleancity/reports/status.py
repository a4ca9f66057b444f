"""
CleanCity - Report Status State Machine
Owns a report's current status and the legal transitions between statuses.

    OPEN -> ASSIGNED -> IN_PROGRESS -> VERIFIED -> RESOLVED

Two backward edges exist: ASSIGNED -> OPEN (unassign) and
VERIFIED -> ASSIGNED (admin rejection). RESOLVED is terminal.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from cleancity.core.clock import Clock
from cleancity.core.errors import (
    ForbiddenError, NotFoundError, StateError, ValidationError
)
from cleancity.database.connection import DatabaseConnection
from cleancity.database.models import Report, ReportStatus, Worker
from cleancity.events.bus import DomainEvent, EventBus, EventKind

logger = logging.getLogger(__name__)


# Legal targets for each status
VALID_TRANSITIONS: Dict[ReportStatus, FrozenSet[ReportStatus]] = {
    ReportStatus.OPEN: frozenset({ReportStatus.ASSIGNED}),
    ReportStatus.ASSIGNED: frozenset({ReportStatus.IN_PROGRESS, ReportStatus.OPEN}),
    ReportStatus.IN_PROGRESS: frozenset({ReportStatus.VERIFIED}),
    ReportStatus.VERIFIED: frozenset({ReportStatus.RESOLVED, ReportStatus.ASSIGNED}),
    ReportStatus.RESOLVED: frozenset(),
}

STATUS_ORDER = (
    ReportStatus.OPEN,
    ReportStatus.ASSIGNED,
    ReportStatus.IN_PROGRESS,
    ReportStatus.VERIFIED,
    ReportStatus.RESOLVED,
)

# Timestamp column written when a report enters a status
STAGE_TIMESTAMPS: Dict[ReportStatus, str] = {
    ReportStatus.ASSIGNED: "assigned_at",
    ReportStatus.IN_PROGRESS: "in_progress_at",
    ReportStatus.VERIFIED: "verified_at",
    ReportStatus.RESOLVED: "resolved_at",
}


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of validating a transition."""
    ok: bool
    current: ReportStatus
    target: ReportStatus
    reason: Optional[str] = None


def validate_transition(current, target) -> TransitionResult:
    """
    Check a transition against the adjacency table.

    Args:
        current: Current status (enum or value)
        target: Requested status (enum or value)

    Returns:
        TransitionResult; ``reason`` is set when the transition is illegal
    """
    current = ReportStatus(current)
    target = ReportStatus(target)

    if current == target:
        return TransitionResult(False, current, target, f"Report is already {current.value}")

    allowed = VALID_TRANSITIONS[current]
    if not allowed:
        return TransitionResult(
            False, current, target, f"Report is {current.value}; no further transitions allowed"
        )

    if target not in allowed:
        return TransitionResult(
            False, current, target,
            f"Invalid status transition from {current.value} to {target.value}"
        )

    return TransitionResult(True, current, target)


def is_terminal(status) -> bool:
    return not VALID_TRANSITIONS[ReportStatus(status)]


def next_status(status) -> Optional[ReportStatus]:
    """Next status on the forward path, or None for RESOLVED."""
    index = STATUS_ORDER.index(ReportStatus(status))
    if index + 1 < len(STATUS_ORDER):
        return STATUS_ORDER[index + 1]
    return None


def load_report_for_update(session: Session, report_id: str) -> Report:
    """Load a report row under a row lock, or raise NotFoundError."""
    report = (
        session.query(Report)
        .filter(Report.id == report_id)
        .with_for_update()
        .one_or_none()
    )
    if report is None:
        raise NotFoundError(f"Report {report_id} not found")
    return report


def apply_transition(
    session: Session,
    report: Report,
    target: ReportStatus,
    now: datetime,
    worker_id: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> DomainEvent:
    """
    Move a locked report to ``target`` inside the caller's transaction.

    The write is conditional on the status the caller observed, so a
    concurrent writer that got there first makes this raise StateError.

    Args:
        session: Open session (the caller's unit of work)
        report: Report loaded with ``load_report_for_update``
        target: Requested status
        now: Timestamp for the stage column
        worker_id: Worker bound on OPEN -> ASSIGNED
        actor_id: Who asked for the transition (recorded on the event)

    Returns:
        Status-changed event to publish after commit
    """
    current = ReportStatus(report.status)
    result = validate_transition(current, target)
    if not result.ok:
        raise StateError(result.reason, current_status=current.value, target_status=target.value)

    values = {"status": target}
    column = STAGE_TIMESTAMPS.get(target)

    if current == ReportStatus.ASSIGNED and target == ReportStatus.OPEN:
        values.update(assigned_at=None, assigned_worker_id=None)
    elif current == ReportStatus.VERIFIED and target == ReportStatus.ASSIGNED:
        # Rejection restarts the cycle; the worker keeps the assignment
        values.update(verified_at=None, in_progress_at=None)
    else:
        values[column] = now
        if target == ReportStatus.ASSIGNED:
            values["assigned_worker_id"] = worker_id

    outcome = session.execute(
        update(Report)
        .where(Report.id == report.id, Report.status == current)
        .values(**values)
        .execution_options(synchronize_session="evaluate")
    )
    if outcome.rowcount != 1:
        raise StateError(
            "Report status changed concurrently, reload and retry",
            current_status=current.value,
            target_status=target.value,
        )

    logger.info(f"Report {report.id}: {current.value} -> {target.value}")

    return DomainEvent(
        kind=EventKind.REPORT_STATUS_CHANGED,
        report_id=report.id,
        device_id=report.device_id,
        payload={
            "from": current.value,
            "to": target.value,
            "actor_id": actor_id,
            "worker_id": values.get("assigned_worker_id", report.assigned_worker_id),
        },
        occurred_at=now,
    )


class StatusMachine:
    """Report status transitions as standalone units of work."""

    def __init__(
        self,
        db: DatabaseConnection,
        clock: Optional[Clock] = None,
        events: Optional[EventBus] = None
    ):
        self.db = db
        self.clock = clock or Clock()
        self.events = events or EventBus()

    def transition(self, report_id: str, target, actor_id: Optional[str] = None) -> Report:
        """
        Transition a report in its own transaction.

        Args:
            report_id: Report ID
            target: Requested status (enum or value)
            actor_id: Acting user; for OPEN -> ASSIGNED this is the worker
                the report gets bound to

        Returns:
            Updated report

        Raises:
            NotFoundError: Report (or assigned worker) does not exist
            StateError: Transition is illegal or lost a race
        """
        try:
            target = ReportStatus(target)
        except ValueError:
            raise ValidationError(f"Unknown status: {target}", field="status")

        with self.db.get_session() as session:
            report = load_report_for_update(session, report_id)

            worker_id = None
            if report.status == ReportStatus.OPEN and target == ReportStatus.ASSIGNED:
                worker_id = self._require_active_worker(session, actor_id)

            event = apply_transition(
                session, report, target, self.clock.now(),
                worker_id=worker_id, actor_id=actor_id,
            )

        self.events.publish(event)
        return report

    def assign(self, report_id: str, worker_id: str) -> Report:
        return self.transition(report_id, ReportStatus.ASSIGNED, actor_id=worker_id)

    def unassign(self, report_id: str, actor_id: Optional[str] = None) -> Report:
        return self.transition(report_id, ReportStatus.OPEN, actor_id=actor_id)

    def get_report(self, report_id: str) -> Report:
        with self.db.get_session() as session:
            report = session.get(Report, report_id)
            if report is None:
                raise NotFoundError(f"Report {report_id} not found")
            return report

    @staticmethod
    def _require_active_worker(session: Session, worker_id: Optional[str]) -> str:
        if not worker_id:
            raise ValidationError("Worker is required to assign a report", field="worker_id")
        worker = session.get(Worker, worker_id)
        if worker is None:
            raise NotFoundError(f"Worker {worker_id} not found")
        if not worker.is_active:
            raise ForbiddenError(f"Worker {worker_id} is not active")
        return worker.id
