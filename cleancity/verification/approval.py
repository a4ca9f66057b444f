"""
CleanCity - Approval Service
Administrative gate that resolves a verified report or sends it back.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cleancity.core.clock import Clock
from cleancity.core.errors import (
    AlreadyApprovedError,
    AlreadyRejectedError,
    CleanCityError,
    NotFoundError,
    StateError,
)
from cleancity.database.connection import DatabaseConnection
from cleancity.database.models import (
    ApprovalStatus, PointReason, Report, ReportStatus, Verification, Worker
)
from cleancity.events.bus import DomainEvent, EventBus, EventKind
from cleancity.points.ledger import PointsLedger
from cleancity.reports.status import apply_transition, load_report_for_update

logger = logging.getLogger(__name__)


@dataclass
class ApprovalResult:
    """Outcome of an approval decision."""
    verification_id: str
    report_id: str
    new_status: ReportStatus
    approval_status: ApprovalStatus
    points_awarded: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verification_id": self.verification_id,
            "report_id": self.report_id,
            "new_status": self.new_status.value,
            "approval_status": self.approval_status.value,
            "points_awarded": self.points_awarded,
        }


class ApprovalService:
    """
    Approves or rejects completed verifications.

    Approval commits the resolution first and credits points afterwards;
    a failed credit leaves the report resolved with ``points_awarded == 0``
    for ``PointsLedger.reconcile`` to pick up.
    """

    def __init__(
        self,
        db: DatabaseConnection,
        ledger: PointsLedger,
        clock: Optional[Clock] = None,
        events: Optional[EventBus] = None
    ):
        self.db = db
        self.ledger = ledger
        self.clock = clock or Clock()
        self.events = events or EventBus()

    def approve(self, verification_id: str, admin_id: str) -> ApprovalResult:
        """
        Approve a verification and resolve its report.

        Raises:
            NotFoundError: Unknown verification
            AlreadyApprovedError, AlreadyRejectedError: Already decided
            StateError: Report is not VERIFIED
        """
        now = self.clock.now()

        with self.db.get_session() as session:
            verification, report = self._load_for_decision(session, verification_id)

            self._decide(session, verification, ApprovalStatus.APPROVED, admin_id, now)
            status_event = apply_transition(
                session, report, ReportStatus.RESOLVED, now, actor_id=admin_id
            )
            device_id = report.device_id
            severity = report.severity

        logger.info(f"Verification {verification_id} approved by {admin_id}")
        self.events.publish(DomainEvent(
            kind=EventKind.VERIFICATION_APPROVED,
            report_id=report.id,
            device_id=device_id,
            payload={"verification_id": verification_id, "admin_id": admin_id},
            occurred_at=now,
        ))
        self.events.publish(status_event)

        points = 0
        try:
            points = self.ledger.award(
                device_id, report.id, PointReason.REPORT_VERIFIED, severity
            )
        except (CleanCityError, SQLAlchemyError):
            logger.exception(
                f"Failed to award points for report {report.id}; "
                f"approval stands and the credit is left for reconciliation"
            )

        return ApprovalResult(
            verification_id=verification_id,
            report_id=report.id,
            new_status=ReportStatus.RESOLVED,
            approval_status=ApprovalStatus.APPROVED,
            points_awarded=points,
        )

    def reject(
        self,
        verification_id: str,
        admin_id: str,
        reason: Optional[str] = None
    ) -> ApprovalResult:
        """
        Reject a verification; the report returns to its worker as ASSIGNED.

        Raises:
            NotFoundError: Unknown verification
            AlreadyApprovedError, AlreadyRejectedError: Already decided
            StateError: Report is not VERIFIED
        """
        now = self.clock.now()
        reason = reason.strip() if reason and reason.strip() else None

        with self.db.get_session() as session:
            verification, report = self._load_for_decision(session, verification_id)

            self._decide(
                session, verification, ApprovalStatus.REJECTED, admin_id, now, reason=reason
            )
            status_event = apply_transition(
                session, report, ReportStatus.ASSIGNED, now, actor_id=admin_id
            )
            worker_id = verification.worker_id

        logger.info(f"Verification {verification_id} rejected by {admin_id}: {reason}")
        self.events.publish(DomainEvent(
            kind=EventKind.VERIFICATION_REJECTED,
            report_id=report.id,
            device_id=report.device_id,
            payload={
                "verification_id": verification_id,
                "admin_id": admin_id,
                "worker_id": worker_id,
                "reason": reason,
            },
            occurred_at=now,
        ))
        self.events.publish(status_event)

        return ApprovalResult(
            verification_id=verification_id,
            report_id=report.id,
            new_status=ReportStatus.ASSIGNED,
            approval_status=ApprovalStatus.REJECTED,
        )

    def _load_for_decision(self, session: Session, verification_id: str):
        """Lock the report row, then the verification row."""
        report_id = session.scalar(
            select(Verification.report_id).where(Verification.id == verification_id)
        )
        if report_id is None:
            raise NotFoundError(f"Verification {verification_id} not found")

        report = load_report_for_update(session, report_id)
        verification = (
            session.query(Verification)
            .filter(Verification.id == verification_id)
            .with_for_update()
            .one_or_none()
        )
        if verification is None:
            raise NotFoundError(f"Verification {verification_id} not found")

        self._ensure_undecided(verification.approval_status, verification_id)

        if report.status != ReportStatus.VERIFIED:
            raise StateError(
                f"Report status is {report.status.value}, expected {ReportStatus.VERIFIED.value}",
                current_status=report.status.value,
            )
        return verification, report

    def _decide(
        self,
        session: Session,
        verification: Verification,
        decision: ApprovalStatus,
        admin_id: str,
        now: datetime,
        reason: Optional[str] = None
    ) -> None:
        """Flip a pending verification to ``decision``; only one caller wins."""
        outcome = session.execute(
            update(Verification)
            .where(
                Verification.id == verification.id,
                Verification.approval_status == ApprovalStatus.PENDING,
            )
            .values(
                approval_status=decision,
                decided_by=admin_id,
                decided_at=now,
                rejection_reason=reason,
            )
            .execution_options(synchronize_session="evaluate")
        )
        if outcome.rowcount != 1:
            current = session.scalar(
                select(Verification.approval_status).where(Verification.id == verification.id)
            )
            self._ensure_undecided(current, verification.id)
            raise StateError("Verification changed concurrently, reload and retry")

    @staticmethod
    def _ensure_undecided(status, verification_id: str) -> None:
        if status == ApprovalStatus.APPROVED:
            raise AlreadyApprovedError(verification_id)
        if status == ApprovalStatus.REJECTED:
            raise AlreadyRejectedError(verification_id)

    # =========================================================================
    # Review queue
    # =========================================================================

    def list_pending(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        """Completed verifications awaiting a decision, oldest completion first."""
        limit = max(1, min(limit, 100))
        offset = max(0, offset)

        with self.db.get_session() as session:
            rows = (
                session.query(Verification, Report, Worker.name)
                .join(Report, Verification.report_id == Report.id)
                .outerjoin(Worker, Verification.worker_id == Worker.id)
                .filter(
                    Verification.approval_status == ApprovalStatus.PENDING,
                    Verification.completed_at.isnot(None),
                )
                .order_by(Verification.completed_at, Verification.id)
                .limit(limit)
                .offset(offset)
                .all()
            )

        pending = []
        for verification, report, worker_name in rows:
            item = verification.to_dict()
            item.update({
                "worker_name": worker_name,
                "report_photo_url": report.photo_url,
                "report_location": {"lat": report.latitude, "lng": report.longitude},
                "report_severity": report.severity.value if report.severity else None,
                "report_description": report.description,
                "report_created_at": report.created_at.isoformat(),
                "device_id": report.device_id,
            })
            pending.append(item)
        return pending

    def stats(self) -> Dict[str, Any]:
        """Queue size, today's decisions and average time to resolution."""
        start_of_day = datetime.combine(self.clock.now().date(), datetime.min.time())

        with self.db.get_session() as session:
            counts = dict(
                session.query(Verification.approval_status, func.count())
                .filter(
                    (
                        (Verification.approval_status == ApprovalStatus.PENDING)
                        & Verification.completed_at.isnot(None)
                    )
                    | (Verification.decided_at >= start_of_day)
                )
                .group_by(Verification.approval_status)
                .all()
            )
            durations = (
                session.query(Report.resolved_at, Verification.completed_at)
                .join(Verification, Verification.report_id == Report.id)
                .filter(
                    Verification.approval_status == ApprovalStatus.APPROVED,
                    Report.resolved_at.isnot(None),
                    Verification.completed_at.isnot(None),
                )
                .all()
            )

        hours = [
            (resolved_at - completed_at).total_seconds() / 3600
            for resolved_at, completed_at in durations
        ]
        return {
            "pending_count": counts.get(ApprovalStatus.PENDING, 0),
            "approved_today": counts.get(ApprovalStatus.APPROVED, 0),
            "rejected_today": counts.get(ApprovalStatus.REJECTED, 0),
            "avg_approval_hours": round(sum(hours) / len(hours), 2) if hours else 0.0,
        }
