"""
CleanCity - Field Verification Service
Worker-side start/complete of a cleanup with before/after proof.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from cleancity.core.clock import Clock
from cleancity.core.config import Settings, settings as default_settings
from cleancity.core.errors import (
    ForbiddenError,
    GeofenceError,
    NotFoundError,
    StateError,
    TimingError,
    ValidationError,
)
from cleancity.core.geo_utils import GeoLocation, is_valid_coordinate
from cleancity.database.connection import DatabaseConnection
from cleancity.database.models import (
    ApprovalStatus, Report, ReportStatus, Verification
)
from cleancity.events.bus import EventBus
from cleancity.reports.status import apply_transition, load_report_for_update
from cleancity.verification.rules import check_proximity, check_timing

logger = logging.getLogger(__name__)


class VerificationService:
    """
    Starts and completes field verifications.

    Each operation checks preconditions, applies the business rule and
    writes inside a single transaction with the report row locked.
    """

    def __init__(
        self,
        db: DatabaseConnection,
        clock: Optional[Clock] = None,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None
    ):
        self.db = db
        self.clock = clock or Clock()
        self.events = events or EventBus()
        self.settings = settings or default_settings

    def start_task(
        self,
        report_id: str,
        worker_id: str,
        worker_location: GeoLocation,
        before_photo_url: str
    ) -> Verification:
        """
        Start cleanup: record the before photo and move the report to IN_PROGRESS.

        Args:
            report_id: Report being cleaned
            worker_id: Worker starting the task
            worker_location: Worker's GPS fix when taking the before photo
            before_photo_url: Stored before photo reference

        Returns:
            The new pending verification

        Raises:
            NotFoundError: Unknown report
            StateError: Report is not ASSIGNED
            ForbiddenError: Report is assigned to another worker
            GeofenceError: Worker is too far from the report
        """
        if worker_location is None or not is_valid_coordinate(worker_location.lat, worker_location.lng):
            raise ValidationError("Valid worker location is required", field="location")
        if not before_photo_url or not before_photo_url.strip():
            raise ValidationError("Before photo is required", field="before_photo_url")

        with self.db.get_session() as session:
            report = load_report_for_update(session, report_id)

            if report.status != ReportStatus.ASSIGNED:
                raise StateError(
                    f"Cannot start task. Report status is {report.status.value}, "
                    f"expected {ReportStatus.ASSIGNED.value}",
                    current_status=report.status.value,
                    target_status=ReportStatus.IN_PROGRESS.value,
                )
            if report.assigned_worker_id != worker_id:
                raise ForbiddenError("Report is not assigned to this worker")

            proximity = check_proximity(
                worker_location,
                GeoLocation(report.latitude, report.longitude),
                self.settings.max_distance_from_report_meters,
            )
            if not proximity.within:
                logger.info(
                    f"Worker {worker_id} outside geofence for report {report_id}: "
                    f"{proximity.distance_meters:.1f} m"
                )
                raise GeofenceError(proximity.distance_meters, proximity.max_allowed_meters)

            now = self.clock.now()
            event = apply_transition(
                session, report, ReportStatus.IN_PROGRESS, now, actor_id=worker_id
            )

            verification = Verification(
                report_id=report.id,
                worker_id=worker_id,
                before_photo_url=before_photo_url.strip(),
                started_at=now,
                worker_latitude=worker_location.lat,
                worker_longitude=worker_location.lng,
                worker_accuracy=worker_location.accuracy,
                distance_meters=round(proximity.distance_meters, 2),
                approval_status=ApprovalStatus.PENDING,
            )
            session.add(verification)
            session.flush()

        logger.info(f"Task started: report={report_id} worker={worker_id} verification={verification.id}")
        self.events.publish(event)
        return verification

    def complete_task(self, report_id: str, worker_id: str, after_photo_url: str) -> Verification:
        """
        Complete cleanup: record the after photo and move the report to VERIFIED.

        Returns:
            The verification with ``time_spent_minutes`` set

        Raises:
            NotFoundError: Unknown report
            StateError: Report is not IN_PROGRESS or has no pending verification
            ForbiddenError: The pending verification belongs to another worker
            TimingError: Elapsed time outside the allowed window
        """
        if not after_photo_url or not after_photo_url.strip():
            raise ValidationError("After photo is required", field="after_photo_url")

        with self.db.get_session() as session:
            report = load_report_for_update(session, report_id)

            if report.status != ReportStatus.IN_PROGRESS:
                raise StateError(
                    f"Cannot complete task. Report status is {report.status.value}, "
                    f"expected {ReportStatus.IN_PROGRESS.value}",
                    current_status=report.status.value,
                    target_status=ReportStatus.VERIFIED.value,
                )

            verification = self._pending_verification(session, report_id)
            if verification is None:
                raise StateError("No active verification found for this report")
            if verification.worker_id != worker_id:
                raise ForbiddenError("Verification belongs to another worker")

            now = self.clock.now()
            timing = check_timing(
                verification.started_at,
                now,
                self.settings.min_minutes_between_photos,
                self.settings.max_minutes_between_photos,
            )
            if not timing.within:
                logger.info(
                    f"Timing rejected for report {report_id}: {timing.elapsed_minutes:.1f} min"
                )
                raise TimingError(timing.elapsed_minutes, timing.min_minutes, timing.max_minutes)

            event = apply_transition(
                session, report, ReportStatus.VERIFIED, now, actor_id=worker_id
            )

            verification.after_photo_url = after_photo_url.strip()
            verification.completed_at = now
            verification.time_spent_minutes = timing.time_spent_minutes

        logger.info(
            f"Task completed: report={report_id} time_spent={verification.time_spent_minutes} min"
        )
        self.events.publish(event)
        return verification

    def get_verification_for_report(self, report_id: str) -> Optional[Verification]:
        """Most recent verification for a report, or None."""
        with self.db.get_session() as session:
            if session.get(Report, report_id) is None:
                raise NotFoundError(f"Report {report_id} not found")
            return (
                session.query(Verification)
                .filter(Verification.report_id == report_id)
                .order_by(Verification.started_at.desc())
                .first()
            )

    def list_verifications_for_report(self, report_id: str) -> List[Verification]:
        """All verifications for a report, oldest first (rejected ones included)."""
        with self.db.get_session() as session:
            return (
                session.query(Verification)
                .filter(Verification.report_id == report_id)
                .order_by(Verification.started_at)
                .all()
            )

    @staticmethod
    def _pending_verification(session: Session, report_id: str) -> Optional[Verification]:
        return (
            session.query(Verification)
            .filter(
                Verification.report_id == report_id,
                Verification.approval_status == ApprovalStatus.PENDING,
            )
            .order_by(Verification.started_at.desc())
            .with_for_update()
            .first()
        )
