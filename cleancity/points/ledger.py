"""
CleanCity - Points Ledger
Gamification scoring with exactly-once crediting per resolved report.
"""

import hashlib
import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cleancity.core.clock import Clock
from cleancity.core.constants import (
    BADGE_THRESHOLDS,
    LEADERBOARD_HASH_LENGTH,
    MIN_STREAK_FOR_BONUS,
    PIONEER_RADIUS_METERS,
    POINTS_FIRST_IN_AREA,
    POINTS_PER_STREAK_DAY,
    POINTS_REPORT_VERIFIED,
    SEVERITY_BONUS,
)
from cleancity.core.errors import CleanCityError, NotFoundError, StateError, ValidationError
from cleancity.core.geo_utils import BoundingBox, haversine_distance
from cleancity.database.connection import DatabaseConnection
from cleancity.database.models import (
    Citizen, PointReason, PointsHistory, Report, ReportStatus
)
from cleancity.events.bus import DomainEvent, EventBus, EventKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PointsBreakdown:
    """How a credit was computed."""
    base: int
    severity_bonus: int
    pioneer_bonus: int
    streak_bonus: int

    @property
    def total(self) -> int:
        return self.base + self.severity_bonus + self.pioneer_bonus + self.streak_bonus

    def to_dict(self) -> Dict[str, int]:
        data = asdict(self)
        data["total"] = self.total
        return data


# =============================================================================
# Pure scoring rules
# =============================================================================

def calculate_points(
    severity: Optional[str],
    is_first_in_area: bool,
    streak_days: int
) -> PointsBreakdown:
    """
    Points for one resolved report.

    Args:
        severity: low, medium, high or None
        is_first_in_area: No other resolved report nearby
        streak_days: Consecutive submission days including this report

    Returns:
        PointsBreakdown
    """
    if severity is not None and hasattr(severity, "value"):
        severity = severity.value

    streak_bonus = 0
    if streak_days >= MIN_STREAK_FOR_BONUS:
        streak_bonus = streak_days * POINTS_PER_STREAK_DAY

    return PointsBreakdown(
        base=POINTS_REPORT_VERIFIED,
        severity_bonus=SEVERITY_BONUS.get(severity, 0),
        pioneer_bonus=POINTS_FIRST_IN_AREA if is_first_in_area else 0,
        streak_bonus=streak_bonus,
    )


def calculate_badge(points: int) -> str:
    """Highest badge whose threshold ``points`` reaches."""
    badge = BADGE_THRESHOLDS[0][1]
    for threshold, name in BADGE_THRESHOLDS:
        if points >= threshold:
            badge = name
    return badge


def badge_rank(name: Optional[str]) -> int:
    for index, (_, badge) in enumerate(BADGE_THRESHOLDS):
        if badge == name:
            return index
    return -1


def next_badge(points: int) -> Optional[Dict[str, Any]]:
    """Next badge above ``points`` and how far away it is."""
    for threshold, name in BADGE_THRESHOLDS:
        if threshold > points:
            return {"name": name, "threshold": threshold, "points_needed": threshold - points}
    return None


def next_streak(streak_days: int, last_report_date: Optional[date], report_date: date) -> int:
    """
    Streak after crediting a report submitted on ``report_date``.

    Same day (or an older report credited late) keeps the streak, the
    following day extends it, any gap starts over at 1.
    """
    if last_report_date is None:
        return 1
    gap = (report_date - last_report_date).days
    if gap <= 0:
        return max(streak_days or 0, 1)
    if gap == 1:
        return (streak_days or 0) + 1
    return 1


def hash_device_id(device_id: str) -> str:
    """Public leaderboard alias for a device."""
    digest = hashlib.sha256(device_id.encode("utf-8")).hexdigest()
    return f"user_{digest[:LEADERBOARD_HASH_LENGTH]}***"


# =============================================================================
# Ledger
# =============================================================================

class PointsLedger:
    """
    Citizen points ledger.

    ``reports.points_awarded`` is the exactly-once guard: a credit only
    happens while it is still 0, and a retried credit returns the recorded
    value without touching the citizen row.
    """

    def __init__(
        self,
        db: DatabaseConnection,
        clock: Optional[Clock] = None,
        events: Optional[EventBus] = None
    ):
        self.db = db
        self.clock = clock or Clock()
        self.events = events or EventBus()

    def award(
        self,
        device_id: str,
        report_id: str,
        reason: PointReason = PointReason.REPORT_VERIFIED,
        severity: Optional[str] = None
    ) -> int:
        """
        Credit the submitter of a resolved report.

        Args:
            device_id: Submitter device
            report_id: Resolved report
            reason: Recorded reason for the credit
            severity: Overrides the report's own severity when given

        Returns:
            Points credited for the report (the recorded value on a retry)

        Raises:
            NotFoundError: Unknown report
            StateError: Report is not RESOLVED
            ValidationError: Report was submitted by another device
        """
        now = self.clock.now()

        with self.db.get_session() as session:
            report = (
                session.query(Report)
                .filter(Report.id == report_id)
                .with_for_update()
                .one_or_none()
            )
            if report is None:
                raise NotFoundError(f"Report {report_id} not found")
            if report.device_id != device_id:
                raise ValidationError("Report was not submitted by this device", field="device_id")
            if report.points_awarded:
                logger.info(f"Report {report_id} already credited ({report.points_awarded} points)")
                return report.points_awarded
            if report.status != ReportStatus.RESOLVED:
                raise StateError(
                    "Points are only credited for resolved reports",
                    current_status=report.status.value,
                )

            citizen = self._lock_citizen(session, device_id, now)

            submitted_on = report.created_at.date()
            streak = next_streak(citizen.streak_days, citizen.last_report_date, submitted_on)
            latest_report_date = submitted_on
            if citizen.last_report_date and citizen.last_report_date > submitted_on:
                latest_report_date = citizen.last_report_date
            pioneer = self.is_first_in_area(session, report)
            breakdown = calculate_points(severity or report.severity, pioneer, streak)
            total = breakdown.total

            claimed = session.execute(
                update(Report)
                .where(Report.id == report_id, Report.points_awarded == 0)
                .values(points_awarded=total)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                recorded = session.scalar(
                    select(Report.points_awarded).where(Report.id == report_id)
                )
                logger.info(f"Report {report_id} credited concurrently ({recorded} points)")
                return recorded

            session.execute(
                update(Citizen)
                .where(Citizen.device_id == device_id)
                .values(
                    total_points=Citizen.total_points + total,
                    reports_count=Citizen.reports_count + 1,
                    streak_days=streak,
                    last_report_date=latest_report_date,
                    last_active=now,
                )
                .execution_options(synchronize_session=False)
            )

            new_total = session.scalar(
                select(Citizen.total_points).where(Citizen.device_id == device_id)
            )
            badge = calculate_badge(new_total)
            if badge_rank(badge) > badge_rank(citizen.current_badge):
                session.execute(
                    update(Citizen)
                    .where(Citizen.device_id == device_id)
                    .values(current_badge=badge)
                    .execution_options(synchronize_session=False)
                )
                logger.info(f"Citizen {device_id} reached badge {badge}")

            session.add(PointsHistory(
                device_id=device_id,
                report_id=report_id,
                points=total,
                reason=PointReason(reason),
                breakdown=breakdown.to_dict(),
                created_at=now,
            ))

        logger.info(f"Points awarded: device={device_id} report={report_id} points={total}")
        self.events.publish(DomainEvent(
            kind=EventKind.POINTS_AWARDED,
            report_id=report_id,
            device_id=device_id,
            payload={"points": total, "breakdown": breakdown.to_dict(), "total_points": new_total},
            occurred_at=now,
        ))
        return total

    def is_first_in_area(self, session: Session, report: Report) -> bool:
        """True if no other resolved report lies within the pioneer radius."""
        box = BoundingBox.around(report.latitude, report.longitude, PIONEER_RADIUS_METERS)
        nearby = (
            session.query(Report.latitude, Report.longitude)
            .filter(
                Report.id != report.id,
                Report.status == ReportStatus.RESOLVED,
                Report.latitude.between(box.south, box.north),
                Report.longitude.between(box.west, box.east),
            )
            .all()
        )
        for lat, lng in nearby:
            if haversine_distance(report.latitude, report.longitude, lat, lng) * 1000 <= PIONEER_RADIUS_METERS:
                return False
        return True

    # =========================================================================
    # Reads
    # =========================================================================

    def get_stats(self, device_id: str) -> Dict[str, Any]:
        """Points, badge progress and city rank for a device."""
        with self.db.get_session() as session:
            citizen = session.get(Citizen, device_id)
            if citizen is None:
                return {
                    "device_id": device_id,
                    "total_points": 0,
                    "reports_count": 0,
                    "current_badge": BADGE_THRESHOLDS[0][1],
                    "next_badge": next_badge(0),
                    "streak_days": 0,
                    "rank": 0,
                }

            ahead = session.scalar(
                select(func.count())
                .select_from(Citizen)
                .where(Citizen.total_points > citizen.total_points)
            )
            return {
                "device_id": device_id,
                "total_points": citizen.total_points,
                "reports_count": citizen.reports_count,
                "current_badge": citizen.current_badge,
                "next_badge": next_badge(citizen.total_points),
                "streak_days": citizen.streak_days,
                "rank": ahead + 1,
            }

    def get_history(self, device_id: str, limit: int = 20) -> List[PointsHistory]:
        with self.db.get_session() as session:
            return (
                session.query(PointsHistory)
                .filter(PointsHistory.device_id == device_id)
                .order_by(PointsHistory.created_at.desc())
                .limit(limit)
                .all()
            )

    def leaderboard(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Top citizens by points; device ids are hashed."""
        limit = max(1, min(limit, 100))
        with self.db.get_session() as session:
            rows = (
                session.query(
                    Citizen.device_id,
                    Citizen.total_points,
                    Citizen.reports_count,
                    Citizen.current_badge,
                )
                .order_by(Citizen.total_points.desc(), Citizen.device_id)
                .limit(limit)
                .all()
            )

        return [
            {
                "rank": position,
                "device_id": hash_device_id(device_id),
                "points": points,
                "reports_count": reports_count,
                "badge": badge,
            }
            for position, (device_id, points, reports_count, badge) in enumerate(rows, start=1)
        ]

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def reconcile(self, limit: int = 100) -> Dict[str, Any]:
        """
        Credit resolved reports that were never credited.

        Resolved reports with ``points_awarded == 0`` are the retry queue
        left behind by credits that failed after approval.

        Returns:
            Counts of checked, credited and failed reports
        """
        with self.db.get_session() as session:
            pending = (
                session.query(Report.id, Report.device_id)
                .filter(
                    Report.status == ReportStatus.RESOLVED,
                    Report.points_awarded == 0,
                )
                .order_by(Report.resolved_at)
                .limit(limit)
                .all()
            )

        credited: List[str] = []
        failed: List[str] = []
        for report_id, device_id in pending:
            try:
                self.award(device_id, report_id)
                credited.append(report_id)
            except (CleanCityError, SQLAlchemyError) as e:
                logger.error(f"Reconciliation failed for report {report_id}: {e}")
                failed.append(report_id)

        if pending:
            logger.info(
                f"Points reconciliation: {len(credited)} credited, {len(failed)} failed"
            )
        return {
            "checked": len(pending),
            "credited": credited,
            "failed": failed,
        }

    @staticmethod
    def _lock_citizen(session: Session, device_id: str, now: datetime) -> Citizen:
        citizen = session.get(Citizen, device_id, with_for_update=True)
        if citizen is None:
            citizen = Citizen(device_id=device_id, first_seen=now, last_active=now)
            session.add(citizen)
            session.flush()
        return citizen
