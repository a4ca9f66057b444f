"""
CleanCity - Report Admission Control
Abuse-prevention gate in front of report creation.

Checks run in a fixed order and the first failure wins:
daily cap, cooldown, photo freshness, duplicate suppression, field
validation. Nothing is written unless every check passes.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cleancity.core.clock import Clock
from cleancity.core.config import Settings, settings as default_settings
from cleancity.core.errors import (
    CooldownError,
    DailyLimitError,
    DuplicateReportError,
    StalePhotoError,
    ValidationError,
)
from cleancity.core.geo_utils import (
    BoundingBox, GeoLocation, haversine_distance, is_valid_coordinate
)
from cleancity.database.connection import DatabaseConnection
from cleancity.database.models import Citizen, Report, ReportStatus, Severity
from cleancity.events.bus import DomainEvent, EventBus, EventKind

logger = logging.getLogger(__name__)

MAX_DEVICE_ID_LENGTH = 64


@dataclass(frozen=True)
class DuplicateMatch:
    """Nearest open report inside the duplicate radius."""
    report_id: str
    distance_meters: float


def normalize_description(description: Optional[str], max_length: int) -> Optional[str]:
    """
    Trim a description; blank becomes None.

    Raises:
        ValidationError: Longer than ``max_length`` after trimming
    """
    if description is None:
        return None
    trimmed = description.strip()
    if not trimmed:
        return None
    if len(trimmed) > max_length:
        raise ValidationError(
            f"Description must not exceed {max_length} characters",
            field="description",
        )
    return trimmed


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def seconds_until_local_midnight(now: datetime, utc_offset_minutes: int = 0) -> int:
    """Seconds from ``now`` (naive UTC) to the next midnight in the device's zone."""
    local_now = now + timedelta(minutes=utc_offset_minutes)
    midnight = datetime.combine(local_now.date() + timedelta(days=1), datetime.min.time())
    return max(1, math.ceil((midnight - local_now).total_seconds()))


class AdmissionControl:
    """
    Gatekeeper for report submission.

    Per-device counters live on the citizen row, which is locked for the
    duration of the submission so concurrent submissions from one device
    are serialized.
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

    def submit_report(
        self,
        device_id: str,
        location: GeoLocation,
        photo_url: str,
        captured_at: datetime,
        description: Optional[str] = None,
        severity: Optional[str] = None,
        waste_types: Optional[List[str]] = None,
        zone: Optional[str] = None,
        utc_offset_minutes: int = 0
    ) -> Report:
        """
        Admit and store a new report.

        Args:
            device_id: Pseudonymous device fingerprint of the submitter
            location: GPS fix of the waste spot
            photo_url: Stored photo reference
            captured_at: When the photo was taken
            description: Optional short description
            severity: low, medium or high
            waste_types: Waste category tags
            zone: Area name used for worker zone matching
            utc_offset_minutes: Device timezone offset for the daily cap

        Returns:
            The stored report, status OPEN

        Raises:
            ValidationError: Missing or malformed input
            DailyLimitError, CooldownError, StalePhotoError,
            DuplicateReportError: Abuse-prevention rule violated
        """
        device_id = self._require_device_id(device_id)
        if location is None:
            raise ValidationError("Location is required", field="location")
        if captured_at is None:
            raise ValidationError("Photo capture time is required", field="captured_at")
        captured_at = to_naive_utc(captured_at)

        now = self.clock.now()

        with self.db.get_session() as session:
            citizen = self._lock_citizen(session, device_id, now)

            local_today = (now + timedelta(minutes=utc_offset_minutes)).date()
            daily_count = citizen.daily_count if citizen.daily_count_date == local_today else 0

            self._check_daily_limit(daily_count, now, utc_offset_minutes)
            self._check_cooldown(citizen.last_submission_at, now)
            self._check_photo_age(captured_at, now)

            if is_valid_coordinate(location.lat, location.lng):
                match = self.find_duplicate(session, location, now)
                if match is not None:
                    logger.info(
                        f"Duplicate report from {device_id}: {match.report_id} "
                        f"at {match.distance_meters:.1f} m"
                    )
                    raise DuplicateReportError(match.report_id, self.settings.duplicate_radius_meters)

            description = self._validate_fields(
                location, photo_url, captured_at, description, now
            )
            severity = self._parse_severity(severity)

            # Conditional on the last_submission_at we checked against
            claimed = session.execute(
                update(Citizen)
                .where(
                    Citizen.device_id == device_id,
                    self._same_value(Citizen.last_submission_at, citizen.last_submission_at),
                )
                .values(
                    last_submission_at=now,
                    last_active=now,
                    daily_count=daily_count + 1,
                    daily_count_date=local_today,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise CooldownError(retry_after=self.settings.cooldown_minutes * 60)

            report = Report(
                device_id=device_id,
                latitude=location.lat,
                longitude=location.lng,
                location_accuracy=location.accuracy,
                zone=zone,
                photo_url=photo_url.strip(),
                description=description,
                severity=severity,
                waste_types=list(waste_types or []),
                status=ReportStatus.OPEN,
                created_at=now,
            )
            session.add(report)
            session.flush()

        logger.info(f"Report {report.id} admitted from device {device_id}")
        self.events.publish(DomainEvent(
            kind=EventKind.REPORT_SUBMITTED,
            report_id=report.id,
            device_id=device_id,
            payload={"severity": severity.value if severity else None, "zone": zone},
            occurred_at=now,
        ))
        return report

    # =========================================================================
    # Checks
    # =========================================================================

    def _check_daily_limit(self, daily_count: int, now: datetime, utc_offset_minutes: int) -> None:
        limit = self.settings.max_reports_per_day
        if daily_count >= limit:
            raise DailyLimitError(
                limit=limit,
                retry_after=seconds_until_local_midnight(now, utc_offset_minutes),
            )

    def _check_cooldown(self, last_submission_at: Optional[datetime], now: datetime) -> None:
        if last_submission_at is None:
            return
        cooldown_seconds = self.settings.cooldown_minutes * 60
        elapsed = (now - last_submission_at).total_seconds()
        if elapsed < cooldown_seconds:
            raise CooldownError(retry_after=math.ceil(cooldown_seconds - elapsed))

    def _check_photo_age(self, captured_at: datetime, now: datetime) -> None:
        max_age = self.settings.max_photo_age_minutes
        age_minutes = (now - captured_at).total_seconds() / 60
        if age_minutes > max_age:
            raise StalePhotoError(max_age_minutes=max_age, age_minutes=age_minutes)

    def find_duplicate(
        self,
        session: Session,
        location: GeoLocation,
        now: datetime
    ) -> Optional[DuplicateMatch]:
        """
        Nearest OPEN report within the duplicate radius and time window.

        A bounding box narrows the candidates; haversine decides.
        """
        radius = self.settings.duplicate_radius_meters
        since = now - timedelta(hours=self.settings.duplicate_window_hours)
        box = BoundingBox.around(location.lat, location.lng, radius)

        candidates = (
            session.query(Report.id, Report.latitude, Report.longitude)
            .filter(
                Report.status == ReportStatus.OPEN,
                Report.created_at > since,
                Report.latitude.between(box.south, box.north),
                Report.longitude.between(box.west, box.east),
            )
            .all()
        )

        best = None
        for report_id, lat, lng in candidates:
            distance = haversine_distance(location.lat, location.lng, lat, lng) * 1000
            if distance <= radius and (best is None or distance < best.distance_meters):
                best = DuplicateMatch(report_id=report_id, distance_meters=distance)
        return best

    def _validate_fields(
        self,
        location: GeoLocation,
        photo_url: Optional[str],
        captured_at: datetime,
        description: Optional[str],
        now: datetime
    ) -> Optional[str]:
        """Field validation; returns the normalized description."""
        lat, lng = location.lat, location.lng
        if lat is None or math.isnan(lat) or not -90 <= lat <= 90:
            raise ValidationError("Latitude must be between -90 and 90", field="latitude")
        if lng is None or math.isnan(lng) or not -180 <= lng <= 180:
            raise ValidationError("Longitude must be between -180 and 180", field="longitude")
        if location.accuracy is not None and (math.isnan(location.accuracy) or location.accuracy < 0):
            raise ValidationError("Accuracy must be non-negative", field="accuracy")

        if not photo_url or not photo_url.strip():
            raise ValidationError("Photo is required", field="photo_url")

        skew = (captured_at - now).total_seconds()
        if skew > self.settings.max_clock_skew_seconds:
            raise ValidationError("Photo capture time is in the future", field="captured_at")

        return normalize_description(description, self.settings.max_description_length)

    @staticmethod
    def _parse_severity(severity) -> Optional[Severity]:
        if severity is None:
            return None
        try:
            return Severity(severity)
        except ValueError:
            raise ValidationError(
                "Severity must be one of: low, medium, high", field="severity"
            )

    @staticmethod
    def _require_device_id(device_id: Optional[str]) -> str:
        if device_id is None or not str(device_id).strip():
            raise ValidationError("Device fingerprint is required", field="device_id")
        device_id = str(device_id).strip()
        if len(device_id) > MAX_DEVICE_ID_LENGTH:
            raise ValidationError(
                f"Device fingerprint must not exceed {MAX_DEVICE_ID_LENGTH} characters",
                field="device_id",
            )
        return device_id

    # =========================================================================
    # Citizen row
    # =========================================================================

    def _lock_citizen(self, session: Session, device_id: str, now: datetime) -> Citizen:
        """Fetch the citizen row under a lock, creating it on first contact."""
        citizen = session.get(Citizen, device_id, with_for_update=True)
        if citizen is not None:
            return citizen

        try:
            with session.begin_nested():
                session.add(Citizen(device_id=device_id, first_seen=now, last_active=now))
        except IntegrityError:
            # Another request created it first
            logger.debug(f"Citizen {device_id} created concurrently")

        return session.get(Citizen, device_id, with_for_update=True, populate_existing=True)

    @staticmethod
    def _same_value(column, value):
        return column.is_(None) if value is None else column == value
