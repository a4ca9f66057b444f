"""
Tests for report admission control
"""
from datetime import datetime, timedelta

import pytest

from cleancity.core.errors import (
    CooldownError,
    DailyLimitError,
    DuplicateReportError,
    StalePhotoError,
    ValidationError,
)
from cleancity.core.geo_utils import GeoLocation
from cleancity.database.models import Citizen, Report, ReportStatus, Severity
from cleancity.events.bus import EventKind
from cleancity.reports.admission import (
    normalize_description,
    seconds_until_local_midnight,
    to_naive_utc,
)

from conftest import REPORT_LAT, REPORT_LNG, offset_north


def count_reports(db):
    with db.get_session() as session:
        return session.query(Report).count()


class TestAdmissionHelpers:
    """Test suite for pure admission helpers."""

    def test_description_is_trimmed(self):
        assert normalize_description("  overflowing bin  ", 50) == "overflowing bin"

    def test_blank_description_becomes_none(self):
        assert normalize_description("   ", 50) is None
        assert normalize_description(None, 50) is None

    def test_long_description_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_description("x" * 51, 50)
        assert exc_info.value.field == "description"

    def test_exactly_max_length_accepted(self):
        assert normalize_description("x" * 50, 50) == "x" * 50

    def test_seconds_until_midnight(self):
        """Test retry-after counts down to the device-local midnight."""
        now = datetime(2026, 3, 2, 23, 0, 0)
        assert seconds_until_local_midnight(now) == 3600
        # UTC+05:30 is already past midnight locally (04:30 next day)
        assert seconds_until_local_midnight(now, 330) == (19 * 60 + 30) * 60

    def test_aware_capture_time_normalized(self):
        from datetime import timezone
        aware = datetime(2026, 3, 2, 13, 30, tzinfo=timezone(timedelta(hours=5, minutes=30)))
        assert to_naive_utc(aware) == datetime(2026, 3, 2, 8, 0)


class TestAdmissionControl:
    """Test suite for submit_report."""

    def test_accepts_valid_report(self, workflow, clock):
        """Test a valid report is stored OPEN with created_at = now."""
        report = workflow.submit(
            description="  Garbage pile near bus stop ",
            waste_types=["plastic", "organic"],
            zone="Ward A",
        )

        assert report.status == ReportStatus.OPEN
        assert report.created_at == clock.now()
        assert report.severity == Severity.HIGH
        assert report.description == "Garbage pile near bus stop"
        assert report.waste_types == ["plastic", "organic"]
        assert report.points_awarded == 0
        assert report.assigned_at is None

    def test_first_submission_creates_citizen(self, workflow, db, clock):
        workflow.submit(device_id="device-new")

        with db.get_session() as session:
            citizen = session.get(Citizen, "device-new")
            assert citizen is not None
            assert citizen.daily_count == 1
            assert citizen.last_submission_at == clock.now()
            assert citizen.total_points == 0

    def test_publishes_submitted_event(self, workflow, services):
        report = workflow.submit()

        kinds = [e.kind for e in services.events.history]
        assert EventKind.REPORT_SUBMITTED in kinds
        assert services.events.history[-1].report_id == report.id

    def test_missing_device_rejected_first(self, services, clock):
        """Test a missing device id fails before any other check."""
        with pytest.raises(ValidationError) as exc_info:
            services.admission.submit_report(
                device_id="  ",
                location=GeoLocation(REPORT_LAT, REPORT_LNG),
                photo_url="",
                captured_at=clock.now() - timedelta(hours=1),
            )
        assert exc_info.value.field == "device_id"

    def test_cooldown_after_four_minutes(self, workflow, clock, db):
        """Test a second report 4 minutes later hits the cooldown."""
        workflow.submit()
        clock.advance(minutes=4)

        with pytest.raises(CooldownError) as exc_info:
            workflow.submit(lat=offset_north(REPORT_LAT, 500))

        assert exc_info.value.code == "COOLDOWN_ACTIVE"
        assert exc_info.value.retry_after == 60
        assert count_reports(db) == 1

    def test_accepted_after_six_minutes(self, workflow, clock, db):
        """Test a second report 6 minutes later is accepted."""
        workflow.submit()
        clock.advance(minutes=6)

        report = workflow.submit(lat=offset_north(REPORT_LAT, 500))

        assert report.status == ReportStatus.OPEN
        assert count_reports(db) == 2

    def test_cooldown_rounds_retry_after_up(self, workflow, clock):
        workflow.submit()
        clock.advance(minutes=4, seconds=30, microseconds=500000)

        with pytest.raises(CooldownError) as exc_info:
            workflow.submit(lat=offset_north(REPORT_LAT, 500))

        assert exc_info.value.retry_after == 30

    def test_eleventh_report_of_the_day_rejected(self, workflow, clock, db):
        """Test the daily cap: ten accepted, the eleventh refused."""
        for i in range(10):
            workflow.submit(lat=REPORT_LAT + 0.01 * i)
            clock.advance(minutes=6)

        with pytest.raises(DailyLimitError) as exc_info:
            workflow.submit(lat=REPORT_LAT + 0.5)

        assert exc_info.value.code == "DAILY_LIMIT_REACHED"
        # 08:00 + 10 x 6 min = 09:00; midnight is 15 hours away
        assert exc_info.value.retry_after == 15 * 3600
        assert count_reports(db) == 10

    def test_daily_cap_resets_next_day(self, workflow, clock):
        for i in range(10):
            workflow.submit(lat=REPORT_LAT + 0.01 * i)
            clock.advance(minutes=6)

        clock.advance(days=1)
        report = workflow.submit(lat=REPORT_LAT + 0.5)

        assert report.status == ReportStatus.OPEN

    def test_daily_cap_is_per_device(self, workflow, clock):
        for i in range(10):
            workflow.submit(lat=REPORT_LAT + 0.01 * i)
            clock.advance(minutes=6)

        report = workflow.submit(device_id="device-0002", lat=REPORT_LAT + 0.5)
        assert report.device_id == "device-0002"

    def test_stale_photo_rejected(self, workflow, db):
        """Test photos older than 5 minutes are refused."""
        with pytest.raises(StalePhotoError) as exc_info:
            workflow.submit(photo_age_minutes=6)

        assert exc_info.value.code == "STALE_PHOTO"
        assert count_reports(db) == 0

    def test_photo_at_age_limit_accepted(self, workflow):
        report = workflow.submit(photo_age_minutes=5)
        assert report.status == ReportStatus.OPEN

    def test_future_capture_time_rejected(self, workflow):
        """Test capture times beyond the clock-skew allowance are invalid."""
        with pytest.raises(ValidationError) as exc_info:
            workflow.submit(photo_age_minutes=-2)
        assert exc_info.value.field == "captured_at"

    def test_small_clock_skew_tolerated(self, workflow, clock):
        report = workflow.submit(photo_age_minutes=-0.5)
        assert report.status == ReportStatus.OPEN

    def test_duplicate_open_report_nearby(self, workflow, clock, db):
        """Test an open report within 50 m suppresses a new one."""
        first = workflow.submit()
        clock.advance(minutes=6)

        with pytest.raises(DuplicateReportError) as exc_info:
            workflow.submit(device_id="device-0002", lat=offset_north(REPORT_LAT, 30))

        assert exc_info.value.details["duplicate_of"] == first.id
        assert exc_info.value.to_dict()["duplicateOf"] == first.id
        assert count_reports(db) == 1

    def test_duplicate_window_is_24_hours(self, workflow, clock):
        workflow.submit()
        clock.advance(hours=25)

        report = workflow.submit(device_id="device-0002", lat=offset_north(REPORT_LAT, 30))
        assert report.status == ReportStatus.OPEN

    def test_assigned_report_does_not_suppress(self, workflow, clock):
        """Test only OPEN reports count as duplicates."""
        workflow.assigned()
        clock.advance(minutes=6)

        report = workflow.submit(device_id="device-0002", lat=offset_north(REPORT_LAT, 30))
        assert report.status == ReportStatus.OPEN

    def test_report_beyond_radius_accepted(self, workflow, clock):
        workflow.submit()
        clock.advance(minutes=6)

        report = workflow.submit(device_id="device-0002", lat=offset_north(REPORT_LAT, 60))
        assert report.status == ReportStatus.OPEN

    @pytest.mark.parametrize("lat,lng,field", [
        (95.0, REPORT_LNG, "latitude"),
        (-90.5, REPORT_LNG, "latitude"),
        (REPORT_LAT, 181.0, "longitude"),
        (float("nan"), REPORT_LNG, "latitude"),
    ])
    def test_invalid_coordinates(self, workflow, lat, lng, field):
        with pytest.raises(ValidationError) as exc_info:
            workflow.submit(lat=lat, lng=lng)
        assert exc_info.value.field == field

    def test_negative_accuracy_rejected(self, services, clock):
        with pytest.raises(ValidationError) as exc_info:
            services.admission.submit_report(
                device_id="device-0001",
                location=GeoLocation(REPORT_LAT, REPORT_LNG, -1.0),
                photo_url="https://photos.example.org/report.jpg",
                captured_at=clock.now(),
            )
        assert exc_info.value.field == "accuracy"

    def test_missing_photo_rejected(self, services, clock):
        with pytest.raises(ValidationError) as exc_info:
            services.admission.submit_report(
                device_id="device-0001",
                location=GeoLocation(REPORT_LAT, REPORT_LNG),
                photo_url=None,
                captured_at=clock.now(),
            )
        assert exc_info.value.field == "photo_url"

    def test_unknown_severity_rejected(self, workflow):
        with pytest.raises(ValidationError) as exc_info:
            workflow.submit(severity="catastrophic")
        assert exc_info.value.field == "severity"

    def test_rejection_does_not_start_cooldown(self, workflow, clock):
        """Test a rejected submission leaves the counters untouched."""
        with pytest.raises(StalePhotoError):
            workflow.submit(photo_age_minutes=10)

        report = workflow.submit()
        assert report.status == ReportStatus.OPEN
