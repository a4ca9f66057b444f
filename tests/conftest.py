"""
Pytest configuration and fixtures
"""
import math
import pytest
import sys
from datetime import datetime, timedelta
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from cleancity.api.dependencies import Services
from cleancity.core.config import Settings
from cleancity.core.geo_utils import EARTH_RADIUS_KM, GeoLocation
from cleancity.database.connection import DatabaseConnection
from cleancity.database.models import Worker

# Mumbai, where the pilot runs
REPORT_LAT = 19.0760
REPORT_LNG = 72.8777

START_TIME = datetime(2026, 3, 2, 8, 0, 0)


def offset_north(lat: float, meters: float) -> float:
    """Latitude ``meters`` north of ``lat`` on the haversine sphere."""
    return lat + math.degrees(meters / (EARTH_RADIUS_KM * 1000))


class ManualClock:
    """Clock the tests move by hand."""

    def __init__(self, start: datetime = START_TIME):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeCounterStore:
    """In-memory CounterStore with expiry driven by the manual clock."""

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.counters = {}

    def incr(self, key, window_seconds):
        now = self.clock.now()
        count, expires_at = self.counters.get(key, (0, None))
        if expires_at is None or expires_at <= now:
            count, expires_at = 0, now + timedelta(seconds=window_seconds)
        count += 1
        self.counters[key] = (count, expires_at)
        return count, math.ceil((expires_at - now).total_seconds())

    def ping(self):
        return True


class Workflow:
    """Drives reports through the lifecycle for tests."""

    def __init__(self, services: Services, clock: ManualClock, worker: Worker):
        self.services = services
        self.clock = clock
        self.worker = worker

    def submit(
        self,
        device_id="device-0001",
        lat=REPORT_LAT,
        lng=REPORT_LNG,
        severity="high",
        photo_age_minutes=1,
        **kwargs
    ):
        return self.services.admission.submit_report(
            device_id=device_id,
            location=GeoLocation(lat, lng, 5.0),
            photo_url="https://photos.example.org/report.jpg",
            captured_at=self.clock.now() - timedelta(minutes=photo_age_minutes),
            severity=severity,
            **kwargs
        )

    def assigned(self, **kwargs):
        report = self.submit(**kwargs)
        return self.services.status.assign(report.id, self.worker.id)

    def in_progress(self, **kwargs):
        report = self.assigned(**kwargs)
        verification = self.services.verification.start_task(
            report.id,
            self.worker.id,
            GeoLocation(report.latitude, report.longitude),
            "https://photos.example.org/before.jpg",
        )
        return report, verification

    def verified(self, minutes=10, **kwargs):
        report, _ = self.in_progress(**kwargs)
        self.clock.advance(minutes=minutes)
        verification = self.services.verification.complete_task(
            report.id, self.worker.id, "https://photos.example.org/after.jpg"
        )
        return report, verification

    def resolved(self, admin_id="admin-1", **kwargs):
        report, verification = self.verified(**kwargs)
        result = self.services.approval.approve(verification.id, admin_id)
        return report, result


@pytest.fixture
def clock():
    """Manual clock starting at 08:00 UTC."""
    return ManualClock()


@pytest.fixture
def test_settings():
    """Default thresholds, isolated from the environment."""
    return Settings(_env_file=None, app_env="testing", database_url="sqlite://")


@pytest.fixture
def db():
    """Fresh in-memory SQLite database."""
    connection = DatabaseConnection("sqlite://", echo=False)
    connection.create_tables()
    yield connection
    connection.drop_tables()
    connection.close()


@pytest.fixture
def counter_store(clock):
    return FakeCounterStore(clock)


@pytest.fixture
def services(db, clock, counter_store, test_settings):
    """All services wired to the test database and clock."""
    built = Services.build(
        db=db, clock=clock, counter_store=counter_store, settings=test_settings
    )
    built.events.keep_history = True
    return built


def _add_worker(db, name, phone, zones, active=True):
    with db.get_session() as session:
        worker = Worker(name=name, phone=phone, assigned_zones=zones, is_active=active)
        session.add(worker)
        session.flush()
    return worker


@pytest.fixture
def worker(db):
    """Active worker covering Ward A."""
    return _add_worker(db, "Ravi Kumar", "9000000001", ["Ward A"])


@pytest.fixture
def other_worker(db):
    """Second active worker covering Ward B."""
    return _add_worker(db, "Asha Patil", "9000000002", ["Ward B"])


@pytest.fixture
def inactive_worker(db):
    return _add_worker(db, "Former Worker", "9000000003", ["Ward A"], active=False)


@pytest.fixture
def workflow(services, clock, worker):
    return Workflow(services, clock, worker)
