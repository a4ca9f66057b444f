"""
CleanCity - Task Priority Scheduler
Orders a worker's cleanup tasks by severity and age.

    priority = severity weight + age in hours

The scheduler only reads; assignment goes through the status machine.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_

from cleancity.core.clock import Clock
from cleancity.core.constants import ESTIMATED_MINUTES, SEVERITY_WEIGHTS
from cleancity.core.errors import NotFoundError, ValidationError
from cleancity.core.geo_utils import GeoLocation, distance_meters
from cleancity.database.connection import DatabaseConnection
from cleancity.database.models import Report, ReportStatus, Worker

logger = logging.getLogger(__name__)

DEFAULT_SEVERITY = "low"


@dataclass
class Task:
    """A report as seen in a worker's task list."""
    report_id: str
    location: GeoLocation
    severity: str
    reported_at: datetime
    status: ReportStatus
    waste_types: List[str] = field(default_factory=list)
    zone: Optional[str] = None
    photo_url: Optional[str] = None
    description: Optional[str] = None
    distance_meters: float = 0.0
    estimated_minutes: int = ESTIMATED_MINUTES[DEFAULT_SEVERITY]
    priority: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "location": {
                "lat": self.location.lat,
                "lng": self.location.lng,
                "accuracy": self.location.accuracy,
            },
            "severity": self.severity,
            "waste_types": self.waste_types,
            "zone": self.zone,
            "reported_at": self.reported_at.isoformat(),
            "status": self.status.value,
            "distance_meters": round(self.distance_meters, 1),
            "estimated_minutes": self.estimated_minutes,
            "photo_url": self.photo_url,
            "description": self.description,
            "priority": round(self.priority, 3),
        }


def calculate_priority(severity: Optional[str], reported_at: datetime, now: datetime) -> float:
    """Severity weight plus age in hours; unset severity counts as low."""
    weight = SEVERITY_WEIGHTS.get(severity or DEFAULT_SEVERITY, SEVERITY_WEIGHTS[DEFAULT_SEVERITY])
    age_hours = (now - reported_at).total_seconds() / 3600
    return weight + age_hours


def estimated_minutes(severity: Optional[str]) -> int:
    return ESTIMATED_MINUTES.get(severity or DEFAULT_SEVERITY, ESTIMATED_MINUTES[DEFAULT_SEVERITY])


def prioritize(tasks: Iterable[Task], now: datetime) -> List[Task]:
    """
    Sort tasks by descending priority.

    The sort is stable, so equal priorities keep their input order.
    """
    tasks = list(tasks)
    for task in tasks:
        task.priority = calculate_priority(task.severity, task.reported_at, now)
    return sorted(tasks, key=lambda t: t.priority, reverse=True)


def filter_by_status(tasks: Iterable[Task], status) -> List[Task]:
    status = ReportStatus(status)
    return [task for task in tasks if task.status == status]


def filter_by_zones(tasks: Iterable[Task], zones: Iterable[str]) -> List[Task]:
    zones = set(zones)
    return [task for task in tasks if task.zone in zones]


def task_from_report(report: Report, worker_location: Optional[GeoLocation] = None) -> Task:
    severity = report.severity.value if report.severity else DEFAULT_SEVERITY
    location = GeoLocation(report.latitude, report.longitude, report.location_accuracy or 0.0)
    distance = distance_meters(worker_location, location) if worker_location else 0.0
    return Task(
        report_id=report.id,
        location=location,
        severity=severity,
        reported_at=report.created_at,
        status=ReportStatus(report.status),
        waste_types=list(report.waste_types or []),
        zone=report.zone,
        photo_url=report.photo_url,
        description=report.description,
        distance_meters=distance,
        estimated_minutes=estimated_minutes(severity),
    )


class TaskScheduler:
    """Builds prioritized task lists for workers."""

    ACTIVE_STATUSES = (
        ReportStatus.ASSIGNED,
        ReportStatus.IN_PROGRESS,
        ReportStatus.VERIFIED,
    )

    def __init__(self, db: DatabaseConnection, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()

    def list_worker_tasks(
        self,
        worker_id: str,
        worker_location: Optional[GeoLocation] = None,
        status=None
    ) -> List[Task]:
        """
        Prioritized tasks for a worker.

        Includes every non-terminal report assigned to the worker and the
        OPEN reports in the worker's zones.

        Args:
            worker_id: Worker ID
            worker_location: Current GPS fix, used for distances
            status: Only return tasks in this status

        Raises:
            NotFoundError: Unknown worker
        """
        if status is not None:
            try:
                status = ReportStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown status: {status}", field="status")

        with self.db.get_session() as session:
            worker = session.get(Worker, worker_id)
            if worker is None:
                raise NotFoundError(f"Worker {worker_id} not found")

            zones = list(worker.assigned_zones or [])
            criteria = [
                (Report.assigned_worker_id == worker_id)
                & Report.status.in_(self.ACTIVE_STATUSES)
            ]
            if zones:
                criteria.append(
                    (Report.status == ReportStatus.OPEN) & Report.zone.in_(zones)
                )

            query = session.query(Report).filter(or_(*criteria))
            if status is not None:
                query = query.filter(Report.status == status)
            reports = query.order_by(Report.created_at, Report.id).all()

        tasks = [task_from_report(report, worker_location) for report in reports]
        logger.debug(f"Worker {worker_id}: {len(tasks)} tasks")
        return prioritize(tasks, self.clock.now())
