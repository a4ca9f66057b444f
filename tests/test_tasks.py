"""
Tests for the task priority scheduler
"""
from datetime import timedelta

import pytest

from cleancity.core.errors import NotFoundError, ValidationError
from cleancity.core.geo_utils import GeoLocation
from cleancity.database.models import ReportStatus
from cleancity.tasks.scheduler import (
    Task,
    calculate_priority,
    estimated_minutes,
    filter_by_status,
    filter_by_zones,
    prioritize,
)

from conftest import REPORT_LAT, REPORT_LNG, START_TIME, offset_north


def make_task(report_id, severity, age_hours=0.0, status=ReportStatus.OPEN, zone="Ward A"):
    return Task(
        report_id=report_id,
        location=GeoLocation(REPORT_LAT, REPORT_LNG),
        severity=severity,
        reported_at=START_TIME - timedelta(hours=age_hours),
        status=status,
        zone=zone,
    )


class TestPriority:
    """Test suite for pure priority ordering."""

    def test_severity_orders_equal_age(self):
        tasks = [make_task("l", "low"), make_task("h", "high"), make_task("m", "medium")]

        ordered = prioritize(tasks, START_TIME)

        assert [t.report_id for t in ordered] == ["h", "m", "l"]

    def test_older_report_ranks_higher(self):
        tasks = [make_task("new", "medium", 1), make_task("old", "medium", 5)]

        ordered = prioritize(tasks, START_TIME)

        assert [t.report_id for t in ordered] == ["old", "new"]

    def test_age_can_outweigh_severity(self):
        """Test a low report waiting 100 hours outranks a fresh medium one."""
        tasks = [make_task("medium", "medium"), make_task("stale", "low", 100)]

        ordered = prioritize(tasks, START_TIME)

        assert ordered[0].report_id == "stale"

    def test_equal_priority_keeps_input_order(self):
        tasks = [make_task(str(i), "high", 2) for i in range(5)]

        ordered = prioritize(tasks, START_TIME)

        assert [t.report_id for t in ordered] == ["0", "1", "2", "3", "4"]

    def test_priority_formula(self):
        assert calculate_priority("high", START_TIME - timedelta(hours=3), START_TIME) == 103
        assert calculate_priority(None, START_TIME, START_TIME) == 10

    def test_estimated_minutes(self):
        assert estimated_minutes("high") == 60
        assert estimated_minutes("medium") == 30
        assert estimated_minutes(None) == 15

    def test_filters(self):
        tasks = [
            make_task("a", "high", status=ReportStatus.ASSIGNED),
            make_task("b", "low", zone="Ward B"),
            make_task("c", "low"),
        ]

        assert [t.report_id for t in filter_by_status(tasks, "assigned")] == ["a"]
        assert [t.report_id for t in filter_by_zones(tasks, ["Ward B"])] == ["b"]


class TestTaskScheduler:
    """Test suite for worker task lists."""

    def test_lists_assigned_and_zone_reports(self, workflow, services, worker, clock):
        mine = workflow.assigned(severity="low")
        clock.advance(minutes=6)
        in_zone = workflow.submit(
            device_id="device-0002", lat=REPORT_LAT + 0.01, zone="Ward A", severity="high"
        )
        clock.advance(minutes=6)
        workflow.submit(device_id="device-0003", lat=REPORT_LAT + 0.02, zone="Ward B")

        tasks = services.scheduler.list_worker_tasks(worker.id)

        assert [t.report_id for t in tasks] == [in_zone.id, mine.id]
        assert tasks[0].estimated_minutes == 60

    def test_excludes_resolved_and_other_workers(self, workflow, services, worker, other_worker, clock):
        workflow.resolved()
        clock.advance(minutes=6)
        theirs = workflow.submit(device_id="device-0002", lat=REPORT_LAT + 0.01)
        services.status.assign(theirs.id, other_worker.id)

        assert services.scheduler.list_worker_tasks(worker.id) == []

    def test_status_filter(self, workflow, services, worker, clock):
        in_progress, _ = workflow.in_progress()
        clock.advance(minutes=6)
        workflow.assigned(device_id="device-0002", lat=REPORT_LAT + 0.01)

        tasks = services.scheduler.list_worker_tasks(worker.id, status="in_progress")

        assert [t.report_id for t in tasks] == [in_progress.id]

    def test_unknown_status_filter(self, services, worker):
        with pytest.raises(ValidationError):
            services.scheduler.list_worker_tasks(worker.id, status="archived")

    def test_distance_from_worker(self, workflow, services, worker):
        workflow.assigned()

        here = GeoLocation(offset_north(REPORT_LAT, 120), REPORT_LNG)
        tasks = services.scheduler.list_worker_tasks(worker.id, worker_location=here)

        assert tasks[0].distance_meters == pytest.approx(120.0, abs=0.01)
        assert tasks[0].to_dict()["distance_meters"] == 120.0

    def test_unknown_worker(self, services):
        with pytest.raises(NotFoundError):
            services.scheduler.list_worker_tasks("no-such-worker")
