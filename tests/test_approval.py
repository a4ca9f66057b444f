"""
Tests for the approval gate
"""
import pytest
from sqlalchemy import event, update

from cleancity.core.errors import (
    AlreadyApprovedError,
    AlreadyRejectedError,
    InternalError,
    NotFoundError,
    StateError,
)
from cleancity.core.geo_utils import GeoLocation
from cleancity.database.models import ApprovalStatus, Citizen, ReportStatus, Verification
from cleancity.events.bus import EventKind
from cleancity.points.ledger import PointsLedger
from cleancity.verification.approval import ApprovalService


class UnavailableLedger(PointsLedger):
    """Ledger whose credits always fail."""

    def award(self, *args, **kwargs):
        raise InternalError("Points store unavailable")


class TestApprove:
    """Test suite for approving verifications."""

    def test_approve_resolves_and_credits(self, workflow, services, db, clock):
        report, verification = workflow.verified()

        result = services.approval.approve(verification.id, "admin-1")

        assert result.new_status == ReportStatus.RESOLVED
        assert result.approval_status == ApprovalStatus.APPROVED
        # base 10 + high 5 + first in area 20
        assert result.points_awarded == 35

        stored = services.status.get_report(report.id)
        assert stored.status == ReportStatus.RESOLVED
        assert stored.resolved_at == clock.now()
        assert stored.points_awarded == 35

        with db.get_session() as session:
            citizen = session.get(Citizen, report.device_id)
            assert citizen.total_points == 35
            assert citizen.reports_count == 1

    def test_decision_is_recorded(self, workflow, services, clock):
        report, verification = workflow.verified()

        services.approval.approve(verification.id, "admin-7")

        found = services.verification.get_verification_for_report(report.id)
        assert found.approval_status == ApprovalStatus.APPROVED
        assert found.decided_by == "admin-7"
        assert found.decided_at == clock.now()

    def test_second_approval_is_conflict(self, workflow, services, db):
        """Test approving twice fails and credits exactly once."""
        report, verification = workflow.verified()
        services.approval.approve(verification.id, "admin-1")

        with pytest.raises(AlreadyApprovedError) as exc_info:
            services.approval.approve(verification.id, "admin-2")

        assert exc_info.value.code == "ALREADY_APPROVED"
        assert services.status.get_report(report.id).status == ReportStatus.RESOLVED
        with db.get_session() as session:
            assert session.get(Citizen, report.device_id).total_points == 35

    def test_concurrent_approval_loses_compare_and_swap(self, workflow, services, db, monkeypatch):
        """Test an approval that read PENDING before another approval committed is refused."""
        report, verification = workflow.verified()
        load = services.approval._load_for_decision

        def load_then_approved_elsewhere(session, verification_id):
            loaded = load(session, verification_id)
            session.execute(
                update(Verification)
                .where(Verification.id == verification_id)
                .values(approval_status=ApprovalStatus.APPROVED, decided_by="admin-2")
                .execution_options(synchronize_session=False)
            )
            return loaded

        monkeypatch.setattr(services.approval, "_load_for_decision", load_then_approved_elsewhere)

        with pytest.raises(AlreadyApprovedError) as exc_info:
            services.approval.approve(verification.id, "admin-1")

        assert exc_info.value.code == "ALREADY_APPROVED"
        stored = services.status.get_report(report.id)
        assert stored.status == ReportStatus.VERIFIED
        assert stored.points_awarded == 0
        found = services.verification.get_verification_for_report(report.id)
        assert found.approval_status == ApprovalStatus.PENDING
        with db.get_session() as session:
            assert session.get(Citizen, report.device_id).total_points == 0

    def test_report_row_locked_before_verification(self, workflow, services, db):
        """Test approval takes row locks in the same order as task completion."""
        _, verification = workflow.verified()
        statements = []

        def record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(db.engine, "before_cursor_execute", record)
        try:
            services.approval.approve(verification.id, "admin-1")
        finally:
            event.remove(db.engine, "before_cursor_execute", record)

        def first(fragment):
            return next(i for i, s in enumerate(statements) if fragment in s)

        assert first("reports.photo_url") < first("verifications.before_photo_url")

    def test_unknown_verification(self, services):
        with pytest.raises(NotFoundError):
            services.approval.approve("missing", "admin-1")

    def test_in_progress_report_cannot_be_approved(self, workflow, services):
        """Test a verification without an after photo cannot be decided."""
        report, verification = workflow.in_progress()

        with pytest.raises(StateError):
            services.approval.approve(verification.id, "admin-1")

        assert services.status.get_report(report.id).status == ReportStatus.IN_PROGRESS

    def test_publishes_events(self, workflow, services):
        report, verification = workflow.verified()

        services.approval.approve(verification.id, "admin-1")

        kinds = [e.kind for e in services.events.history if e.report_id == report.id]
        assert EventKind.VERIFICATION_APPROVED in kinds
        assert EventKind.POINTS_AWARDED in kinds
        assert kinds.index(EventKind.VERIFICATION_APPROVED) < kinds.index(EventKind.POINTS_AWARDED)

    def test_failed_credit_keeps_approval(self, workflow, services, db, clock):
        """Test a ledger failure leaves the report resolved and uncredited."""
        report, verification = workflow.verified()
        approval = ApprovalService(
            db, UnavailableLedger(db, clock, services.events), clock, services.events
        )

        result = approval.approve(verification.id, "admin-1")

        assert result.new_status == ReportStatus.RESOLVED
        assert result.points_awarded == 0
        stored = services.status.get_report(report.id)
        assert stored.status == ReportStatus.RESOLVED
        assert stored.points_awarded == 0

        outcome = services.ledger.reconcile()

        assert outcome["credited"] == [report.id]
        assert services.status.get_report(report.id).points_awarded == 35


class TestReject:
    """Test suite for rejecting verifications."""

    def test_reject_returns_report_to_worker(self, workflow, services, worker):
        report, verification = workflow.verified()

        result = services.approval.reject(verification.id, "admin-1", "  After photo is blurry ")

        assert result.new_status == ReportStatus.ASSIGNED
        stored = services.status.get_report(report.id)
        assert stored.status == ReportStatus.ASSIGNED
        assert stored.assigned_worker_id == worker.id
        assert stored.assigned_at is not None
        assert stored.in_progress_at is None
        assert stored.verified_at is None
        assert stored.points_awarded == 0

        found = services.verification.get_verification_for_report(report.id)
        assert found.approval_status == ApprovalStatus.REJECTED
        assert found.rejection_reason == "After photo is blurry"

    def test_rejection_event_names_worker(self, workflow, services, worker):
        report, verification = workflow.verified()

        services.approval.reject(verification.id, "admin-1", "Wrong spot")

        rejected = [
            e for e in services.events.history if e.kind == EventKind.VERIFICATION_REJECTED
        ]
        assert rejected[-1].payload["worker_id"] == worker.id
        assert rejected[-1].payload["reason"] == "Wrong spot"

    def test_approve_after_reject_is_conflict(self, workflow, services):
        report, verification = workflow.verified()
        services.approval.reject(verification.id, "admin-1")

        with pytest.raises(AlreadyRejectedError):
            services.approval.approve(verification.id, "admin-2")

        assert services.status.get_report(report.id).status == ReportStatus.ASSIGNED

    def test_worker_can_redo_after_rejection(self, workflow, services, worker, clock):
        """Test the full retry cycle after a rejection."""
        report, verification = workflow.verified()
        services.approval.reject(verification.id, "admin-1", "Incomplete")

        retry = services.verification.start_task(
            report.id, worker.id, GeoLocation(report.latitude, report.longitude),
            "https://photos.example.org/before-2.jpg",
        )
        clock.advance(minutes=15)
        services.verification.complete_task(
            report.id, worker.id, "https://photos.example.org/after-2.jpg"
        )
        result = services.approval.approve(retry.id, "admin-1")

        assert result.new_status == ReportStatus.RESOLVED
        history = services.verification.list_verifications_for_report(report.id)
        assert [v.approval_status for v in history] == [
            ApprovalStatus.REJECTED, ApprovalStatus.APPROVED
        ]


class TestReviewQueue:
    """Test suite for the pending list and stats."""

    def test_list_pending_only_completed(self, workflow, services, clock, worker):
        verified_report, verification = workflow.verified()
        clock.advance(minutes=6)
        workflow.in_progress(device_id="device-0002", lat=verified_report.latitude + 0.01)

        pending = services.approval.list_pending()

        assert [item["id"] for item in pending] == [verification.id]
        assert pending[0]["worker_name"] == worker.name
        assert pending[0]["report_severity"] == "high"

    def test_stats(self, workflow, services, clock):
        _, first = workflow.verified()
        clock.advance(hours=2)
        services.approval.approve(first.id, "admin-1")

        clock.advance(minutes=6)
        _, second = workflow.verified(device_id="device-0002", lat=19.0860)
        services.approval.reject(second.id, "admin-1")

        clock.advance(minutes=6)
        workflow.verified(device_id="device-0003", lat=19.0960)

        stats = services.approval.stats()

        assert stats["pending_count"] == 1
        assert stats["approved_today"] == 1
        assert stats["rejected_today"] == 1
        assert stats["avg_approval_hours"] == 2.0
