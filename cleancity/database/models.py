"""
SQLAlchemy models for CleanCity
Reports, field verifications, the citizen points ledger and workers
"""

import enum
import uuid

from sqlalchemy import (
    Column, Integer, Float, String, Text, Boolean, Date,
    DateTime, ForeignKey, Index, JSON, CheckConstraint, Enum as SQLEnum, text
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.dialects.postgresql import JSONB

from cleancity.core.clock import utcnow

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum_column(enum_cls, name: str) -> SQLEnum:
    """Store enum values (not member names) so rows read like the API."""
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class ReportStatus(str, enum.Enum):
    """Lifecycle status of a waste report."""
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    VERIFIED = "verified"
    RESOLVED = "resolved"


class Severity(str, enum.Enum):
    """Citizen-estimated severity of a waste spot."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ApprovalStatus(str, enum.Enum):
    """Administrative decision on a field verification."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PointReason(str, enum.Enum):
    """Why points were credited."""
    REPORT_VERIFIED = "report_verified"


class Citizen(Base):
    """
    Anonymous citizen identified by device fingerprint.

    Holds the points ledger and the per-device admission counters.
    """
    __tablename__ = "citizens"

    device_id = Column(String(64), primary_key=True)

    first_seen = Column(DateTime, nullable=False, default=utcnow)
    last_active = Column(DateTime, nullable=False, default=utcnow)

    # Points ledger
    total_points = Column(Integer, nullable=False, default=0)
    reports_count = Column(Integer, nullable=False, default=0)
    current_badge = Column(String(50), nullable=False, default="Cleanliness Rookie")
    streak_days = Column(Integer, nullable=False, default=0)
    # Submission date of the latest credited report
    last_report_date = Column(Date)

    # Admission state
    last_submission_at = Column(DateTime)
    daily_count = Column(Integer, nullable=False, default=0)
    daily_count_date = Column(Date)

    __table_args__ = (
        Index("idx_citizens_points", total_points),
        CheckConstraint("total_points >= 0", name="ck_citizens_points_non_negative"),
    )

    def __repr__(self):
        return f"<Citizen({self.device_id}, points={self.total_points})>"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "device_id": self.device_id,
            "total_points": self.total_points,
            "reports_count": self.reports_count,
            "current_badge": self.current_badge,
            "streak_days": self.streak_days,
            "last_active": self.last_active.isoformat() if self.last_active else None,
        }


class Worker(Base):
    """Sanitation field worker."""
    __tablename__ = "workers"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(100), nullable=False)
    phone = Column(String(15), unique=True)
    assigned_zones = Column(JSONType, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Worker({self.id}, name={self.name})>"


class Report(Base):
    """
    Waste report submitted by a citizen.

    Stage timestamps are set by the status state machine only.
    """
    __tablename__ = "reports"

    id = Column(String(36), primary_key=True, default=_new_id)
    device_id = Column(String(64), ForeignKey("citizens.device_id"), nullable=False)

    # Location
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    location_accuracy = Column(Float)
    zone = Column(String(100))

    # Report details
    photo_url = Column(Text, nullable=False)
    description = Column(String(50))
    severity = Column(_enum_column(Severity, "report_severity"))
    waste_types = Column(JSONType, nullable=False, default=list)

    # Lifecycle
    status = Column(
        _enum_column(ReportStatus, "report_status"),
        nullable=False,
        default=ReportStatus.OPEN
    )
    created_at = Column(DateTime, nullable=False, default=utcnow)
    assigned_at = Column(DateTime)
    in_progress_at = Column(DateTime)
    verified_at = Column(DateTime)
    resolved_at = Column(DateTime)

    assigned_worker_id = Column(String(36), ForeignKey("workers.id"), nullable=True)
    points_awarded = Column(Integer, nullable=False, default=0)

    verifications = relationship(
        "Verification",
        back_populates="report",
        order_by="Verification.started_at"
    )

    __table_args__ = (
        Index("idx_reports_status", status),
        Index("idx_reports_location", latitude, longitude),
        Index("idx_reports_created_at", created_at),
        Index("idx_reports_device_id", device_id),
        Index("idx_reports_worker_id", assigned_worker_id),
    )

    def __repr__(self):
        return f"<Report({self.id}, status={self.status.value}, lat={self.latitude})>"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "device_id": self.device_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "location_accuracy": self.location_accuracy,
            "zone": self.zone,
            "photo_url": self.photo_url,
            "description": self.description,
            "severity": self.severity.value if self.severity else None,
            "waste_types": list(self.waste_types or []),
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "assigned_at": _iso(self.assigned_at),
            "in_progress_at": _iso(self.in_progress_at),
            "verified_at": _iso(self.verified_at),
            "resolved_at": _iso(self.resolved_at),
            "assigned_worker_id": self.assigned_worker_id,
            "points_awarded": self.points_awarded,
        }


class Verification(Base):
    """
    Worker before/after proof for a report's cleanup.

    At most one pending verification exists per report; rejected ones are
    kept for audit.
    """
    __tablename__ = "verifications"

    id = Column(String(36), primary_key=True, default=_new_id)
    report_id = Column(String(36), ForeignKey("reports.id"), nullable=False)
    worker_id = Column(String(36), ForeignKey("workers.id"), nullable=False)

    before_photo_url = Column(Text, nullable=False)
    after_photo_url = Column(Text)

    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)
    time_spent_minutes = Column(Integer)

    # Worker position at task start
    worker_latitude = Column(Float, nullable=False)
    worker_longitude = Column(Float, nullable=False)
    worker_accuracy = Column(Float)
    distance_meters = Column(Float)

    # Approval gate
    approval_status = Column(
        _enum_column(ApprovalStatus, "approval_status"),
        nullable=False,
        default=ApprovalStatus.PENDING
    )
    decided_by = Column(String(64))
    decided_at = Column(DateTime)
    rejection_reason = Column(Text)

    report = relationship("Report", back_populates="verifications")

    __table_args__ = (
        Index("idx_verifications_report", report_id),
        Index("idx_verifications_approval", approval_status),
        # One pending verification per report
        Index(
            "uq_verifications_pending_report", report_id, unique=True,
            postgresql_where=text("approval_status = 'pending'"),
            sqlite_where=text("approval_status = 'pending'"),
        ),
    )

    def __repr__(self):
        return f"<Verification({self.id}, report={self.report_id}, {self.approval_status.value})>"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "report_id": self.report_id,
            "worker_id": self.worker_id,
            "before_photo_url": self.before_photo_url,
            "after_photo_url": self.after_photo_url,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "time_spent_minutes": self.time_spent_minutes,
            "worker_latitude": self.worker_latitude,
            "worker_longitude": self.worker_longitude,
            "distance_meters": self.distance_meters,
            "approval_status": self.approval_status.value,
            "decided_by": self.decided_by,
            "decided_at": _iso(self.decided_at),
            "rejection_reason": self.rejection_reason,
        }


class PointsHistory(Base):
    """Append-only record of every credit; one row per report at most."""
    __tablename__ = "points_history"

    id = Column(String(36), primary_key=True, default=_new_id)
    device_id = Column(String(64), ForeignKey("citizens.device_id"), nullable=False)
    report_id = Column(String(36), ForeignKey("reports.id"), nullable=False, unique=True)
    points = Column(Integer, nullable=False)
    reason = Column(_enum_column(PointReason, "point_reason"), nullable=False)
    breakdown = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_points_history_device", device_id),
    )

    def __repr__(self):
        return f"<PointsHistory({self.device_id}, report={self.report_id}, +{self.points})>"


def _iso(value):
    return value.isoformat() if value else None
