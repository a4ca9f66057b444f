"""
Database module for CleanCity
Relational store for reports, verifications and the points ledger
"""

from .connection import DatabaseConnection
from .models import (
    Base,
    Citizen,
    Worker,
    Report,
    Verification,
    PointsHistory,
    ReportStatus,
    Severity,
    ApprovalStatus,
    PointReason,
)

__all__ = [
    "DatabaseConnection",
    "Base",
    "Citizen",
    "Worker",
    "Report",
    "Verification",
    "PointsHistory",
    "ReportStatus",
    "Severity",
    "ApprovalStatus",
    "PointReason",
]
