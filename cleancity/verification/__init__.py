"""
Verification module for CleanCity
Field verification (geofence + timing) and administrative approval
"""

from .rules import ProximityResult, TimingResult, check_proximity, check_timing
from .service import VerificationService
from .approval import ApprovalResult, ApprovalService

__all__ = [
    "ProximityResult",
    "TimingResult",
    "check_proximity",
    "check_timing",
    "VerificationService",
    "ApprovalResult",
    "ApprovalService",
]
