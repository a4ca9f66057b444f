"""
CleanCity - Error Taxonomy
Every rejection carries a machine-readable code and a human-readable message.
"""

import math
from typing import Any, Dict, Optional


class CleanCityError(Exception):
    """Base class for all workflow errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    @property
    def retry_after(self) -> Optional[int]:
        return self.details.get("retry_after")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API error body."""
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        for key, value in self.details.items():
            body[_camel(key)] = value
        return body

    def __repr__(self):
        return f"<{self.__class__.__name__}({self.code}: {self.message})>"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


# =============================================================================
# Client errors
# =============================================================================

class ValidationError(CleanCityError):
    """Malformed input; carries the offending field."""
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, field=field)
        self.field = field


class NotFoundError(CleanCityError):
    code = "NOT_FOUND"
    status_code = 404


class ForbiddenError(CleanCityError):
    """Caller is not the actor the current state expects."""
    code = "FORBIDDEN"
    status_code = 403


class StateError(CleanCityError):
    """Illegal transition or stale view of the report's status."""
    code = "STATE_ERROR"
    status_code = 409

    def __init__(self, message: str, current_status: Optional[str] = None,
                 target_status: Optional[str] = None):
        super().__init__(
            message,
            current_status=current_status,
            target_status=target_status,
        )


# =============================================================================
# Admission
# =============================================================================

class AdmissionError(CleanCityError):
    """Submission refused by an abuse-prevention rule."""
    status_code = 429


class DailyLimitError(AdmissionError):
    code = "DAILY_LIMIT_REACHED"

    def __init__(self, limit: int, retry_after: int):
        super().__init__(
            f"Maximum {limit} reports per day reached",
            retry_after=retry_after,
        )


class CooldownError(AdmissionError):
    code = "COOLDOWN_ACTIVE"

    def __init__(self, retry_after: int):
        minutes = max(1, math.ceil(retry_after / 60))
        super().__init__(
            f"Please wait {minutes} minute(s) before submitting another report",
            retry_after=retry_after,
        )


class StalePhotoError(AdmissionError):
    code = "STALE_PHOTO"
    status_code = 400

    def __init__(self, max_age_minutes: int, age_minutes: float):
        super().__init__(
            f"Photo must be taken within the last {max_age_minutes} minutes",
            age_minutes=round(age_minutes, 1),
        )


class DuplicateReportError(AdmissionError):
    code = "DUPLICATE_REPORT"
    status_code = 409

    def __init__(self, duplicate_of: str, radius_meters: float):
        super().__init__(
            f"An open report already exists within {radius_meters:.0f} meters",
            duplicate_of=duplicate_of,
        )


class RateLimitError(CleanCityError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, retry_after: int, scope: str = "api"):
        super().__init__(
            "Too many requests, please try again later",
            retry_after=retry_after,
            scope=scope,
        )


# =============================================================================
# Field verification
# =============================================================================

class GeofenceError(CleanCityError):
    """Worker is too far from the report location."""
    code = "PROXIMITY_ERROR"
    status_code = 400

    def __init__(self, distance: float, max_allowed: float):
        super().__init__(
            f"Worker must be within {max_allowed:.0f} meters of report location. "
            f"Current distance: {round(distance)} meters",
            distance=round(distance, 1),
            max_allowed=max_allowed,
        )
        self.distance = distance


class TimingError(CleanCityError):
    """Time between before and after photos is outside the allowed window."""
    code = "TIMING_ERROR"
    status_code = 400

    def __init__(self, elapsed_minutes: float, min_minutes: float, max_minutes: float):
        super().__init__(
            f"Time between photos must be {min_minutes:g}-{max_minutes:g} minutes. "
            f"Current: {elapsed_minutes:.1f} minutes",
            elapsed=round(elapsed_minutes, 1),
        )
        self.elapsed_minutes = elapsed_minutes


# =============================================================================
# Approval
# =============================================================================

class ApprovalConflictError(CleanCityError):
    """Second decision attempted on an already-decided verification."""
    status_code = 409


class AlreadyApprovedError(ApprovalConflictError):
    code = "ALREADY_APPROVED"

    def __init__(self, verification_id: str):
        super().__init__(
            "Verification already approved",
            verification_id=verification_id,
        )


class AlreadyRejectedError(ApprovalConflictError):
    code = "ALREADY_REJECTED"

    def __init__(self, verification_id: str):
        super().__init__(
            "Verification already rejected",
            verification_id=verification_id,
        )


# =============================================================================
# Server errors
# =============================================================================

class InternalError(CleanCityError):
    """Storage or transaction failure; callers retry with backoff."""
    code = "INTERNAL_ERROR"
    status_code = 500
