"""
Reports module for CleanCity
Admission control, rate limiting and the report status machine
"""

from .admission import AdmissionControl
from .rate_limit import CounterStore, RateLimiter, RedisCounterStore
from .status import (
    STATUS_ORDER,
    VALID_TRANSITIONS,
    StatusMachine,
    TransitionResult,
    is_terminal,
    next_status,
    validate_transition,
)

__all__ = [
    "AdmissionControl",
    "CounterStore",
    "RateLimiter",
    "RedisCounterStore",
    "STATUS_ORDER",
    "VALID_TRANSITIONS",
    "StatusMachine",
    "TransitionResult",
    "is_terminal",
    "next_status",
    "validate_transition",
]
