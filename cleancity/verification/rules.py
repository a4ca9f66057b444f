"""
CleanCity - Verification Rules
Pure geofence and timing predicates for field verification.
"""

import math
from dataclasses import dataclass
from datetime import datetime

from cleancity.core.geo_utils import GeoLocation, distance_meters

DEFAULT_MAX_DISTANCE_METERS = 50.0
DEFAULT_MIN_MINUTES = 2.0
DEFAULT_MAX_MINUTES = 240.0


@dataclass(frozen=True)
class ProximityResult:
    """Worker position against the report location."""
    within: bool
    distance_meters: float
    max_allowed_meters: float


@dataclass(frozen=True)
class TimingResult:
    """Time between before and after photos."""
    within: bool
    elapsed_minutes: float
    time_spent_minutes: int
    min_minutes: float
    max_minutes: float


def check_proximity(
    worker: GeoLocation,
    report: GeoLocation,
    max_distance_meters: float = DEFAULT_MAX_DISTANCE_METERS
) -> ProximityResult:
    """
    Geofence check: is the worker within ``max_distance_meters`` of the report?

    The boundary is inclusive.
    """
    distance = distance_meters(worker, report)
    return ProximityResult(
        within=distance <= max_distance_meters,
        distance_meters=distance,
        max_allowed_meters=max_distance_meters,
    )


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def check_timing(
    started_at: datetime,
    completed_at: datetime,
    min_minutes: float = DEFAULT_MIN_MINUTES,
    max_minutes: float = DEFAULT_MAX_MINUTES
) -> TimingResult:
    """
    Timing check: elapsed minutes must lie in [min_minutes, max_minutes].

    Args:
        started_at: Before-photo timestamp
        completed_at: After-photo timestamp

    Returns:
        TimingResult with the rounded time spent
    """
    elapsed = (completed_at - started_at).total_seconds() / 60
    return TimingResult(
        within=min_minutes <= elapsed <= max_minutes,
        elapsed_minutes=elapsed,
        time_spent_minutes=round_half_up(elapsed),
        min_minutes=min_minutes,
        max_minutes=max_minutes,
    )
