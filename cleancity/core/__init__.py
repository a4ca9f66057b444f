"""
CleanCity - Core Utilities
Central configuration, errors, clock and geospatial helpers.
"""

from cleancity.core.config import settings
from cleancity.core.clock import Clock, utcnow
from cleancity.core.geo_utils import (
    GeoLocation,
    BoundingBox,
    haversine_distance,
    distance_meters,
)

__all__ = [
    "settings",
    "Clock",
    "utcnow",
    "GeoLocation",
    "BoundingBox",
    "haversine_distance",
    "distance_meters",
]
