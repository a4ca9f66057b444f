"""
CleanCity - Geospatial Utilities
Distance calculations used by admission, verification and task ordering.
"""

import math
from dataclasses import dataclass

# Earth's radius in kilometers
EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class GeoLocation:
    """GPS fix with optional accuracy radius in meters."""
    lat: float
    lng: float
    accuracy: float = 0.0


@dataclass(frozen=True)
class BoundingBox:
    """Geographic bounding box."""
    west: float   # min longitude
    south: float  # min latitude
    east: float   # max longitude
    north: float  # max latitude

    def contains(self, lat: float, lng: float) -> bool:
        """Check if a point is within the bounding box."""
        return (
            self.west <= lng <= self.east and
            self.south <= lat <= self.north
        )

    @classmethod
    def around(cls, lat: float, lng: float, radius_meters: float) -> "BoundingBox":
        """
        Smallest lat/lng box enclosing a circle of the given radius.

        Used as a cheap index-friendly prefilter before exact haversine checks.
        """
        dlat = meters_to_degrees_lat(radius_meters)
        # Near the poles the longitude span degenerates; clamp to the full range
        cos_lat = math.cos(math.radians(lat))
        dlng = 180.0 if cos_lat < 1e-6 else meters_to_degrees_lon(radius_meters, lat)
        return cls(
            west=max(-180.0, lng - dlng),
            south=max(-90.0, lat - dlat),
            east=min(180.0, lng + dlng),
            north=min(90.0, lat + dlat),
        )


def haversine_distance(
    lat1: float, lon1: float,
    lat2: float, lon2: float
) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1, lon1: First point coordinates in decimal degrees
        lat2, lon2: Second point coordinates in decimal degrees

    Returns:
        Distance in kilometers
    """
    # Convert to radians
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    # Haversine formula
    a = (
        math.sin(delta_lat / 2) ** 2 +
        math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def distance_meters(a: GeoLocation, b: GeoLocation) -> float:
    """Great-circle distance between two fixes in meters."""
    return haversine_distance(a.lat, a.lng, b.lat, b.lng) * 1000


def is_valid_coordinate(lat: float, lng: float) -> bool:
    """Check latitude/longitude ranges (NaN is rejected)."""
    if lat is None or lng is None:
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def meters_to_degrees_lat(meters: float) -> float:
    """Convert meters to degrees of latitude."""
    return meters / 111320


def meters_to_degrees_lon(meters: float, latitude: float) -> float:
    """Convert meters to degrees of longitude at a given latitude."""
    return meters / (111320 * math.cos(math.radians(latitude)))
