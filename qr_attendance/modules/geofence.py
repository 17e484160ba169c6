"""
Geofence Module - QR Attendance Verification Engine

Great-circle distance (haversine, spherical Earth) and circular containment
checks. Coordinates are degrees, distances are meters. Range checking of
caller-supplied coordinates happens in parse_coordinate, at the boundary.
"""

import math
from dataclasses import dataclass
from typing import Any, Optional

from qr_attendance.modules.errors import ValidationError

EARTH_RADIUS_METERS = 6371000.0


@dataclass(frozen=True)
class Coordinate:
    """A latitude/longitude pair with the accuracy reported by the client."""
    lat: float
    lng: float
    accuracy: Optional[float] = None


@dataclass(frozen=True)
class Geofence:
    """Circular allowed area around a center."""
    center: Coordinate
    radius_meters: float

    def contains(self, point: Coordinate) -> bool:
        return within_radius(point, self.center, self.radius_meters)


def distance_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lng2 - lng1)

    a = (math.sin(delta_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2)
    # rounding can push a just outside [0, 1] for near-antipodal points
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def within_radius(point: Coordinate, center: Coordinate, radius_meters: float) -> bool:
    """True when point lies inside or exactly on the circle."""
    return distance_meters(point.lat, point.lng, center.lat, center.lng) <= radius_meters


def parse_coordinate(lat: Any, lng: Any, accuracy: Any = None) -> Optional[Coordinate]:
    """
    Build a Coordinate from untrusted input.

    Returns None when both lat and lng are missing. Raises ValidationError for
    partial, non-numeric or out-of-range values.
    """
    if lat is None and lng is None:
        return None
    if lat is None or lng is None:
        raise ValidationError("Both latitude and longitude are required")

    try:
        lat = float(lat)
        lng = float(lng)
        accuracy = float(accuracy) if accuracy is not None else None
    except (TypeError, ValueError):
        raise ValidationError("Coordinates must be numeric")

    if math.isnan(lat) or math.isnan(lng) or not -90.0 <= lat <= 90.0 or not -180.0 <= lng <= 180.0:
        raise ValidationError("Coordinates are out of range")
    if accuracy is not None and accuracy < 0:
        raise ValidationError("Accuracy must not be negative")

    return Coordinate(lat=lat, lng=lng, accuracy=accuracy)
