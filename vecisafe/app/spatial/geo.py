"""
geo.py — Great-circle distance maths for proximity alerting.

Provides:
    - Coordinate value type with range validation
    - Haversine distance between two (lat, lon) points, in metres
    - Exact bounding box of a search circle (antimeridian and pole aware)
    - Human-readable distance formatting

All distances are in **metres**. Coordinates are in **decimal degrees**.

Mathematical Foundation — Haversine Formula
============================================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

Where:
    φ  = latitude in radians
    λ  = longitude in radians
    R  = spherical Earth radius, 6 371 000 m

The result is not rounded: the GeoIndex and the nearby-alerts read path
must agree exactly on which points sit on a radius boundary.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from vecisafe.app.core.errors import InvalidLocationError


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_M: float = 6_371_000.0


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

def validate_lat_lon(latitude: float, longitude: float) -> None:
    """Raise InvalidLocationError unless both values are finite and in range."""
    if not (isinstance(latitude, (int, float)) and math.isfinite(latitude)
            and -90.0 <= latitude <= 90.0):
        raise InvalidLocationError("latitude", latitude)
    if not (isinstance(longitude, (int, float)) and math.isfinite(longitude)
            and -180.0 <= longitude <= 180.0):
        raise InvalidLocationError("longitude", longitude)


@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        validate_lat_lon(self.latitude, self.longitude)

    @property
    def lat_rad(self) -> float:
        return math.radians(self.latitude)

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Coordinate":
        return cls(float(data["latitude"]), float(data["longitude"]))


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def haversine_m(point1: Coordinate, point2: Coordinate) -> float:
    """
    Great-circle distance between two points, in metres.

    Examples
    --------
    >>> haversine_m(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    >>> 13.0 < haversine_m(Coordinate(40.7128, -74.0060),
    ...                    Coordinate(40.7129, -74.0061)) < 15.0
    True
    """
    # Same operation order as the mobile client: degree differences are
    # converted after subtracting and products run left to right. Both sides
    # must agree to the last bit.
    phi1 = point1.latitude * math.pi / 180.0
    phi2 = point2.latitude * math.pi / 180.0
    d_phi = (point2.latitude - point1.latitude) * math.pi / 180.0
    d_lambda = (point2.longitude - point1.longitude) * math.pi / 180.0

    half_phi = math.sin(d_phi / 2.0)
    half_lambda = math.sin(d_lambda / 2.0)
    a = (
        half_phi * half_phi
        + math.cos(phi1) * math.cos(phi2) * half_lambda * half_lambda
    )

    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def is_within(center: Coordinate, point: Coordinate, radius_m: float) -> bool:
    """True if ``point`` lies on or inside the circle around ``center``."""
    return haversine_m(center, point) <= radius_m


# ---------------------------------------------------------------------------
# Bounding box
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BoundingBox:
    """
    Lat/lon rectangle(s) fully containing a search circle.

    ``lon_ranges`` holds one (min, max) pair, or two when the circle
    crosses the antimeridian. A circle reaching a pole spans every
    longitude.
    """
    min_lat: float
    max_lat: float
    lon_ranges: Tuple[Tuple[float, float], ...]

    @property
    def spans_all_longitudes(self) -> bool:
        return self.lon_ranges == ((-180.0, 180.0),)

    def contains(self, lat: float, lon: float) -> bool:
        if not (self.min_lat <= lat <= self.max_lat):
            return False
        return any(lo <= lon <= hi for lo, hi in self.lon_ranges)


# Slack added to every edge so points exactly on the radius survive
# floating-point rounding in the box maths.
_BOX_PAD_DEG = 1e-9


def bounding_box(center: Coordinate, radius_m: float) -> BoundingBox:
    """
    Compute the smallest lat/lon box containing every point within
    ``radius_m`` of ``center``.

    The longitude half-width is asin(sin θ / cos φ), the exact tangent
    meridian of the circle; the common θ / cos φ shortcut undershoots at
    higher latitudes and would drop real matches.
    """
    angular = radius_m / EARTH_RADIUS_M
    if angular >= math.pi:
        return BoundingBox(-90.0, 90.0, ((-180.0, 180.0),))

    delta_lat = math.degrees(angular) + _BOX_PAD_DEG
    min_lat = center.latitude - delta_lat
    max_lat = center.latitude + delta_lat

    if min_lat <= -90.0 or max_lat >= 90.0:
        return BoundingBox(max(min_lat, -90.0), min(max_lat, 90.0), ((-180.0, 180.0),))

    ratio = math.sin(angular) / math.cos(center.lat_rad)
    if ratio >= 1.0:
        return BoundingBox(min_lat, max_lat, ((-180.0, 180.0),))

    delta_lon = math.degrees(math.asin(ratio)) + _BOX_PAD_DEG
    min_lon = center.longitude - delta_lon
    max_lon = center.longitude + delta_lon

    ranges: List[Tuple[float, float]] = []
    if min_lon < -180.0:
        ranges.append((min_lon + 360.0, 180.0))
        ranges.append((-180.0, max_lon))
    elif max_lon > 180.0:
        ranges.append((min_lon, 180.0))
        ranges.append((-180.0, max_lon - 360.0))
    else:
        ranges.append((min_lon, max_lon))

    return BoundingBox(min_lat, max_lat, tuple(ranges))


# ---------------------------------------------------------------------------
# Utility: Human-readable distance
# ---------------------------------------------------------------------------

def format_distance(meters: float) -> str:
    """
    Format a distance for display.

    >>> format_distance(450.2)
    '450 m'
    >>> format_distance(8330.0)
    '8.33 km'
    """
    if meters < 1000.0:
        return f"{int(meters)} m"
    return f"{meters / 1000.0:.2f} km"
