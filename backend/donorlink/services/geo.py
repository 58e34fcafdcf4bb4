"""
Haversine distance between two geographical points.

This is "as the crow flies" distance, not road distance.
"""

from __future__ import annotations

import math

from donorlink.exceptions import InvalidInputError

EARTH_RADIUS_KM = 6371.0

Point = tuple[float, float]  # (latitude, longitude) in degrees


def validate_point(point: Point) -> Point:
    try:
        lat, lon = float(point[0]), float(point[1])
    except (TypeError, ValueError, IndexError):
        raise InvalidInputError(f"Malformed coordinates: {point!r}") from None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InvalidInputError(f"Malformed coordinates: {point!r}")
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        raise InvalidInputError(f"Coordinates out of range: {point!r}")
    return lat, lon


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres between two (lat, lon) pairs in degrees."""
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(min(1.0, math.sqrt(a)))

    return c * EARTH_RADIUS_KM


def distance_km(point_a: Point, point_b: Point) -> float:
    """Validated haversine distance; symmetric and zero for identical points."""
    lat1, lon1 = validate_point(point_a)
    lat2, lon2 = validate_point(point_b)
    return haversine_km(lat1, lon1, lat2, lon2)
