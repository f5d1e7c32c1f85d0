# Pure geographic helpers on a spherical earth.
# No side effects, no imports from other project modules.

import math
from typing import Optional, Tuple

EARTH_RADIUS_M = 6_371_000.0


def distance_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Great-circle (haversine) distance between two points in metres.

    Args:
        lat1, lng1: First point in decimal degrees.
        lat2, lng2: Second point in decimal degrees.

    Returns:
        Distance in metres, never negative.
    """
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lng / 2) ** 2
    )
    # Rounding can push a a hair outside [0, 1] near the poles
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def normalize_heading(heading: Optional[float]) -> float:
    """Return a usable compass heading; unknown or out-of-range becomes 0 (north)."""
    if heading is None:
        return 0.0
    try:
        value = float(heading)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value) or not 0 <= value <= 360:
        return 0.0
    return value


def projected_point(
    lat: float,
    lng: float,
    heading: Optional[float],
    distance_m: float,
) -> Tuple[float, float]:
    """
    Destination reached by travelling distance_m from (lat, lng) along heading.

    Args:
        lat, lng:   Origin in decimal degrees.
        heading:    Compass heading in degrees; see normalize_heading.
        distance_m: Distance to project forward in metres.

    Returns:
        (lat, lng) of the destination, longitude wrapped to [-180, 180].
    """
    delta = distance_m / EARTH_RADIUS_M
    theta = math.radians(normalize_heading(heading))
    phi1 = math.radians(lat)
    lambda1 = math.radians(lng)

    sin_phi2 = (
        math.sin(phi1) * math.cos(delta)
        + math.cos(phi1) * math.sin(delta) * math.cos(theta)
    )
    phi2 = math.asin(min(1.0, max(-1.0, sin_phi2)))
    lambda2 = lambda1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(phi1),
        math.cos(delta) - math.sin(phi1) * math.sin(phi2),
    )

    dest_lng = (math.degrees(lambda2) + 540) % 360 - 180
    return math.degrees(phi2), dest_lng
