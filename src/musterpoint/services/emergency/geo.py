"""
Distance and ETA helpers

Pure functions over latitude/longitude pairs in degrees. Coordinates
outside [-90, 90] / [-180, 180] are the caller's problem.
"""

import math

from ...models.emergency import GeoPoint


EARTH_RADIUS_METERS = 6371000.0
WALKING_SPEED_MPS = 1.4


def distance_meters(a: GeoPoint, b: GeoPoint) -> float:
    """
    Great-circle distance between two points (haversine).

    Args:
        a: First point
        b: Second point

    Returns:
        Distance in meters, never negative
    """
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    delta_lat = math.radians(b.latitude - a.latitude)
    delta_lon = math.radians(b.longitude - a.longitude)

    h = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1) * math.cos(lat2) * math.sin(delta_lon / 2) ** 2)
    # Rounding can push h just outside [0, 1] near antipodes
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(h))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def format_distance(meters: float) -> str:
    """'{m}m away' below one kilometre, '{km:.1f}km away' above"""
    rounded = _round_half_up(meters)
    if rounded < 1000:
        return f"{rounded}m away"
    return f"{meters / 1000:.1f}km away"


def estimate_eta(meters: float, walking_speed: float = WALKING_SPEED_MPS) -> str:
    """Walking time rounded to whole minutes"""
    minutes = _round_half_up(meters / walking_speed / 60)
    if minutes < 1:
        return "< 1 min"
    if minutes == 1:
        return "1 min"
    return f"{minutes} mins"


def eta_between(origin: GeoPoint, destination: GeoPoint,
                walking_speed: float = WALKING_SPEED_MPS) -> str:
    return estimate_eta(distance_meters(origin, destination), walking_speed)
