"""
Distance, bearing and ETA using great-circle formulas.

Assumption
----------
We use great-circle (Haversine) distance instead of a real routing engine.
ETAs assume a flat average speed (30 km/h city traffic by default), so they
are rough by construction.

Complexity: O(1) per call.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_KM = 6_371.0
DEFAULT_SPEED_KMH = 30.0


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def haversine_m(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    return haversine_km(lat1, lng1, lat2, lng2) * 1000.0


def initial_bearing(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Forward azimuth from point 1 to point 2, in degrees [0, 360)."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlng = math.radians(lng2 - lng1)

    y = math.sin(dlng) * math.cos(lat2_r)
    x = math.cos(lat1_r) * math.sin(lat2_r) - math.sin(lat1_r) * math.cos(
        lat2_r
    ) * math.cos(dlng)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def bearing_difference(b1: float, b2: float) -> float:
    """Shorter-arc angle between two bearings, in degrees [0, 180]."""
    diff = abs(b1 - b2) % 360.0
    return 360.0 - diff if diff > 180.0 else diff


@dataclass(frozen=True)
class TravelEstimate:
    distance_km: float
    duration_min: int


def estimate_travel(
    lat1: float,
    lng1: float,
    lat2: float,
    lng2: float,
    speed_kmh: float = DEFAULT_SPEED_KMH,
) -> TravelEstimate:
    distance = haversine_km(lat1, lng1, lat2, lng2)
    minutes = math.ceil(distance / speed_kmh * 60) if distance > 0 else 0
    return TravelEstimate(distance_km=distance, duration_min=minutes)
