"""
Route Similarity Scoring
========================

Estimates how closely two pickup/dropoff pairs describe the same trip, for
shared-ride pooling.  Four signals, each in [0, 1]:

* **pickup proximity**   -- 1 at 0 m, linearly to 0 at 2 000 m
* **dropoff proximity**  -- 1 at 0 m, linearly to 0 at 3 000 m
* **bearing similarity** -- 1 at 0°, linearly to 0 at 45° (shorter arc
  between the two pickup->dropoff bearings)
* **length similarity**  -- shorter/longer route length, doubled, capped at 1

Score = 0.30·pickup + 0.30·dropoff + 0.25·bearing + 0.15·length

Complexity: O(1) per pair.
"""

from __future__ import annotations

from dataclasses import dataclass

from .distance import bearing_difference, haversine_m, initial_bearing
from .entities import Location

PICKUP_RANGE_M = 2_000.0
DROPOFF_RANGE_M = 3_000.0
BEARING_RANGE_DEG = 45.0

WEIGHTS = {"pickup": 0.30, "dropoff": 0.30, "bearing": 0.25, "length": 0.15}


@dataclass(frozen=True)
class Route:
    pickup: Location
    dropoff: Location

    @property
    def length_m(self) -> float:
        return _dist(self.pickup, self.dropoff)

    @property
    def bearing(self) -> float:
        return initial_bearing(
            self.pickup.latitude,
            self.pickup.longitude,
            self.dropoff.latitude,
            self.dropoff.longitude,
        )


@dataclass(frozen=True)
class SimilarityBreakdown:
    pickup: float
    dropoff: float
    bearing: float
    length: float

    @property
    def score(self) -> float:
        total = (
            WEIGHTS["pickup"] * self.pickup
            + WEIGHTS["dropoff"] * self.dropoff
            + WEIGHTS["bearing"] * self.bearing
            + WEIGHTS["length"] * self.length
        )
        return round(total, 6)


def _dist(a: Location, b: Location) -> float:
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def _linear_decay(value: float, limit: float) -> float:
    return max(0.0, 1.0 - value / limit)


class RouteSimilarityScorer:
    def breakdown(self, a: Route, b: Route) -> SimilarityBreakdown:
        len_a, len_b = a.length_m, b.length_m

        if len_a == 0 and len_b == 0:
            bearing = 1.0
        elif len_a == 0 or len_b == 0:
            bearing = 0.0
        else:
            diff = bearing_difference(a.bearing, b.bearing)
            bearing = _linear_decay(diff, BEARING_RANGE_DEG)

        longer = max(len_a, len_b)
        ratio = min(len_a, len_b) / longer if longer > 0 else 1.0

        return SimilarityBreakdown(
            pickup=_linear_decay(_dist(a.pickup, b.pickup), PICKUP_RANGE_M),
            dropoff=_linear_decay(_dist(a.dropoff, b.dropoff), DROPOFF_RANGE_M),
            bearing=bearing,
            length=min(1.0, ratio * 2),
        )

    def score(self, a: Route, b: Route) -> float:
        return self.breakdown(a, b).score
