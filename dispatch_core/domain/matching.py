"""
Driver Matching Engine
======================

1. **Spatial Prefilter** -- H3 hexagons at resolution 7 (~5.16 km²).  The
   repository only loads providers whose last cell lies inside
   ``grid_disk(pickup_cell, k)``, with ``k`` sized from the search radius.
2. **Eligibility**       -- service kind, online + available + verified,
   zone authorisation (zone-restricted bookings only), inter-regional
   eligibility (inter-regional bookings only), search radius.
3. **Ranking**           -- ascending great-circle distance; ties broken by
   rating descending, then provider id.

The engine is a pure read+rank function: it never mutates booking or
provider state.  Results are only as fresh as the last location ping.

Complexity
----------
Let P = providers returned by the prefilter.

* Filtering:  O(P)
* Ranking:    O(P log P)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional

import h3

from .distance import DEFAULT_SPEED_KMH, estimate_travel
from .entities import Location, ProviderSnapshot
from .enums import ServiceKind

STANDARD_LIMIT = 5
INTER_REGIONAL_LIMIT = 3
DEFAULT_RADIUS_KM = 15.0


def cell_for(lat: float, lng: float, resolution: int = 7) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    return h3.latlng_to_cell(lat, lng, resolution)


def search_cells(
    lat: float, lng: float, radius_km: float, resolution: int = 7
) -> set[str]:
    """
    H3 cells covering a circle of *radius_km* around a point.

    Neighbouring cell centres are ``edge * sqrt(3)`` apart, so that many
    rings cover the radius; one extra ring absorbs the offset of the
    point inside its own cell.
    """
    edge_km = h3.average_hexagon_edge_length(resolution, unit="km")
    k = math.ceil(radius_km / (edge_km * math.sqrt(3))) + 1
    return set(h3.grid_disk(cell_for(lat, lng, resolution), k))


@dataclass(frozen=True)
class ZoneContext:
    """Zone facts about a booking that constrain who may serve it."""

    pickup_zone_id: Optional[int] = None
    is_inter_regional: bool = False

    @property
    def is_zone_restricted(self) -> bool:
        return self.pickup_zone_id is not None


@dataclass(frozen=True)
class Candidate:
    provider_id: int
    distance_km: float
    eta_min: int
    rating: float


class DriverMatchingEngine:
    def __init__(
        self,
        radius_km: float = DEFAULT_RADIUS_KM,
        standard_limit: int = STANDARD_LIMIT,
        inter_regional_limit: int = INTER_REGIONAL_LIMIT,
        speed_kmh: float = DEFAULT_SPEED_KMH,
    ):
        self.radius_km = radius_km
        self.standard_limit = standard_limit
        self.inter_regional_limit = inter_regional_limit
        self.speed_kmh = speed_kmh

    def is_eligible(
        self,
        provider: ProviderSnapshot,
        kind: ServiceKind,
        zone_context: ZoneContext,
    ) -> bool:
        if not provider.serves(kind):
            return False
        if not (provider.is_online and provider.is_available and provider.is_verified):
            return False
        if provider.location is None:
            return False
        if zone_context.is_zone_restricted and not provider.authorized_in(
            zone_context.pickup_zone_id
        ):
            return False
        if zone_context.is_inter_regional and not provider.can_take_inter_regional(
            zone_context.pickup_zone_id
        ):
            return False
        return True

    def find_candidates(
        self,
        providers: Iterable[ProviderSnapshot],
        pickup: Location,
        kind: ServiceKind,
        zone_context: ZoneContext = ZoneContext(),
        exclude: Iterable[int] = (),
        radius_km: Optional[float] = None,
    ) -> list[Candidate]:
        radius = radius_km if radius_km is not None else self.radius_km
        excluded = set(exclude)

        ranked: list[Candidate] = []
        for provider in providers:
            if provider.id in excluded:
                continue
            if not self.is_eligible(provider, kind, zone_context):
                continue

            travel = estimate_travel(
                provider.location.latitude,
                provider.location.longitude,
                pickup.latitude,
                pickup.longitude,
                self.speed_kmh,
            )
            if travel.distance_km > radius:
                continue
            ranked.append(
                Candidate(
                    provider_id=provider.id,
                    distance_km=round(travel.distance_km, 3),
                    eta_min=travel.duration_min,
                    rating=provider.rating,
                )
            )

        ranked.sort(key=lambda c: (c.distance_km, -c.rating, c.provider_id))
        limit = (
            self.inter_regional_limit
            if zone_context.is_inter_regional
            else self.standard_limit
        )
        return ranked[:limit]
