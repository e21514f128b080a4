"""
Geo-zone resolution
===================

Maps coordinates to service zones, flags coarse zone changes for location
pings, and decides inter-regional eligibility and surcharge.

Zone containment
----------------
A zone is a circle (center + radius in metres).  When several active zones
contain a point the highest ``priority`` wins; ties go to the tighter radius,
then the lower id, so resolution is deterministic.

Zone-change heuristic
---------------------
``zone_changed`` is intentionally coarse: a move counts as significant when
either coordinate moves by more than a fixed number of degrees (0.1° ≈ 11 km).
It avoids a zone lookup on every location ping at the cost of missing border
crossings made in small steps.

Complexity: O(Z) per resolution, Z = active zones.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .distance import estimate_travel, haversine_m
from .entities import InterRegionalRoute, Location, ServiceZone

DEFAULT_CHANGE_THRESHOLD_DEG = 0.1
DEFAULT_RATE_PER_KM = 2.0


@dataclass(frozen=True)
class InterRegionalCheck:
    can_book: bool
    is_inter_regional: bool
    origin_zone: Optional[ServiceZone] = None
    destination_zone: Optional[ServiceZone] = None
    additional_fee: float = 0.0
    requires_approval: bool = False
    distance_km: float = 0.0
    duration_min: int = 0


class GeoZoneResolver:
    def __init__(
        self,
        zones: Iterable[ServiceZone],
        routes: Iterable[InterRegionalRoute] = (),
        change_threshold_deg: float = DEFAULT_CHANGE_THRESHOLD_DEG,
        rate_per_km: float = DEFAULT_RATE_PER_KM,
    ):
        self.zones = sorted(
            (z for z in zones if z.is_active),
            key=lambda z: (-z.priority, z.radius_m, z.id),
        )
        self.routes = [r for r in routes if r.is_active]
        self.change_threshold_deg = change_threshold_deg
        self.rate_per_km = rate_per_km

    def resolve_zone(self, lat: float, lng: float) -> Optional[ServiceZone]:
        """Highest-priority active zone containing the point, if any."""
        for zone in self.zones:
            distance = haversine_m(
                lat, lng, zone.center.latitude, zone.center.longitude
            )
            if distance <= zone.radius_m:
                return zone
        return None

    def get(self, zone_id: int) -> Optional[ServiceZone]:
        return next((z for z in self.zones if z.id == zone_id), None)

    def zone_changed(
        self, prev_lat: float, prev_lng: float, lat: float, lng: float
    ) -> bool:
        return (
            abs(prev_lat - lat) > self.change_threshold_deg
            or abs(prev_lng - lng) > self.change_threshold_deg
        )

    def route_between(
        self, origin_id: int, destination_id: int
    ) -> Optional[InterRegionalRoute]:
        return next(
            (r for r in self.routes if r.connects(origin_id, destination_id)),
            None,
        )

    def can_create_inter_regional(
        self, pickup: Location, dropoff: Location
    ) -> InterRegionalCheck:
        origin = self.resolve_zone(pickup.latitude, pickup.longitude)
        destination = self.resolve_zone(dropoff.latitude, dropoff.longitude)

        if origin is None or destination is None:
            return InterRegionalCheck(
                can_book=False,
                is_inter_regional=False,
                origin_zone=origin,
                destination_zone=destination,
            )

        if origin.id == destination.id:
            return InterRegionalCheck(
                can_book=True,
                is_inter_regional=False,
                origin_zone=origin,
                destination_zone=destination,
            )

        route = self.route_between(origin.id, destination.id)
        if route is None:
            return InterRegionalCheck(
                can_book=False,
                is_inter_regional=False,
                origin_zone=origin,
                destination_zone=destination,
            )

        travel = estimate_travel(
            pickup.latitude, pickup.longitude, dropoff.latitude, dropoff.longitude
        )
        base_fee = route.base_fee or max(
            origin.inter_regional_fee, destination.inter_regional_fee
        )
        fee = round(base_fee + travel.distance_km * self.rate_per_km, 2)
        return InterRegionalCheck(
            can_book=True,
            is_inter_regional=True,
            origin_zone=origin,
            destination_zone=destination,
            additional_fee=fee,
            requires_approval=route.requires_approval,
            distance_km=travel.distance_km,
            duration_min=travel.duration_min,
        )
