"""Zone lookups backed by the store."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_core.config import settings
from dispatch_core.domain.entities import Location, ServiceZone
from dispatch_core.domain.errors import ValidationError
from dispatch_core.domain.zones import GeoZoneResolver, InterRegionalCheck
from dispatch_core.infrastructure.repositories import ZoneRepository


def validate_point(lat: float, lng: float, label: str = "location") -> None:
    if lat is None or lng is None:
        raise ValidationError(f"{label} coordinates are required")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        raise ValidationError(f"{label} coordinates are out of range")


class ZoneDirectory:
    """Loads active zones and routes once per unit of work."""

    def __init__(self, session: AsyncSession, config=settings):
        self.repo = ZoneRepository(session)
        self.config = config
        self._resolver: Optional[GeoZoneResolver] = None

    async def resolver(self) -> GeoZoneResolver:
        if self._resolver is None:
            self._resolver = GeoZoneResolver(
                await self.repo.list_active_zones(),
                await self.repo.list_active_routes(),
                change_threshold_deg=self.config.zone_change_threshold_deg,
                rate_per_km=self.config.inter_regional_rate_per_km,
            )
        return self._resolver

    async def resolve(self, lat: float, lng: float) -> Optional[ServiceZone]:
        validate_point(lat, lng)
        return (await self.resolver()).resolve_zone(lat, lng)

    async def inter_regional_eligibility(
        self, pickup: Location, dropoff: Location
    ) -> InterRegionalCheck:
        validate_point(pickup.latitude, pickup.longitude, "pickup")
        validate_point(dropoff.latitude, dropoff.longitude, "dropoff")
        return (await self.resolver()).can_create_inter_regional(pickup, dropoff)
