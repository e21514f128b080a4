"""
Provider Tracking
=================

Location pings are last-write-wins: the newest fix overwrites the
provider row (lat/lng, heading, H3 cell) with no ordering check.

Zone lookups are skipped unless the provider has no prior fix or moved more
than the zone-change threshold (0.1 deg on either axis).  On a zone change
the provider gets a ``SYSTEM_ALERT``, plus a ``SAFETY_ALERT`` when not
authorised there.  Every active booking of the provider gets a
``LOCATION_UPDATE`` tracking row and a position + ETA broadcast on its
``booking:{id}`` topic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_core.config import settings
from dispatch_core.domain.distance import estimate_travel
from dispatch_core.domain.entities import (
    Actor,
    Booking,
    ProviderSnapshot,
    ServiceZone,
    TrackingUpdate,
)
from dispatch_core.domain.enums import (
    ActorRole,
    BookingStatus,
    Notice,
    TrackingStatus,
)
from dispatch_core.domain.errors import Conflict, NotFound, Unauthorized
from dispatch_core.domain.matching import cell_for
from dispatch_core.infrastructure.events import EventPublisher
from dispatch_core.infrastructure.repositories import (
    BookingRepository,
    ProviderRepository,
    TrackingRepository,
)

from .lifecycle import Clock
from .zones import ZoneDirectory, validate_point

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocationResult:
    zone: Optional[ServiceZone]
    zone_changed: bool
    is_authorized_in_zone: bool


class ProviderTracking:
    def __init__(
        self,
        session: AsyncSession,
        zones: ZoneDirectory,
        events: EventPublisher,
        clock: Clock,
        config=settings,
    ):
        self.providers = ProviderRepository(session)
        self.bookings = BookingRepository(session)
        self.tracking = TrackingRepository(session)
        self.zones = zones
        self.events = events
        self.clock = clock
        self.config = config

    async def _own_provider(self, actor: Actor) -> ProviderSnapshot:
        if actor.role is not ActorRole.PROVIDER:
            raise Unauthorized("Only providers report locations")
        provider = await self.providers.get(actor.user_id)
        if provider is None:
            raise NotFound(f"Provider {actor.user_id} not found")
        return provider

    async def update_location(
        self,
        actor: Actor,
        latitude: float,
        longitude: float,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> LocationResult:
        validate_point(latitude, longitude)
        provider = await self._own_provider(actor)
        resolver = await self.zones.resolver()

        previous = provider.location
        zone_changed = previous is not None and resolver.zone_changed(
            previous.latitude, previous.longitude, latitude, longitude
        )
        lookup = previous is None or zone_changed
        if lookup:
            zone = resolver.resolve_zone(latitude, longitude)
        elif provider.current_zone_id is not None:
            zone = resolver.get(provider.current_zone_id)
        else:
            zone = None

        now = self.clock()
        await self.providers.update_location(
            provider.id,
            latitude=latitude,
            longitude=longitude,
            h3_cell=cell_for(latitude, longitude, self.config.h3_resolution),
            at=now,
            heading=heading,
            zone_id=zone.id if zone else None,
            update_zone=lookup,
        )

        authorized = zone is None or provider.authorized_in(zone.id)
        if zone_changed and zone is not None:
            logger.info("Provider %s entered zone %s", provider.id, zone.name)
            self.events.notify_provider(
                provider.id,
                Notice.SYSTEM_ALERT,
                {
                    "title": "Service Zone Updated",
                    "zone_id": zone.id,
                    "zone": zone.display_name,
                },
            )
            if not authorized:
                logger.warning(
                    "Provider %s is outside its authorised zones (%s)",
                    provider.id,
                    zone.name,
                )
                self.events.notify_provider(
                    provider.id,
                    Notice.SAFETY_ALERT,
                    {
                        "title": "Unauthorized Service Zone",
                        "zone_id": zone.id,
                        "zone": zone.display_name,
                    },
                )

        for booking in await self.bookings.list_active_for_provider(provider.id):
            await self._report(booking, latitude, longitude, heading, speed, now)

        return LocationResult(
            zone=zone, zone_changed=zone_changed, is_authorized_in_zone=authorized
        )

    async def _report(
        self,
        booking: Booking,
        latitude: float,
        longitude: float,
        heading: Optional[float],
        speed: Optional[float],
        now,
    ) -> None:
        # En route to pickup until the trip starts, then to the dropoff
        target = booking.pickup
        if booking.status is BookingStatus.IN_PROGRESS and booking.dropoff:
            target = booking.dropoff
        eta_min = (
            0
            if booking.status is BookingStatus.ARRIVED
            else estimate_travel(
                latitude,
                longitude,
                target.latitude,
                target.longitude,
                self.config.average_speed_kmh,
            ).duration_min
        )

        await self.tracking.add(
            TrackingUpdate(
                booking_id=booking.id,
                status=TrackingStatus.LOCATION_UPDATE,
                latitude=latitude,
                longitude=longitude,
                heading=heading,
                speed=speed,
                timestamp=now,
            )
        )
        self.events.broadcast(
            f"booking:{booking.id}",
            Notice.LOCATION_UPDATE,
            {
                "booking_id": booking.id,
                "latitude": latitude,
                "longitude": longitude,
                "heading": heading,
                "speed": speed,
                "eta_min": eta_min,
                "timestamp": now.isoformat(),
            },
        )

    async def set_availability(
        self, actor: Actor, is_online: bool, is_available: bool
    ) -> ProviderSnapshot:
        provider = await self._own_provider(actor)
        # An offline provider is never matchable
        is_available = is_available and is_online
        if is_available and await self.bookings.list_active_for_provider(provider.id):
            raise Conflict(f"Provider {provider.id} has an active booking")

        await self.providers.set_status(
            provider.id, is_online=is_online, is_available=is_available
        )
        logger.info(
            "Provider %s online=%s available=%s", provider.id, is_online, is_available
        )
        return await self.providers.get(provider.id)
