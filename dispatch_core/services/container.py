"""Wires the use-case services over one unit of work."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_core.config import settings
from dispatch_core.domain.entities import utcnow
from dispatch_core.domain.pricing import PricingOracle
from dispatch_core.infrastructure.events import EventPublisher

from .dispatcher import DispatchNotifier
from .lifecycle import BookingLifecycle, Clock
from .shared_rides import SharedRidePool
from .tracking import ProviderTracking
from .zones import ZoneDirectory


@dataclass
class Services:
    zones: ZoneDirectory
    lifecycle: BookingLifecycle
    dispatcher: DispatchNotifier
    shared_rides: SharedRidePool
    tracking: ProviderTracking


def build_services(
    session: AsyncSession,
    events: EventPublisher,
    pricing: PricingOracle,
    lock_factory: Optional[Callable] = None,
    clock: Clock = utcnow,
    config=settings,
) -> Services:
    zones = ZoneDirectory(session, config)
    lifecycle = BookingLifecycle(session, zones, pricing, events, clock, config)
    dispatcher = DispatchNotifier(session, lifecycle, events, clock=clock, config=config)
    shared_rides = SharedRidePool(
        session, lifecycle, events, lock_factory=lock_factory, config=config
    )
    lifecycle.dispatcher = dispatcher
    lifecycle.shared_rides = shared_rides
    return Services(
        zones=zones,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        shared_rides=shared_rides,
        tracking=ProviderTracking(session, zones, events, clock, config),
    )
