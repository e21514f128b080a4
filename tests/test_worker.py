"""Dispatch worker cycle against the test database and a mocked Redis."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from dispatch_core.domain.entities import BookingRequest, Location
from dispatch_core.domain.enums import BookingStatus, Notice, OfferStatus, ServiceKind
from dispatch_core.domain.pricing import PricingEngine
from dispatch_core.infrastructure.events import EventBuffer
from dispatch_core.infrastructure.locks import KeyedLock
from dispatch_core.infrastructure.repositories import BookingRepository, OfferRepository
from dispatch_core.services.container import build_services
from dispatch_core.workers.dispatcher import run_dispatch_cycle
from tests.conftest import RecordingPublisher, add_provider, customer


def ride(**kwargs) -> BookingRequest:
    return BookingRequest(
        service_kind=ServiceKind.RIDE,
        pickup=Location(5.60, -0.19),
        dropoff=Location(5.65, -0.20),
        **kwargs,
    )


def free_lock() -> AsyncMock:
    redis = AsyncMock()
    redis.set = AsyncMock(return_value=True)
    redis.eval = AsyncMock(return_value=1)
    return redis


async def seed(session_factory, clock, *requests, providers=()):
    """Commit providers and bookings in their own unit of work."""
    async with session_factory() as session:
        for lat, lng in providers:
            await add_provider(session, lat, lng)
        services = build_services(
            session, EventBuffer(), PricingEngine(), KeyedLock(), clock
        )
        bookings = [await services.lifecycle.create(customer(i + 1), r) for i, r in enumerate(requests)]
        await session.commit()
    return bookings


class TestDispatchCycle:
    @pytest.mark.asyncio
    async def test_skips_when_lock_is_held(self, session_factory, clock):
        redis = AsyncMock()
        redis.set = AsyncMock(return_value=False)
        outbound = RecordingPublisher()

        issued = await run_dispatch_cycle(
            outbound, PricingEngine(), session_factory, redis=redis, clock=clock
        )
        assert issued == 0
        assert outbound.events == []
        redis.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_expires_and_redispatches(self, session_factory, clock):
        [booking] = await seed(
            session_factory, clock, ride(), providers=[(5.605, -0.19), (5.80, -0.19)]
        )
        clock.advance(seconds=61)
        outbound = RecordingPublisher()
        redis = free_lock()

        issued = await run_dispatch_cycle(
            outbound, PricingEngine(), session_factory, redis=redis, clock=clock
        )
        assert issued == 1
        redis.eval.assert_awaited_once()

        async with session_factory() as session:
            offers = OfferRepository(session)
            statuses = {
                o.provider_id: o.status
                for pid in (1, 2)
                for o in await offers.list_for_provider(pid)
            }
            assert statuses == {1: OfferStatus.EXPIRED, 2: OfferStatus.OFFERED}
            reloaded = await BookingRepository(session).get(booking.id)
            assert reloaded.dispatch_attempts == 2

        [offer] = outbound.named(Notice.NEW_BOOKING_REQUEST.value)
        assert offer.target == 2

    @pytest.mark.asyncio
    async def test_releases_scheduled_bookings_when_due(self, session_factory, clock):
        soon = clock.now + timedelta(minutes=10)
        later = clock.now + timedelta(hours=2)
        due, not_due = await seed(
            session_factory,
            clock,
            ride(scheduled_at=soon),
            ride(scheduled_at=later),
            providers=[(5.605, -0.19)],
        )
        assert due.status == BookingStatus.CONFIRMED

        outbound = RecordingPublisher()
        await run_dispatch_cycle(
            outbound, PricingEngine(), session_factory, redis=free_lock(), clock=clock
        )

        async with session_factory() as session:
            repo = BookingRepository(session)
            assert (await repo.get(due.id)).status == BookingStatus.PENDING
            assert (await repo.get(not_due.id)).status == BookingStatus.CONFIRMED
            assert [o.booking_id for o in await OfferRepository(session).list_for_provider(1)] == [due.id]

        assert outbound.sent_to("provider", 1) == [Notice.NEW_BOOKING_REQUEST.value]

    @pytest.mark.asyncio
    async def test_refreshes_demand(self, session_factory, clock):
        await seed(session_factory, clock, ride(), ride())
        pricing = PricingEngine()
        await run_dispatch_cycle(
            RecordingPublisher(), pricing, session_factory, redis=free_lock(), clock=clock
        )
        assert pricing.demand == (2, 0)
