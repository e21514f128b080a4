"""
Concurrency safety tests.

Demonstrates:
1. Distributed lock prevents simultaneous acquire.
2. Compare-and-swap transitions lose cleanly against a stale status.
3. The partial unique index keeps a provider on one active booking.
4. A lost assignment race gives the provider back.
5. Group membership changes run under the group's lock.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError

from dispatch_core.domain.entities import Booking, BookingRequest, Location
from dispatch_core.domain.enums import BookingStatus, ServiceKind
from dispatch_core.domain.errors import Conflict
from dispatch_core.infrastructure.locks import DistributedLock, KeyedLock
from dispatch_core.infrastructure.repositories import BookingRepository, ProviderRepository
from dispatch_core.services.container import build_services
from dispatch_core.services.shared_rides import SharedRideRequest
from tests.conftest import add_provider, customer, provider

RIDE = BookingRequest(
    service_kind=ServiceKind.RIDE,
    pickup=Location(5.60, -0.19),
    dropoff=Location(5.65, -0.20),
)


class TestDistributedLock:
    """Tests the Redis distributed lock logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        lock = DistributedLock(mock_redis, "dispatch-worker", ttl_seconds=10)
        assert await lock.acquire() is True
        mock_redis.set.assert_awaited_once_with(
            "lock:dispatch-worker", lock.token, nx=True, ex=10
        )

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "dispatch-worker", ttl_seconds=10)
        assert await lock.acquire() is False

    @pytest.mark.asyncio
    async def test_release_calls_eval(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        lock = DistributedLock(mock_redis, "dispatch-worker", ttl_seconds=10)
        await lock.acquire()
        await lock.release()

        mock_redis.eval.assert_called_once()

    @pytest.mark.asyncio
    async def test_waits_for_holder(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(side_effect=[False, False, True])
        mock_redis.eval = AsyncMock(return_value=1)

        lock = DistributedLock(
            mock_redis, "shared_ride_group:1", wait_seconds=1.0, retry_interval=0.001
        )
        async with lock:
            pass
        assert mock_redis.set.await_count == 3
        mock_redis.eval.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_context_manager_acquire_fail_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "dispatch-worker", ttl_seconds=10)
        with pytest.raises(RuntimeError, match="Could not acquire lock"):
            async with lock:
                pass


class TestKeyedLock:
    def test_same_key_same_lock(self):
        locks = KeyedLock()
        assert locks("a") is locks("a")
        assert locks("a") is not locks("b")

    @pytest.mark.asyncio
    async def test_serialises_holders(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks("group"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_released_locks_are_dropped(self):
        locks = KeyedLock()
        for group_id in range(50):
            async with locks(f"shared_ride_group:{group_id}"):
                assert len(locks) == 1
        assert len(locks) == 0


class TestCompareAndSwap:
    @pytest.mark.asyncio
    async def test_stale_expected_status_loses(self, db_session):
        repo = BookingRepository(db_session)
        booking = await repo.add(Booking(customer_id=1))

        assert await repo.transition(
            booking.id, [BookingStatus.PENDING], BookingStatus.CANCELLED
        )
        # A second writer still believes the booking is pending
        assert not await repo.transition(
            booking.id, [BookingStatus.PENDING], BookingStatus.ASSIGNED, provider_id=7
        )
        assert (await repo.get(booking.id)).status == BookingStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_one_active_booking_per_provider(self, db_session):
        repo = BookingRepository(db_session)
        first = await repo.add(Booking(customer_id=1))
        second = await repo.add(Booking(customer_id=2))

        assert await repo.transition(
            first.id, [BookingStatus.PENDING], BookingStatus.ASSIGNED, provider_id=7
        )
        with pytest.raises(IntegrityError):
            await repo.transition(
                second.id, [BookingStatus.PENDING], BookingStatus.ASSIGNED, provider_id=7
            )

    @pytest.mark.asyncio
    async def test_finished_bookings_free_the_provider(self, db_session):
        repo = BookingRepository(db_session)
        first = await repo.add(Booking(customer_id=1))
        second = await repo.add(Booking(customer_id=2))

        await repo.transition(
            first.id, [BookingStatus.PENDING], BookingStatus.ASSIGNED, provider_id=7
        )
        await repo.transition(
            first.id, [BookingStatus.ASSIGNED], BookingStatus.CANCELLED, provider_id=None
        )
        assert await repo.transition(
            second.id, [BookingStatus.PENDING], BookingStatus.ASSIGNED, provider_id=7
        )


class TestAssignmentRace:
    @pytest.mark.asyncio
    async def test_second_assign_conflicts(self, services, db_session):
        x = await add_provider(db_session, 5.605, -0.19)
        y = await add_provider(db_session, 5.606, -0.19)
        booking = await services.lifecycle.create(customer(), RIDE)

        await services.lifecycle.assign(booking.id, x, provider(x))
        with pytest.raises(Conflict):
            await services.lifecycle.assign(booking.id, y, provider(y))

    @pytest.mark.asyncio
    async def test_lost_race_releases_provider(self, services, db_session):
        x = await add_provider(db_session, 5.605, -0.19)
        y = await add_provider(db_session, 5.606, -0.19)
        booking = await services.lifecycle.create(customer(), RIDE)
        stale = await services.lifecycle.load(booking.id)

        await services.lifecycle.assign(booking.id, x, provider(x))
        # Y read the booking before X's write landed
        services.lifecycle.load = AsyncMock(return_value=stale)
        with pytest.raises(Conflict):
            await services.lifecycle.assign(booking.id, y, provider(y))

        assert (await ProviderRepository(db_session).get(y)).is_available
        assert (await BookingRepository(db_session).get(booking.id)).provider_id == x

    @pytest.mark.asyncio
    async def test_busy_provider_cannot_be_claimed_twice(self, services, db_session):
        x = await add_provider(db_session, 5.605, -0.19)
        first = await services.lifecycle.create(customer(1), RIDE)
        second = await services.lifecycle.create(customer(2), RIDE)

        await services.lifecycle.assign(first.id, x, provider(x))
        with pytest.raises(Conflict):
            await services.lifecycle.assign(second.id, x, provider(x))
        assert (await services.lifecycle.load(second.id)).status == BookingStatus.PENDING


class TestGroupLock:
    @pytest.mark.asyncio
    async def test_join_holds_the_group_lock(self, db_session, events, pricing, clock):
        keys = []

        @asynccontextmanager
        async def recording_lock(key):
            keys.append(key)
            yield

        services = build_services(db_session, events, pricing, recording_lock, clock)
        await add_provider(db_session, 5.605, -0.19, kinds=(ServiceKind.SHARED_RIDE,))
        request = SharedRideRequest(Location(5.60, -0.19), Location(5.65, -0.20))

        leader = await services.shared_rides.request_ride(customer(1), request)
        await services.shared_rides.request_ride(customer(2), request)
        assert keys == [f"shared_ride_group:{leader.shared_ride.group_id}"]
