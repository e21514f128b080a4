"""
Dispatch notifier tests: offers, the acceptance race, rejection, expiry and
re-dispatch with an expanded radius.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from dispatch_core.config import settings
from dispatch_core.domain.entities import BookingRequest, Location
from dispatch_core.domain.enums import BookingStatus, Notice, OfferStatus, ServiceKind
from dispatch_core.domain.errors import Conflict, NotFound, OfferExpired, Unauthorized
from dispatch_core.domain.service_data import SharedRideData
from dispatch_core.infrastructure.repositories import OfferRepository, ProviderRepository
from tests.conftest import ADMIN, add_provider, customer, provider

PICKUP = Location(5.60, -0.19)
DROPOFF = Location(5.65, -0.20)
MAX_ATTEMPTS = settings.max_dispatch_attempts


def ride(**kwargs) -> BookingRequest:
    return BookingRequest(
        service_kind=kwargs.pop("service_kind", ServiceKind.RIDE),
        pickup=PICKUP,
        dropoff=DROPOFF,
        **kwargs,
    )


async def offers_by_provider(session, booking_id: int) -> dict[int, int]:
    offers = await OfferRepository(session).outstanding_for(booking_id)
    return {o.provider_id: o.id for o in offers}


class TestOffers:
    @pytest.mark.asyncio
    async def test_offer_payload(self, services, db_session, events, clock):
        pid = await add_provider(db_session, 5.605, -0.19)
        booking = await services.lifecycle.create(customer(), ride())

        [event] = events.named(Notice.NEW_BOOKING_REQUEST.value)
        assert event.target == pid
        assert event.payload["booking_id"] == booking.id
        assert event.payload["service_kind"] == "ride"
        assert event.payload["eta_min"] == 2
        assert event.payload["expires_at"] == (clock.now + timedelta(seconds=60)).isoformat()

    @pytest.mark.asyncio
    async def test_offer_is_idempotent_per_provider(self, services, db_session):
        await add_provider(db_session, 5.605, -0.19)
        booking = await services.lifecycle.create(customer(), ride())
        again = await services.dispatcher.dispatch(booking)
        assert again == []
        assert len(await OfferRepository(db_session).outstanding_for(booking.id)) == 1

    @pytest.mark.asyncio
    async def test_offline_providers_are_not_offered(self, services, db_session):
        await add_provider(db_session, 5.605, -0.19, online=False, available=False)
        await add_provider(db_session, 5.606, -0.19, verified=False)
        booking = await services.lifecycle.create(customer(), ride())
        assert await offers_by_provider(db_session, booking.id) == {}

    @pytest.mark.asyncio
    async def test_list_offers_for_provider(self, services, db_session):
        pid = await add_provider(db_session, 5.605, -0.19)
        await services.lifecycle.create(customer(1), ride())
        await services.lifecycle.create(customer(2), ride())

        offers = await services.dispatcher.list_offers(provider(pid))
        assert len(offers) == 2
        open_ = await services.dispatcher.list_offers(provider(pid), OfferStatus.OFFERED)
        assert len(open_) == 2
        with pytest.raises(Unauthorized):
            await services.dispatcher.list_offers(customer())


class TestAccept:
    @pytest.mark.asyncio
    async def test_first_acceptance_wins(self, services, db_session, events, clock):
        x = await add_provider(db_session, 5.605, -0.19, name="X")
        y = await add_provider(db_session, 5.607, -0.19, name="Y")
        booking = await services.lifecycle.create(customer(), ride())
        offers = await offers_by_provider(db_session, booking.id)

        clock.advance(seconds=10)
        assigned = await services.dispatcher.accept(offers[x], provider(x))
        assert assigned.status == BookingStatus.ASSIGNED
        assert assigned.provider_id == x

        clock.advance(seconds=2)
        with pytest.raises(Conflict) as exc_info:
            await services.dispatcher.accept(offers[y], provider(y))
        # Lost to another provider, not a lapsed window
        assert exc_info.value.kind == "conflict"

        reloaded = await services.lifecycle.load(booking.id)
        assert reloaded.provider_id == x
        # Y is still free for other work
        assert (await ProviderRepository(db_session).get(y)).is_available

        accepted = await OfferRepository(db_session).get(offers[x])
        assert accepted.status == OfferStatus.ACCEPTED
        sibling = await OfferRepository(db_session).get(offers[y])
        assert sibling.status == OfferStatus.EXPIRED
        assert sibling.closed_by_assignment

        customer_events = events.sent_to("customer", 1)
        assert customer_events.count(Notice.BOOKING_ACCEPTED.value) == 1
        assert Notice.BOOKING_ASSIGNED.value in events.sent_to("provider", x)

    @pytest.mark.asyncio
    async def test_late_acceptance_is_expired(self, services, db_session, clock):
        pid = await add_provider(db_session, 5.605, -0.19)
        booking = await services.lifecycle.create(customer(), ride())
        offers = await offers_by_provider(db_session, booking.id)

        clock.advance(seconds=61)
        with pytest.raises(OfferExpired):
            await services.dispatcher.accept(offers[pid], provider(pid))
        assert (await services.lifecycle.load(booking.id)).status == BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_accept_on_the_deadline(self, services, db_session, clock):
        pid = await add_provider(db_session, 5.605, -0.19)
        booking = await services.lifecycle.create(customer(), ride())
        offers = await offers_by_provider(db_session, booking.id)

        clock.advance(seconds=60)
        assigned = await services.dispatcher.accept(offers[pid], provider(pid))
        assert assigned.status == BookingStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_accept_after_customer_cancelled(self, services, db_session):
        pid = await add_provider(db_session, 5.605, -0.19)
        booking = await services.lifecycle.create(customer(), ride())
        offers = await offers_by_provider(db_session, booking.id)
        await services.lifecycle.cancel(booking.id, customer())

        with pytest.raises(OfferExpired):
            await services.dispatcher.accept(offers[pid], provider(pid))

    @pytest.mark.asyncio
    async def test_accept_while_busy_elsewhere(self, services, db_session):
        pid = await add_provider(db_session, 5.605, -0.19)
        first = await services.lifecycle.create(customer(1), ride())
        second = await services.lifecycle.create(customer(2), ride())
        offers_first = await offers_by_provider(db_session, first.id)
        offers_second = await offers_by_provider(db_session, second.id)

        await services.dispatcher.accept(offers_first[pid], provider(pid))
        with pytest.raises(Conflict):
            await services.dispatcher.accept(offers_second[pid], provider(pid))
        # The lost offer is retired, the booking waits for someone else
        lost = await OfferRepository(db_session).get(offers_second[pid])
        assert lost.status == OfferStatus.EXPIRED
        assert (await services.lifecycle.load(second.id)).status == BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_accept_someone_elses_offer(self, services, db_session):
        pid = await add_provider(db_session, 5.605, -0.19)
        booking = await services.lifecycle.create(customer(), ride())
        offers = await offers_by_provider(db_session, booking.id)
        with pytest.raises(Unauthorized):
            await services.dispatcher.accept(offers[pid], provider(pid + 1))

    @pytest.mark.asyncio
    async def test_accept_twice(self, services, db_session):
        pid = await add_provider(db_session, 5.605, -0.19)
        booking = await services.lifecycle.create(customer(), ride())
        offers = await offers_by_provider(db_session, booking.id)
        await services.dispatcher.accept(offers[pid], provider(pid))
        with pytest.raises(Conflict):
            await services.dispatcher.accept(offers[pid], provider(pid))

    @pytest.mark.asyncio
    async def test_unknown_offer(self, services):
        with pytest.raises(NotFound):
            await services.dispatcher.accept(999, ADMIN)


class TestReject:
    @pytest.mark.asyncio
    async def test_reject_keeps_booking_pending(self, services, db_session):
        pid = await add_provider(db_session, 5.605, -0.19)
        booking = await services.lifecycle.create(customer(), ride())
        offers = await offers_by_provider(db_session, booking.id)

        rejected = await services.dispatcher.reject(offers[pid], provider(pid), "too far")
        assert rejected.status == OfferStatus.REJECTED
        assert rejected.reason == "too far"
        assert (await services.lifecycle.load(booking.id)).status == BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_cannot_accept_after_rejecting(self, services, db_session):
        pid = await add_provider(db_session, 5.605, -0.19)
        booking = await services.lifecycle.create(customer(), ride())
        offers = await offers_by_provider(db_session, booking.id)
        await services.dispatcher.reject(offers[pid], provider(pid))
        with pytest.raises(Conflict):
            await services.dispatcher.accept(offers[pid], provider(pid))

    @pytest.mark.asyncio
    async def test_reject_after_window(self, services, db_session, clock):
        pid = await add_provider(db_session, 5.605, -0.19)
        booking = await services.lifecycle.create(customer(), ride())
        offers = await offers_by_provider(db_session, booking.id)
        clock.advance(minutes=2)
        with pytest.raises(OfferExpired):
            await services.dispatcher.reject(offers[pid], provider(pid))


class TestExpiryAndRetry:
    @pytest.mark.asyncio
    async def test_expire_lapsed(self, services, db_session, clock):
        pid = await add_provider(db_session, 5.605, -0.19)
        booking = await services.lifecycle.create(customer(), ride())

        assert await services.dispatcher.expire_lapsed() == 0
        clock.advance(seconds=61)
        assert await services.dispatcher.expire_lapsed() == 1

        [offer] = await OfferRepository(db_session).list_for_provider(pid)
        assert offer.status == OfferStatus.EXPIRED
        assert await OfferRepository(db_session).outstanding_for(booking.id) == []

    @pytest.mark.asyncio
    async def test_retry_skips_booking_with_open_offers(self, services, db_session):
        await add_provider(db_session, 5.605, -0.19)
        booking = await services.lifecycle.create(customer(), ride())
        booking = await services.lifecycle.load(booking.id)
        assert await services.dispatcher.retry(booking) == []

    @pytest.mark.asyncio
    async def test_retry_expands_radius_and_skips_previous(
        self, services, db_session, clock
    ):
        near = await add_provider(db_session, 5.605, -0.19)
        # ~22 km out: beyond the first search, inside the expanded one
        far = await add_provider(db_session, 5.80, -0.19)
        booking = await services.lifecycle.create(customer(), ride())
        assert set(await offers_by_provider(db_session, booking.id)) == {near}

        clock.advance(seconds=61)
        await services.dispatcher.expire_lapsed()
        booking = await services.lifecycle.load(booking.id)
        assert booking.dispatch_attempts == 1

        retried = await services.dispatcher.retry(booking)
        assert [o.provider_id for o in retried] == [far]

    @pytest.mark.asyncio
    async def test_gives_up_and_tells_customer_once(self, services, events):
        booking = await services.lifecycle.create(customer(), ride())
        for _ in range(MAX_ATTEMPTS - 1):
            booking = await services.lifecycle.load(booking.id)
            assert await services.dispatcher.retry(booking) == []

        booking = await services.lifecycle.load(booking.id)
        assert booking.dispatch_attempts == MAX_ATTEMPTS
        assert await services.dispatcher.retry(booking) == []
        booking = await services.lifecycle.load(booking.id)
        assert await services.dispatcher.retry(booking) == []

        notices = events.named(Notice.NO_PROVIDER_AVAILABLE.value)
        assert len(notices) == 1
        assert notices[0].payload == {"booking_id": booking.id, "attempts": MAX_ATTEMPTS}

    @pytest.mark.asyncio
    async def test_ride_along_members_are_never_dispatched(self, services, db_session):
        await add_provider(db_session, 5.605, -0.19, kinds=(ServiceKind.SHARED_RIDE,))
        member = await services.lifecycle.create(
            customer(),
            ride(
                service_kind=ServiceKind.SHARED_RIDE,
                service_data=SharedRideData(group_id=1),
            ),
        )
        assert await offers_by_provider(db_session, member.id) == {}
        member = await services.lifecycle.load(member.id)
        assert await services.dispatcher.retry(member) == []
