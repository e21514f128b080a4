"""Unit tests for booking state transitions (State Pattern) and entity rules."""

from datetime import datetime, timezone

import pytest

from dispatch_core.domain.entities import (
    Booking,
    DriverOffer,
    EarningRecord,
    ProviderSnapshot,
    SharedRideGroup,
)
from dispatch_core.domain.enums import (
    BookingStatus,
    GroupStatus,
    OfferStatus,
    sources_for,
)
from dispatch_core.domain.errors import InvalidStateTransition
from dispatch_core.domain.service_data import (
    InterRegionalData,
    SharedRideData,
    parse_service_data,
)


class TestBookingStateMachine:
    def test_initial_status_is_pending(self):
        assert Booking().status == BookingStatus.PENDING

    # ── Valid transitions ─────────────────────────────────────────

    @pytest.mark.parametrize(
        "start,target",
        [
            (BookingStatus.CONFIRMED, BookingStatus.PENDING),
            (BookingStatus.CONFIRMED, BookingStatus.ASSIGNED),
            (BookingStatus.PENDING, BookingStatus.ASSIGNED),
            (BookingStatus.PENDING, BookingStatus.CANCELLED),
            (BookingStatus.ASSIGNED, BookingStatus.ARRIVED),
            (BookingStatus.ASSIGNED, BookingStatus.IN_PROGRESS),
            (BookingStatus.ASSIGNED, BookingStatus.CANCELLED),
            (BookingStatus.ARRIVED, BookingStatus.IN_PROGRESS),
            (BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED),
        ],
    )
    def test_allowed(self, start, target):
        booking = Booking(status=start)
        booking.transition_to(target)
        assert booking.status == target

    # ── Invalid transitions ───────────────────────────────────────

    def test_pending_to_completed_fails(self):
        booking = Booking(status=BookingStatus.PENDING)
        with pytest.raises(InvalidStateTransition):
            booking.transition_to(BookingStatus.COMPLETED)

    def test_completed_is_terminal(self):
        booking = Booking(status=BookingStatus.COMPLETED)
        with pytest.raises(InvalidStateTransition):
            booking.transition_to(BookingStatus.CANCELLED)

    def test_cancelled_is_terminal(self):
        booking = Booking(status=BookingStatus.CANCELLED)
        with pytest.raises(InvalidStateTransition):
            booking.transition_to(BookingStatus.PENDING)

    def test_arrived_cannot_cancel(self):
        """Once the provider is at the pickup the trip can only start."""
        booking = Booking(status=BookingStatus.ARRIVED)
        with pytest.raises(InvalidStateTransition):
            booking.transition_to(BookingStatus.CANCELLED)

    def test_in_progress_cannot_cancel(self):
        booking = Booking(status=BookingStatus.IN_PROGRESS)
        with pytest.raises(InvalidStateTransition):
            booking.transition_to(BookingStatus.CANCELLED)

    def test_failed_transition_keeps_status(self):
        booking = Booking(status=BookingStatus.ARRIVED)
        with pytest.raises(InvalidStateTransition):
            booking.transition_to(BookingStatus.COMPLETED)
        assert booking.status == BookingStatus.ARRIVED

    def test_sources_for_cancelled(self):
        assert sources_for(BookingStatus.CANCELLED) == {
            BookingStatus.CONFIRMED,
            BookingStatus.PENDING,
            BookingStatus.ASSIGNED,
        }


class TestBookingInvariants:
    def test_consistent_pending_booking(self):
        assert Booking().invariant_violations() == []

    def test_assigned_without_provider(self):
        booking = Booking(status=BookingStatus.ASSIGNED)
        assert booking.invariant_violations()

    def test_completed_needs_final_price(self):
        booking = Booking(status=BookingStatus.COMPLETED, provider_id=1)
        assert any("final_price" in p for p in booking.invariant_violations())

    def test_timestamps_must_be_ordered(self):
        booking = Booking(
            status=BookingStatus.IN_PROGRESS,
            provider_id=1,
            accepted_at=datetime(2026, 3, 2, 10, 5, tzinfo=timezone.utc),
            started_at=datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc),
        )
        assert booking.invariant_violations()

    def test_awaiting_approval(self):
        pending = InterRegionalData(
            origin_zone_id=1,
            destination_zone_id=2,
            fee=50.0,
            requires_approval=True,
            approved=False,
        )
        assert Booking(inter_regional=pending).awaiting_approval
        approved = pending.model_copy(update={"approved": True})
        assert not Booking(inter_regional=approved).awaiting_approval
        assert not Booking().awaiting_approval

    def test_ride_along_member(self):
        assert Booking(service_data=SharedRideData(group_id=1)).is_ride_along
        leader = SharedRideData(group_id=1, is_leader=True)
        assert not Booking(service_data=leader).is_ride_along


class TestServiceData:
    def test_payload_round_trips_by_kind(self):
        data = parse_service_data({"kind": "house_moving", "floors": 3})
        assert data.floors == 3
        assert data.kind == "house_moving"

    def test_unknown_kind_is_rejected(self):
        with pytest.raises(Exception):
            parse_service_data({"kind": "helicopter"})


class TestOfferWindow:
    def test_open_inside_window(self):
        offer = DriverOffer(
            expires_at=datetime(2026, 3, 2, 10, 1, tzinfo=timezone.utc)
        )
        assert offer.is_open_at(datetime(2026, 3, 2, 10, 0, 59, tzinfo=timezone.utc))

    def test_closed_after_window(self):
        offer = DriverOffer(
            expires_at=datetime(2026, 3, 2, 10, 1, tzinfo=timezone.utc)
        )
        assert not offer.is_open_at(datetime(2026, 3, 2, 10, 1, 1, tzinfo=timezone.utc))

    def test_resolved_offer_is_closed(self):
        offer = DriverOffer(status=OfferStatus.REJECTED)
        assert not offer.is_open_at(datetime(2026, 3, 2, tzinfo=timezone.utc))


class TestSharedRideGroupCapacity:
    def test_has_room_until_full(self):
        group = SharedRideGroup(member_booking_ids=[1, 2, 3], max_capacity=4)
        assert group.has_room()
        assert not group.has_room(seats=2)

    def test_filling_up_closes_group(self):
        group = SharedRideGroup(member_booking_ids=[1, 2, 3], max_capacity=4)
        group.add_member(4)
        assert group.status == GroupStatus.CLOSED
        assert not group.has_room()

    def test_closed_group_has_no_room(self):
        group = SharedRideGroup(member_booking_ids=[1], status=GroupStatus.CLOSED)
        assert not group.has_room()


class TestProviderSnapshot:
    def test_inter_regional_rights_follow_origin_zone(self):
        p = ProviderSnapshot(id=1, inter_regional_zone_ids=frozenset({3}))
        assert p.can_take_inter_regional(3)
        assert not p.can_take_inter_regional(4)


class TestEarningBuckets:
    def test_week_starts_on_sunday(self):
        # Wednesday 4 March 2026
        week, month = EarningRecord.buckets(
            datetime(2026, 3, 4, 15, 30, tzinfo=timezone.utc)
        )
        assert week == datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert month == "2026-03"

    def test_sunday_is_its_own_week_start(self):
        week, _ = EarningRecord.buckets(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))
        assert week == datetime(2026, 3, 1, tzinfo=timezone.utc)

    def test_week_can_span_months(self):
        week, month = EarningRecord.buckets(
            datetime(2026, 4, 2, tzinfo=timezone.utc)
        )
        assert week == datetime(2026, 3, 29, tzinfo=timezone.utc)
        assert month == "2026-04"
