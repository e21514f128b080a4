"""
Shared-Ride Pooling
===================

1. **Candidate scan**  -- pending shared-ride leaders created within the
   recency window (15 min) that still accept passengers and have room.
2. **Scoring**         -- ``RouteSimilarityScorer`` against the request;
   keep scores >= 0.7, best first.
3. **Join / create**   -- join the best group, else open a new one with the
   requester as sole member and leader.

Cost split
----------
The group total is fixed at the leader's estimate.  After every join each
member pays ``round_half_up(total / passengers)``, so the member prices sum
to the total plus or minus the rounding remainder.  A member that cancels
leaves the group and the total is re-split over those still riding.

Concurrency
-----------
Membership changes are a critical section per group id: a lock from the
injected lock factory (Redis in production) plus ``SELECT ... FOR UPDATE``
on the group row.  Without it two simultaneous joiners could both compute
the price from a stale passenger count.

Only the leader booking is dispatched; members ride along on its
assignment and are settled when the leader completes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_core.config import settings
from dispatch_core.domain.entities import (
    Actor,
    Booking,
    BookingRequest,
    Location,
    SharedRideGroup,
)
from dispatch_core.domain.enums import (
    ACTIVE_STATUSES,
    BookingStatus,
    GroupStatus,
    Notice,
    ServiceKind,
)
from dispatch_core.domain.errors import Conflict, NotFound
from dispatch_core.domain.pricing import commission_split, per_passenger_cost
from dispatch_core.domain.service_data import SharedRideData
from dispatch_core.domain.similarity import Route, RouteSimilarityScorer
from dispatch_core.infrastructure.events import EventPublisher
from dispatch_core.infrastructure.locks import KeyedLock
from dispatch_core.infrastructure.repositories import (
    BookingRepository,
    SharedRideGroupRepository,
)

from .lifecycle import BookingLifecycle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SharedRideRequest:
    pickup: Location
    dropoff: Location
    notes: Optional[str] = None


@dataclass(frozen=True)
class CompatibleGroup:
    group_id: int
    leader_booking_id: int
    score: float
    current_passengers: int
    max_capacity: int


class SharedRidePool:
    def __init__(
        self,
        session: AsyncSession,
        lifecycle: BookingLifecycle,
        events: EventPublisher,
        lock_factory: Optional[Callable] = None,
        scorer: Optional[RouteSimilarityScorer] = None,
        config=settings,
    ):
        self.bookings = BookingRepository(session)
        self.groups = SharedRideGroupRepository(session)
        self.lifecycle = lifecycle
        self.events = events
        self.lock_factory = lock_factory or KeyedLock()
        self.scorer = scorer or RouteSimilarityScorer()
        self.config = config

    async def find_compatible(self, request: SharedRideRequest) -> list[CompatibleGroup]:
        since = self.lifecycle.clock() - timedelta(
            minutes=self.config.shared_ride_window_minutes
        )
        wanted = Route(request.pickup, request.dropoff)

        matches = []
        for leader in await self.bookings.list_recent_shared(since):
            data = leader.shared_ride
            if data is None or not data.is_leader or not data.accepting_passengers:
                continue
            if data.group_id is None or data.current_passengers >= data.max_passengers:
                continue
            if leader.dropoff is None:
                continue

            score = self.scorer.score(Route(leader.pickup, leader.dropoff), wanted)
            if score < self.config.shared_ride_min_score:
                continue
            matches.append(
                CompatibleGroup(
                    group_id=data.group_id,
                    leader_booking_id=leader.id,
                    score=score,
                    current_passengers=data.current_passengers,
                    max_capacity=data.max_passengers,
                )
            )

        matches.sort(key=lambda m: (-m.score, m.group_id))
        return matches

    async def request_ride(self, actor: Actor, request: SharedRideRequest) -> Booking:
        """Join the best compatible group, or open a new one."""
        for match in await self.find_compatible(request):
            try:
                return await self.join(actor, request, match.group_id)
            except Conflict:
                logger.info("Group %s filled up, trying the next", match.group_id)
        return await self.create_new(actor, request)

    async def create_new(self, actor: Actor, request: SharedRideRequest) -> Booking:
        booking = await self.lifecycle.create(
            actor,
            BookingRequest(
                service_kind=ServiceKind.SHARED_RIDE,
                pickup=request.pickup,
                dropoff=request.dropoff,
                service_data=SharedRideData(
                    is_leader=True,
                    accepting_passengers=True,
                    max_passengers=self.config.shared_ride_max_capacity,
                ),
            ),
            dispatch=False,
        )
        group = await self.groups.add(
            SharedRideGroup(
                leader_booking_id=booking.id,
                member_booking_ids=[booking.id],
                total_price=booking.estimated_price,
                max_capacity=self.config.shared_ride_max_capacity,
                created_at=booking.created_at,
            )
        )
        await self.bookings.update_fields(
            booking.id,
            service_data=booking.shared_ride.model_copy(
                update={"group_id": group.id, "member_booking_ids": [booking.id]}
            ),
        )
        logger.info("Shared-ride group %s opened by booking %s", group.id, booking.id)

        booking = await self.lifecycle.load(booking.id)
        await self.lifecycle.dispatch_if_ready(booking)
        return booking

    async def join(
        self, actor: Actor, request: SharedRideRequest, group_id: int
    ) -> Booking:
        async with self.lock_factory(f"shared_ride_group:{group_id}"):
            group = await self.groups.get_for_update(group_id)
            if group is None:
                raise NotFound(f"Shared-ride group {group_id} not found")
            if not group.has_room():
                raise Conflict(f"Shared-ride group {group_id} is closed or full")

            leader = await self.lifecycle.load(group.leader_booking_id)
            if leader.status is not BookingStatus.PENDING:
                await self.groups.close(group_id)
                raise Conflict(f"Shared-ride group {group_id} has already departed")

            booking = await self.lifecycle.create(
                actor,
                BookingRequest(
                    service_kind=ServiceKind.SHARED_RIDE,
                    pickup=request.pickup,
                    dropoff=request.dropoff,
                    service_data=SharedRideData(
                        group_id=group_id,
                        max_passengers=group.max_capacity,
                    ),
                ),
                dispatch=False,
            )
            group.add_member(booking.id)
            await self.groups.save_membership(group)
            share = await self._reprice(group)
            await self._sync_leader(leader, group)

        logger.info(
            "Booking %s joined group %s (%d passengers, %.2f each)",
            booking.id,
            group_id,
            group.passenger_count,
            share,
        )
        self.events.broadcast(
            f"shared_ride_group:{group_id}",
            Notice.SHARED_RIDE_UPDATED,
            {
                "group_id": group_id,
                "passengers": group.passenger_count,
                "price_per_passenger": share,
            },
        )
        return await self.lifecycle.load(booking.id)

    async def leave(self, booking: Booking) -> None:
        """Take a cancelled member out of its group and re-split the fare."""
        data = booking.shared_ride
        if data is None or data.is_leader or data.group_id is None:
            return
        group_id = data.group_id

        share = None
        async with self.lock_factory(f"shared_ride_group:{group_id}"):
            group = await self.groups.get_for_update(group_id)
            if group is None or booking.id not in group.member_booking_ids:
                return
            leader = await self.lifecycle.load(group.leader_booking_id)
            # While the leader waits, a closed group can only be a full one
            group.remove_member(
                booking.id, reopen=leader.status is BookingStatus.PENDING
            )
            await self.groups.save_membership(group)
            if leader.status in ACTIVE_STATUSES:
                share = await self._reprice(group)
            await self._sync_leader(leader, group)

        logger.info(
            "Booking %s left group %s (%d passengers)",
            booking.id,
            group_id,
            group.passenger_count,
        )
        if share is not None:
            self.events.broadcast(
                f"shared_ride_group:{group_id}",
                Notice.SHARED_RIDE_UPDATED,
                {
                    "group_id": group_id,
                    "passengers": group.passenger_count,
                    "price_per_passenger": share,
                },
            )

    async def _sync_leader(self, leader: Booking, group: SharedRideGroup) -> None:
        await self.bookings.update_fields(
            leader.id,
            service_data=leader.shared_ride.model_copy(
                update={
                    "current_passengers": group.passenger_count,
                    "member_booking_ids": list(group.member_booking_ids),
                    "accepting_passengers": group.status is GroupStatus.OPEN,
                }
            ),
        )

    async def _reprice(self, group: SharedRideGroup) -> float:
        """Rewrite every active member's price to the new per-passenger share."""
        members = [await self.lifecycle.load(m) for m in group.member_booking_ids]
        riding = [m for m in members if m.status in ACTIVE_STATUSES]
        share = per_passenger_cost(group.total_price, len(riding))
        commission, earning = commission_split(
            share, self.config.commission_rate(ServiceKind.SHARED_RIDE)
        )
        for member in riding:
            await self.bookings.update_fields(
                member.id,
                estimated_price=share,
                platform_commission=commission,
                provider_earning=earning,
            )
            self.events.notify_customer(
                member.customer_id,
                Notice.SHARED_RIDE_UPDATED,
                {
                    "booking_id": member.id,
                    "group_id": group.id,
                    "passengers": len(riding),
                    "estimated_price": share,
                },
            )
        return share

    async def open_groups(self) -> list[SharedRideGroup]:
        return await self.groups.list_open()
