"""
Booking Lifecycle  (core state machine)
=======================================

States
------
* confirmed   -> pending | assigned | cancelled
* pending     -> assigned | cancelled
* assigned    -> arrived | in_progress | cancelled
* arrived     -> in_progress
* in_progress -> completed

``confirmed`` is the pre-dispatch state of scheduled bookings; it behaves
like ``pending`` for assignment but is not offered to providers until the
dispatch worker releases it.

Atomicity
---------
* Every transition is one compare-and-swap ``UPDATE`` against the status
  that was loaded.  Losing the swap means someone else moved the booking
  first and surfaces as ``Conflict``.
* ``assign`` claims the provider first (CAS on ``is_available``), then the
  booking (CAS on status).  When the booking swap loses, the provider is
  released again before ``Conflict`` is raised.

Side effects
------------
Notifications and broadcasts go to the ``EventPublisher`` port; they are
delivered after commit and never fail the transition.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_core.config import settings
from dispatch_core.domain.distance import estimate_travel
from dispatch_core.domain.entities import (
    ASSIGNED_ELSEWHERE,
    SYSTEM_ACTOR,
    Actor,
    Booking,
    BookingRequest,
    EarningRecord,
    Location,
    ProviderSnapshot,
    TrackingUpdate,
    TripActuals,
    utcnow,
)
from dispatch_core.domain.enums import (
    ASSIGNED_STATUSES,
    AWAITING_PROVIDER_STATUSES,
    ActorRole,
    BookingStatus,
    Notice,
    ServiceKind,
    TrackingStatus,
)
from dispatch_core.domain.errors import (
    Conflict,
    DispatchError,
    InvalidStateTransition,
    NotFound,
    Unauthorized,
    UpstreamUnavailable,
    ValidationError,
)
from dispatch_core.domain.pricing import (
    PriceEstimate,
    PricingOracle,
    cancellation_fee,
    commission_split,
)
from dispatch_core.domain.service_data import (
    InterRegionalData,
    default_service_data,
    matches_kind,
)
from dispatch_core.infrastructure.database import as_utc
from dispatch_core.infrastructure.events import EventPublisher
from dispatch_core.infrastructure.repositories import (
    BookingRepository,
    EarningRepository,
    OfferRepository,
    ProviderRepository,
    SharedRideGroupRepository,
    TrackingRepository,
)

from .zones import ZoneDirectory, validate_point

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Only day bookings may omit a destination
_DROPOFF_OPTIONAL = {ServiceKind.DAY_BOOKING}

MAX_PAGE_SIZE = 100


class BookingLifecycle:
    def __init__(
        self,
        session: AsyncSession,
        zones: ZoneDirectory,
        pricing: PricingOracle,
        events: EventPublisher,
        clock: Clock = utcnow,
        config=settings,
    ):
        self.session = session
        self.bookings = BookingRepository(session)
        self.offers = OfferRepository(session)
        self.providers = ProviderRepository(session)
        self.groups = SharedRideGroupRepository(session)
        self.earnings = EarningRepository(session)
        self.tracking = TrackingRepository(session)
        self.zones = zones
        self.pricing = pricing
        self.events = events
        self.clock = clock
        self.config = config
        # DispatchNotifier and SharedRidePool; wired by build_services
        self.dispatcher = None
        self.shared_rides = None

    # ── Queries ───────────────────────────────────────────────────────

    async def load(self, booking_id: int) -> Booking:
        booking = await self.bookings.get(booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        return booking

    @staticmethod
    def check_access(booking: Booking, actor: Actor) -> None:
        if actor.is_privileged:
            return
        if actor.role is ActorRole.CUSTOMER and booking.customer_id == actor.user_id:
            return
        if actor.role is ActorRole.PROVIDER and actor.user_id in (
            booking.provider_id,
            booking.released_provider_id,
        ):
            return
        raise Unauthorized(f"Not a participant in booking {booking.id}")

    async def get(self, booking_id: int, actor: Actor) -> Booking:
        booking = await self.load(booking_id)
        self.check_access(booking, actor)
        return booking

    async def list_bookings(
        self,
        actor: Actor,
        status: Optional[BookingStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Booking], int]:
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError("page must be >= 1 and limit within 1..100")

        scope = {}
        if actor.role is ActorRole.CUSTOMER:
            scope["customer_id"] = actor.user_id
        elif actor.role is ActorRole.PROVIDER:
            scope["provider_id"] = actor.user_id

        return await self.bookings.search(
            status=status,
            date_from=as_utc(date_from),
            date_to=as_utc(date_to),
            offset=(page - 1) * limit,
            limit=limit,
            **scope,
        )

    async def tracking_history(
        self, booking_id: int, actor: Actor
    ) -> list[TrackingUpdate]:
        await self.get(booking_id, actor)
        return await self.tracking.history(booking_id)

    # ── Create ────────────────────────────────────────────────────────

    def _validate(self, request: BookingRequest):
        validate_point(request.pickup.latitude, request.pickup.longitude, "pickup")
        if request.dropoff is not None:
            validate_point(
                request.dropoff.latitude, request.dropoff.longitude, "dropoff"
            )
        elif request.service_kind not in _DROPOFF_OPTIONAL:
            raise ValidationError(
                f"dropoff is required for {request.service_kind.value}"
            )

        data = request.service_data
        if data is None:
            return default_service_data(request.service_kind)
        if not matches_kind(data, request.service_kind):
            raise ValidationError(
                f"service data '{data.kind}' does not match "
                f"service kind '{request.service_kind.value}'"
            )
        return data

    async def _estimate(self, request: BookingRequest, service_data) -> PriceEstimate:
        try:
            return await self.pricing.estimate(
                request.pickup,
                request.dropoff,
                request.service_kind,
                request.scheduled_at,
                service_data,
            )
        except DispatchError:
            raise
        except Exception as exc:
            logger.exception("Pricing oracle failed")
            raise UpstreamUnavailable("Pricing oracle unavailable") from exc

    async def create(
        self, actor: Actor, request: BookingRequest, dispatch: bool = True
    ) -> Booking:
        """
        Persist a booking and, when it is immediate, offer it to nearby
        providers.  Matching failures are logged; they never fail creation.
        """
        if actor.role is not ActorRole.CUSTOMER:
            raise Unauthorized("Only customers can create bookings")
        service_data = self._validate(request)

        if request.idempotency_key:
            existing = await self.bookings.get_by_idempotency_key(
                request.idempotency_key
            )
            if existing is not None:
                if existing.customer_id != actor.user_id:
                    raise Conflict("Idempotency key already used")
                return existing

        active = await self.bookings.count_active_for_customer(actor.user_id)
        if active >= self.config.max_active_bookings_per_customer:
            raise ValidationError(
                f"Customer already has {active} active bookings"
            )

        now = self.clock()
        scheduled_at = as_utc(request.scheduled_at)
        if scheduled_at is not None and scheduled_at <= now:
            raise ValidationError("scheduled_at must be in the future")

        resolver = await self.zones.resolver()
        pickup_zone = resolver.resolve_zone(
            request.pickup.latitude, request.pickup.longitude
        )
        inter_regional = None
        if request.dropoff is not None:
            check = resolver.can_create_inter_regional(request.pickup, request.dropoff)
            if check.is_inter_regional:
                inter_regional = InterRegionalData(
                    origin_zone_id=check.origin_zone.id,
                    destination_zone_id=check.destination_zone.id,
                    fee=check.additional_fee,
                    requires_approval=check.requires_approval,
                    approved=not check.requires_approval,
                )

        estimate = await self._estimate(request, service_data)
        price = estimate.price + (inter_regional.fee if inter_regional else 0.0)
        price = round(price, 2)
        commission, earning = commission_split(
            price, self.config.commission_rate(request.service_kind)
        )

        booking = await self.bookings.add(
            Booking(
                customer_id=actor.user_id,
                service_kind=request.service_kind,
                status=(
                    BookingStatus.CONFIRMED
                    if scheduled_at is not None
                    else BookingStatus.PENDING
                ),
                pickup=request.pickup,
                dropoff=request.dropoff,
                pickup_zone_id=pickup_zone.id if pickup_zone else None,
                scheduled_at=scheduled_at,
                created_at=now,
                estimated_price=price,
                estimated_distance_km=estimate.distance_km,
                estimated_duration_min=estimate.duration_min,
                surge_multiplier=estimate.surge_multiplier,
                platform_commission=commission,
                provider_earning=earning,
                service_data=service_data,
                inter_regional=inter_regional,
                idempotency_key=request.idempotency_key,
            )
        )
        logger.info(
            "Booking %s created (%s, %s, zone=%s, inter_regional=%s)",
            booking.id,
            booking.service_kind.value,
            booking.status.value,
            booking.pickup_zone_id,
            booking.is_inter_regional,
        )

        self.events.notify_customer(
            booking.customer_id,
            Notice.BOOKING_CREATED,
            {
                "booking_id": booking.id,
                "status": booking.status.value,
                "estimated_price": booking.estimated_price,
            },
        )
        if booking.awaiting_approval:
            self.events.notify_customer(
                booking.customer_id,
                Notice.APPROVAL_REQUIRED,
                {"booking_id": booking.id, "fee": inter_regional.fee},
            )

        if dispatch:
            await self.dispatch_if_ready(booking)
        return booking

    async def dispatch_if_ready(self, booking: Booking, **options) -> list:
        """Offer a pending booking to providers; failures are logged only."""
        if self.dispatcher is None:
            return []
        if booking.status is not BookingStatus.PENDING:
            return []
        if booking.awaiting_approval or booking.is_ride_along:
            return []
        try:
            # Savepoint: a failed pass leaves no half-written offers behind
            async with self.session.begin_nested():
                return await self.dispatcher.dispatch(booking, **options)
        except Exception:
            logger.exception("Matching failed for booking %s", booking.id)
            return []

    # ── Assignment ────────────────────────────────────────────────────

    @staticmethod
    def _check_eligible(booking: Booking, provider: ProviderSnapshot) -> None:
        if not provider.serves(booking.service_kind):
            raise Unauthorized(
                f"Provider {provider.id} does not offer "
                f"{booking.service_kind.value}"
            )
        if booking.pickup_zone_id is not None and not provider.authorized_in(
            booking.pickup_zone_id
        ):
            raise Unauthorized(
                f"Provider {provider.id} is not authorized in zone "
                f"{booking.pickup_zone_id}"
            )
        if booking.is_inter_regional and not provider.can_take_inter_regional(
            booking.pickup_zone_id
        ):
            raise Unauthorized(
                f"Provider {provider.id} cannot take inter-regional bookings"
            )

    async def assign(
        self, booking_id: int, provider_id: int, actor: Actor
    ) -> Booking:
        if not actor.is_privileged and not (
            actor.role is ActorRole.PROVIDER and actor.user_id == provider_id
        ):
            raise Unauthorized("Providers can only claim bookings for themselves")

        booking = await self.load(booking_id)
        if booking.status in ASSIGNED_STATUSES:
            raise Conflict(f"Booking {booking_id} is already {booking.status.value}")
        if booking.status not in AWAITING_PROVIDER_STATUSES:
            raise InvalidStateTransition(
                f"Cannot assign a {booking.status.value} booking"
            )
        if booking.awaiting_approval:
            raise InvalidStateTransition(
                f"Booking {booking_id} awaits inter-regional approval"
            )

        provider = await self.providers.get(provider_id)
        if provider is None:
            raise NotFound(f"Provider {provider_id} not found")
        self._check_eligible(booking, provider)

        if not await self.providers.claim(provider_id):
            raise Conflict(f"Provider {provider_id} is not available")

        now = self.clock()
        won = await self.bookings.transition(
            booking_id,
            AWAITING_PROVIDER_STATUSES,
            BookingStatus.ASSIGNED,
            provider_id=provider_id,
            accepted_at=now,
        )
        if not won:
            await self.providers.release(provider_id)
            raise Conflict(f"Booking {booking_id} was already claimed")

        booking = await self.load(booking_id)
        logger.info("Booking %s assigned to provider %s", booking_id, provider_id)

        closed = await self.offers.expire_for_booking(
            booking_id, now, reason=ASSIGNED_ELSEWHERE
        )
        for offer in closed:
            if offer.provider_id == provider_id:
                continue
            self.events.notify_provider(
                offer.provider_id,
                Notice.OFFER_EXPIRED,
                {
                    "offer_id": offer.id,
                    "booking_id": booking_id,
                    "reason": ASSIGNED_ELSEWHERE,
                },
            )
        await self._freeze_group(booking)

        eta_min = None
        if provider.location is not None:
            eta_min = estimate_travel(
                provider.location.latitude,
                provider.location.longitude,
                booking.pickup.latitude,
                booking.pickup.longitude,
                self.config.average_speed_kmh,
            ).duration_min
        await self._track(
            booking,
            TrackingStatus.TRACKING_STARTED,
            provider.location,
            "Provider assigned",
        )

        self.events.notify_customer(
            booking.customer_id,
            Notice.BOOKING_ACCEPTED,
            {
                "booking_id": booking_id,
                "provider_id": provider_id,
                "provider_name": provider.name,
                "eta_min": eta_min,
            },
        )
        self.events.notify_provider(
            provider_id,
            Notice.BOOKING_ASSIGNED,
            {
                "booking_id": booking_id,
                "pickup": [booking.pickup.latitude, booking.pickup.longitude],
            },
        )
        self._broadcast_status(booking)
        return booking

    # ── Trip progress ─────────────────────────────────────────────────

    @staticmethod
    def _require_assignee(booking: Booking, actor: Actor) -> None:
        if actor.is_privileged:
            return
        if actor.role is not ActorRole.PROVIDER or actor.user_id != booking.provider_id:
            raise Unauthorized(f"Provider is not assigned to booking {booking.id}")

    async def _advance(
        self, booking: Booking, target: BookingStatus, **values
    ) -> Booking:
        """Check legality, then CAS from the loaded status to *target*."""
        current = booking.status
        booking.transition_to(target)
        if not await self.bookings.transition(booking.id, [current], target, **values):
            raise Conflict(f"Booking {booking.id} changed concurrently")
        logger.info(
            "Booking %s: %s -> %s", booking.id, current.value, target.value
        )
        return await self.load(booking.id)

    async def mark_arrived(self, booking_id: int, actor: Actor) -> Booking:
        booking = await self.load(booking_id)
        self._require_assignee(booking, actor)
        booking = await self._advance(booking, BookingStatus.ARRIVED)

        await self._track(booking, TrackingStatus.DRIVER_ARRIVED, None, "Provider arrived")
        self.events.notify_customer(
            booking.customer_id,
            Notice.DRIVER_ARRIVED,
            {"booking_id": booking.id, "provider_id": booking.provider_id},
        )
        self._broadcast_status(booking)
        return booking

    async def start(self, booking_id: int, actor: Actor) -> Booking:
        booking = await self.load(booking_id)
        self._require_assignee(booking, actor)
        booking = await self._advance(
            booking, BookingStatus.IN_PROGRESS, started_at=self.clock()
        )

        await self._track(booking, TrackingStatus.TRIP_STARTED, None, "Trip started")
        self.events.notify_customer(
            booking.customer_id, Notice.TRIP_STARTED, {"booking_id": booking.id}
        )
        self._broadcast_status(booking)
        return booking

    async def complete(
        self,
        booking_id: int,
        actor: Actor,
        actuals: TripActuals = TripActuals(),
    ) -> Booking:
        booking = await self.load(booking_id)
        self._require_assignee(booking, actor)
        if actuals.final_price is not None and actuals.final_price < 0:
            raise ValidationError("final_price must not be negative")

        booking = await self._settle(booking, booking.provider_id, actuals)
        await self._complete_ride_along(booking)
        return booking

    async def _settle(
        self, booking: Booking, provider_id: int, actuals: TripActuals
    ) -> Booking:
        """Complete an in-progress booking and book the provider's earning."""
        final_price = (
            actuals.final_price
            if actuals.final_price is not None
            else booking.estimated_price
        )
        commission, earning = commission_split(
            final_price, self.config.commission_rate(booking.service_kind)
        )
        now = self.clock()
        booking = await self._advance(
            booking,
            BookingStatus.COMPLETED,
            completed_at=now,
            final_price=final_price,
            actual_distance_km=actuals.distance_km,
            actual_duration_min=actuals.duration_min,
            platform_commission=commission,
            provider_earning=earning,
        )
        await self.providers.release(provider_id)

        week_starting, month_year = EarningRecord.buckets(now)
        await self.earnings.add(
            EarningRecord(
                provider_id=provider_id,
                booking_id=booking.id,
                service_kind=booking.service_kind,
                amount=final_price,
                commission=commission,
                net_earning=earning,
                week_starting=week_starting,
                month_year=month_year,
            )
        )

        await self._track(
            booking, TrackingStatus.COMPLETED, booking.dropoff, "Trip completed"
        )
        self.events.notify_customer(
            booking.customer_id,
            Notice.TRIP_COMPLETED,
            {"booking_id": booking.id, "final_price": final_price},
        )
        self.events.notify_provider(
            provider_id,
            Notice.TRIP_COMPLETED,
            {"booking_id": booking.id, "earning": earning},
        )
        self._broadcast_status(booking)
        return booking

    async def _complete_ride_along(self, leader: Booking) -> None:
        """
        Settle the members of a finished leader's group.  The leader no
        longer holds the provider's active slot, so each member walks the
        normal path one at a time and pays its own share.
        """
        data = leader.shared_ride
        if data is None or not data.is_leader or data.group_id is None:
            return
        group = await self.groups.get(data.group_id)
        if group is None:
            return
        provider_id = leader.provider_id
        for member_id in group.member_booking_ids:
            if member_id == leader.id:
                continue
            member = await self.load(member_id)
            if member.status is not BookingStatus.PENDING:
                continue
            member = await self._advance(
                member,
                BookingStatus.ASSIGNED,
                provider_id=provider_id,
                accepted_at=leader.accepted_at,
            )
            member = await self._advance(
                member, BookingStatus.IN_PROGRESS, started_at=leader.started_at
            )
            await self._settle(member, provider_id, TripActuals())

    # ── Cancellation ──────────────────────────────────────────────────

    async def cancel(
        self, booking_id: int, actor: Actor, reason: Optional[str] = None
    ) -> Booking:
        booking = await self.load(booking_id)
        by_customer = (
            actor.role is ActorRole.CUSTOMER and booking.customer_id == actor.user_id
        )
        by_provider = (
            actor.role is ActorRole.PROVIDER
            and booking.provider_id is not None
            and booking.provider_id == actor.user_id
        )
        if not (by_customer or by_provider or actor.is_privileged):
            raise Unauthorized(f"Cannot cancel booking {booking_id}")
        return await self._cancel(booking, actor, reason, by_customer)

    async def _cancel(
        self,
        booking: Booking,
        actor: Actor,
        reason: Optional[str],
        by_customer: bool,
        leave_group: bool = True,
    ) -> Booking:
        fee = cancellation_fee(
            booking.status,
            by_customer,
            booking.estimated_price,
            self.config.customer_cancellation_fee_rate,
        )
        now = self.clock()
        held_by = booking.provider_id
        booking = await self._advance(
            booking,
            BookingStatus.CANCELLED,
            cancelled_at=now,
            cancelled_by=actor.user_id,
            cancelled_by_role=actor.role,
            cancellation_reason=reason,
            cancellation_fee=fee,
            provider_id=None,
            released_provider_id=held_by,
        )

        if held_by is not None:
            await self.providers.release(held_by)
            self.events.notify_provider(
                held_by,
                Notice.BOOKING_CANCELLED,
                {"booking_id": booking.id, "reason": reason},
            )
        for offer in await self.offers.expire_for_booking(booking.id, now):
            self.events.notify_provider(
                offer.provider_id,
                Notice.OFFER_EXPIRED,
                {"offer_id": offer.id, "booking_id": booking.id, "reason": "booking_cancelled"},
            )
        await self._freeze_group(booking, cancel_members=True)
        if leave_group and self.shared_rides is not None:
            await self.shared_rides.leave(booking)

        await self._track(booking, TrackingStatus.CANCELLED, None, reason or "Cancelled")
        self.events.notify_customer(
            booking.customer_id,
            Notice.BOOKING_CANCELLED,
            {
                "booking_id": booking.id,
                "cancellation_fee": fee,
                "cancelled_by_role": actor.role.value,
                "reason": reason,
            },
        )
        self._broadcast_status(booking)
        return booking

    # ── Inter-regional / scheduled ────────────────────────────────────

    async def approve_inter_regional(self, booking_id: int, actor: Actor) -> Booking:
        if not actor.is_privileged:
            raise Unauthorized("Only admins can approve inter-regional bookings")
        booking = await self.load(booking_id)
        if not booking.awaiting_approval:
            raise InvalidStateTransition(
                f"Booking {booking_id} is not awaiting approval"
            )
        if booking.status not in AWAITING_PROVIDER_STATUSES:
            raise InvalidStateTransition(
                f"Cannot approve a {booking.status.value} booking"
            )

        approved = booking.inter_regional.model_copy(update={"approved": True})
        if not await self.bookings.transition(
            booking_id, [booking.status], booking.status, inter_regional=approved
        ):
            raise Conflict(f"Booking {booking_id} changed concurrently")
        booking = await self.load(booking_id)
        logger.info("Inter-regional booking %s approved", booking_id)

        self.events.notify_customer(
            booking.customer_id,
            Notice.STATUS_CHANGED,
            {"booking_id": booking_id, "inter_regional_approved": True},
        )
        await self.dispatch_if_ready(booking)
        return booking

    async def release_scheduled(self, booking_id: int) -> Booking:
        """Move a scheduled booking into dispatch (``confirmed -> pending``)."""
        booking = await self.load(booking_id)
        if booking.status is not BookingStatus.CONFIRMED:
            raise InvalidStateTransition(
                f"Booking {booking_id} is {booking.status.value}, not confirmed"
            )
        booking = await self._advance(booking, BookingStatus.PENDING)
        self._broadcast_status(booking)
        await self.dispatch_if_ready(booking)
        return booking

    # ── Helpers ───────────────────────────────────────────────────────

    async def _freeze_group(self, booking: Booking, cancel_members: bool = False) -> None:
        """Close the shared-ride group once its leader leaves pending."""
        data = booking.shared_ride
        if data is None or not data.is_leader or data.group_id is None:
            return
        if await self.groups.close(data.group_id):
            logger.info("Shared-ride group %s closed", data.group_id)
        await self.bookings.update_fields(
            booking.id,
            service_data=data.model_copy(update={"accepting_passengers": False}),
        )
        if not cancel_members:
            return

        group = await self.groups.get(data.group_id)
        for member_id in group.member_booking_ids:
            if member_id == booking.id:
                continue
            member = await self.load(member_id)
            if member.status in AWAITING_PROVIDER_STATUSES:
                await self._cancel(
                    member,
                    SYSTEM_ACTOR,
                    "Shared ride cancelled by its leader",
                    False,
                    leave_group=False,
                )

    async def _track(
        self,
        booking: Booking,
        status: TrackingStatus,
        at: Optional[Location],
        message: str,
    ) -> None:
        point = at or booking.pickup
        await self.tracking.add(
            TrackingUpdate(
                booking_id=booking.id,
                status=status,
                latitude=point.latitude,
                longitude=point.longitude,
                message=message,
                timestamp=self.clock(),
            )
        )

    def _broadcast_status(self, booking: Booking) -> None:
        self.events.broadcast(
            f"booking:{booking.id}",
            Notice.STATUS_CHANGED,
            {
                "booking_id": booking.id,
                "status": booking.status.value,
                "provider_id": booking.provider_id,
            },
        )
