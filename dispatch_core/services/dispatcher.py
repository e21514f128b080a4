"""
Dispatch Notifier
=================

Fans a pending booking out to ranked candidates as time-boxed offers.

* ``dispatch`` -- zone context -> H3 prefilter -> matching engine -> offers.
* ``offer``    -- one ``DriverOffer`` per candidate with a fixed window
  (60 s, the driver-app countdown).  Idempotent per (booking, provider)
  while an offer is outstanding.  Each candidate gets a
  ``NEW_BOOKING_REQUEST`` notification; delivery is fire-and-forget.
* ``accept``   -- the offer window is authoritative.  CAS the offer to
  ``accepted`` and delegate to ``BookingLifecycle.assign``, which expires
  every sibling offer.  A late or losing acceptance raises
  ``OfferExpired`` / ``Conflict``.
* ``reject``   -- CAS the offer to ``rejected``; the booking stays pending.
* ``expire_lapsed`` -- offers past their window become ``expired``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_core.config import settings
from dispatch_core.domain.entities import Actor, Booking, DriverOffer
from dispatch_core.domain.enums import ActorRole, Notice, OfferStatus
from dispatch_core.domain.errors import (
    Conflict,
    DispatchError,
    NotFound,
    OfferExpired,
    Unauthorized,
)
from dispatch_core.domain.matching import (
    Candidate,
    DriverMatchingEngine,
    ZoneContext,
    search_cells,
)
from dispatch_core.infrastructure.events import EventPublisher
from dispatch_core.infrastructure.repositories import (
    BookingRepository,
    OfferRepository,
    ProviderRepository,
)

from .lifecycle import BookingLifecycle, Clock

logger = logging.getLogger(__name__)


class DispatchNotifier:
    def __init__(
        self,
        session: AsyncSession,
        lifecycle: BookingLifecycle,
        events: EventPublisher,
        engine: Optional[DriverMatchingEngine] = None,
        clock: Optional[Clock] = None,
        config=settings,
    ):
        self.bookings = BookingRepository(session)
        self.offers = OfferRepository(session)
        self.providers = ProviderRepository(session)
        self.lifecycle = lifecycle
        self.events = events
        self.config = config
        self.clock = clock or lifecycle.clock
        self.engine = engine or DriverMatchingEngine(
            radius_km=config.match_radius_km,
            standard_limit=config.standard_candidate_limit,
            inter_regional_limit=config.inter_regional_candidate_limit,
            speed_kmh=config.average_speed_kmh,
        )

    # ── Matching ──────────────────────────────────────────────────────

    async def find_candidates(
        self,
        booking: Booking,
        radius_km: Optional[float] = None,
        exclude: Iterable[int] = (),
    ) -> list[Candidate]:
        radius = radius_km if radius_km is not None else self.engine.radius_km
        cells = search_cells(
            booking.pickup.latitude,
            booking.pickup.longitude,
            radius,
            self.config.h3_resolution,
        )
        providers = await self.providers.find_ready_in_cells(cells)
        return self.engine.find_candidates(
            providers,
            booking.pickup,
            booking.service_kind,
            ZoneContext(
                pickup_zone_id=booking.pickup_zone_id,
                is_inter_regional=booking.is_inter_regional,
            ),
            exclude=exclude,
            radius_km=radius,
        )

    async def dispatch(
        self,
        booking: Booking,
        radius_km: Optional[float] = None,
        exclude: Iterable[int] = (),
    ) -> list[DriverOffer]:
        """One matching pass for *booking*.  Returns the offers issued."""
        candidates = await self.find_candidates(booking, radius_km, exclude)
        await self.bookings.bump_dispatch_attempts(booking.id)
        if not candidates:
            logger.info("No candidates for booking %s", booking.id)
            return []
        return await self.offer(booking, candidates)

    # ── Offers ────────────────────────────────────────────────────────

    async def offer(
        self, booking: Booking, candidates: list[Candidate]
    ) -> list[DriverOffer]:
        now = self.clock()
        expires_at = now + timedelta(seconds=self.config.offer_window_seconds)

        issued = []
        for candidate in candidates:
            if await self.offers.has_outstanding(booking.id, candidate.provider_id):
                continue
            offer = await self.offers.add(
                DriverOffer(
                    booking_id=booking.id,
                    provider_id=candidate.provider_id,
                    status=OfferStatus.OFFERED,
                    issued_at=now,
                    expires_at=expires_at,
                    distance_km=candidate.distance_km,
                )
            )
            issued.append((offer, candidate))

        # Notify only once every offer row is written
        for offer, candidate in issued:
            self.events.notify_provider(
                candidate.provider_id,
                Notice.NEW_BOOKING_REQUEST,
                {
                    "offer_id": offer.id,
                    "booking_id": booking.id,
                    "service_kind": booking.service_kind.value,
                    "pickup": [booking.pickup.latitude, booking.pickup.longitude],
                    "dropoff": (
                        [booking.dropoff.latitude, booking.dropoff.longitude]
                        if booking.dropoff
                        else None
                    ),
                    "estimated_price": booking.estimated_price,
                    "distance_km": candidate.distance_km,
                    "eta_min": candidate.eta_min,
                    "expires_at": expires_at.isoformat(),
                },
            )

        logger.info(
            "Booking %s offered to %d provider(s)", booking.id, len(issued)
        )
        return [offer for offer, _ in issued]

    async def _load_own_offer(self, offer_id: int, actor: Actor) -> DriverOffer:
        offer = await self.offers.get(offer_id)
        if offer is None:
            raise NotFound(f"Offer {offer_id} not found")
        if not actor.is_privileged and not (
            actor.role is ActorRole.PROVIDER and actor.user_id == offer.provider_id
        ):
            raise Unauthorized(f"Offer {offer_id} belongs to another provider")
        return offer

    @staticmethod
    def _resolved(offer: DriverOffer) -> Conflict:
        if offer.closed_by_assignment:
            return Conflict(
                f"Booking {offer.booking_id} was assigned to another provider"
            )
        if offer.status is OfferStatus.EXPIRED:
            return OfferExpired(f"Offer {offer.id} has expired")
        return Conflict(f"Offer {offer.id} is already {offer.status.value}")

    def _ensure_open(self, offer: DriverOffer) -> None:
        if offer.status is not OfferStatus.OFFERED:
            raise self._resolved(offer)
        if not offer.is_open_at(self.clock()):
            raise OfferExpired(f"Offer {offer.id} acceptance window has closed")

    async def accept(self, offer_id: int, actor: Actor) -> Booking:
        offer = await self._load_own_offer(offer_id, actor)
        self._ensure_open(offer)

        now = self.clock()
        if not await self.offers.transition(
            offer_id, OfferStatus.OFFERED, OfferStatus.ACCEPTED, responded_at=now
        ):
            raise self._resolved(await self.offers.get(offer_id))

        try:
            booking = await self.lifecycle.assign(
                offer.booking_id, offer.provider_id, actor
            )
        except DispatchError as exc:
            # A lost race retires the offer; anything else leaves it open
            fallback = (
                OfferStatus.EXPIRED if isinstance(exc, Conflict) else OfferStatus.OFFERED
            )
            await self.offers.transition(offer_id, OfferStatus.ACCEPTED, fallback)
            raise

        logger.info(
            "Offer %s accepted by provider %s", offer_id, offer.provider_id
        )
        return booking

    async def reject(
        self, offer_id: int, actor: Actor, reason: Optional[str] = None
    ) -> DriverOffer:
        offer = await self._load_own_offer(offer_id, actor)
        self._ensure_open(offer)

        if not await self.offers.transition(
            offer_id,
            OfferStatus.OFFERED,
            OfferStatus.REJECTED,
            responded_at=self.clock(),
            reason=reason,
        ):
            raise Conflict(f"Offer {offer_id} was resolved concurrently")
        logger.info("Offer %s rejected (%s)", offer_id, reason or "no reason")
        return await self.offers.get(offer_id)

    async def retry(self, booking: Booking) -> list[DriverOffer]:
        """
        Re-dispatch a pending booking whose offers all lapsed.

        Passes after the first search the expanded radius and skip every
        provider already offered.  Once ``max_dispatch_attempts`` passes
        found nobody the customer is told, once.
        """
        if booking.awaiting_approval or booking.is_ride_along:
            return []
        if await self.offers.outstanding_for(booking.id):
            return []

        attempts = booking.dispatch_attempts
        limit = self.config.max_dispatch_attempts
        if attempts >= limit:
            if attempts == limit:
                await self.bookings.bump_dispatch_attempts(booking.id)
                logger.warning(
                    "Booking %s: no provider after %d attempts", booking.id, attempts
                )
                self.events.notify_customer(
                    booking.customer_id,
                    Notice.NO_PROVIDER_AVAILABLE,
                    {"booking_id": booking.id, "attempts": attempts},
                )
            return []

        radius = self.config.expanded_match_radius_km if attempts else None
        exclude = await self.offers.offered_provider_ids(booking.id)
        return await self.dispatch(booking, radius_km=radius, exclude=exclude)

    async def expire_lapsed(self, now: Optional[datetime] = None) -> int:
        expired = await self.offers.expire_lapsed(now or self.clock())
        if expired:
            logger.info("Expired %d lapsed offer(s)", expired)
        return expired

    async def list_offers(
        self, actor: Actor, status: Optional[OfferStatus] = None
    ) -> list[DriverOffer]:
        if actor.role is not ActorRole.PROVIDER:
            raise Unauthorized("Only providers have offers")
        return await self.offers.list_for_provider(actor.user_id, status)
