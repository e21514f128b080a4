"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``Booking``: enforces valid lifecycle transitions
  (CONFIRMED/PENDING -> ASSIGNED -> ARRIVED -> IN_PROGRESS -> COMPLETED,
  with CANCELLED reachable before the trip starts).
- ``SharedRideGroup.has_room`` encapsulates the capacity invariant.
- Value objects (``Location``, ``Actor``, ``ProviderSnapshot``) are frozen.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from .enums import (
    ASSIGNED_STATUSES,
    BOOKING_TRANSITIONS,
    ActorRole,
    BookingStatus,
    GroupStatus,
    OfferStatus,
    ServiceKind,
    TrackingStatus,
    ZoneType,
)
from .errors import InvalidStateTransition
from .service_data import InterRegionalData, SharedRideData


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Actor:
    """The authenticated user an operation runs on behalf of."""

    user_id: int
    role: ActorRole

    @property
    def is_privileged(self) -> bool:
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)


SYSTEM_ACTOR = Actor(user_id=0, role=ActorRole.SYSTEM)


@dataclass(frozen=True)
class ProviderSnapshot:
    """Point-in-time view of a provider, as used for matching."""

    id: int
    rating: float = 5.0
    location: Optional[Location] = None
    service_kinds: frozenset = frozenset()
    zone_ids: frozenset = frozenset()
    inter_regional_zone_ids: frozenset = frozenset()
    is_online: bool = True
    is_available: bool = True
    is_verified: bool = True
    current_zone_id: Optional[int] = None
    name: str = ""

    def serves(self, kind: ServiceKind) -> bool:
        return kind.value in self.service_kinds

    def authorized_in(self, zone_id: int) -> bool:
        return zone_id in self.zone_ids

    def can_take_inter_regional(self, origin_zone_id: Optional[int]) -> bool:
        if origin_zone_id is None:
            return bool(self.inter_regional_zone_ids)
        return origin_zone_id in self.inter_regional_zone_ids


@dataclass(frozen=True)
class ServiceZone:
    id: int
    name: str
    center: Location
    radius_m: float
    zone_type: ZoneType = ZoneType.LOCAL
    priority: int = 0
    is_active: bool = True
    display_name: str = ""
    inter_regional_fee: float = 0.0


@dataclass(frozen=True)
class InterRegionalRoute:
    origin_zone_id: int
    destination_zone_id: int
    base_fee: float = 0.0
    requires_approval: bool = False
    is_active: bool = True

    def connects(self, a: int, b: int) -> bool:
        return {self.origin_zone_id, self.destination_zone_id} == {a, b}


# ── Requests ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BookingRequest:
    service_kind: ServiceKind
    pickup: Location
    dropoff: Optional[Location] = None
    scheduled_at: Optional[datetime] = None
    service_data: Any = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class TripActuals:
    """Figures reported when a trip ends; each overrides the estimate."""

    final_price: Optional[float] = None
    distance_km: Optional[float] = None
    duration_min: Optional[int] = None


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Booking:
    id: Optional[int] = None
    customer_id: int = 0
    provider_id: Optional[int] = None
    service_kind: ServiceKind = ServiceKind.RIDE
    status: BookingStatus = BookingStatus.PENDING
    pickup: Location = field(default_factory=lambda: Location(0, 0))
    dropoff: Optional[Location] = None
    pickup_zone_id: Optional[int] = None
    scheduled_at: Optional[datetime] = None

    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    estimated_price: float = 0.0
    estimated_distance_km: Optional[float] = None
    estimated_duration_min: Optional[int] = None
    surge_multiplier: float = 1.0
    final_price: Optional[float] = None
    actual_distance_km: Optional[float] = None
    actual_duration_min: Optional[int] = None
    platform_commission: Optional[float] = None
    provider_earning: Optional[float] = None

    service_data: Any = None
    inter_regional: Optional[InterRegionalData] = None

    cancelled_by: Optional[int] = None
    cancelled_by_role: Optional[ActorRole] = None
    cancellation_reason: Optional[str] = None
    cancellation_fee: Optional[float] = None
    released_provider_id: Optional[int] = None
    idempotency_key: Optional[str] = None
    dispatch_attempts: int = 0

    @property
    def is_immediate(self) -> bool:
        return self.scheduled_at is None

    @property
    def is_inter_regional(self) -> bool:
        return self.inter_regional is not None

    @property
    def shared_ride(self) -> Optional[SharedRideData]:
        data = self.service_data
        return data if isinstance(data, SharedRideData) else None

    @property
    def is_ride_along(self) -> bool:
        """Shared-ride member that travels on its leader's assignment."""
        data = self.shared_ride
        return data is not None and not data.is_leader

    @property
    def awaiting_approval(self) -> bool:
        return self.inter_regional is not None and not self.inter_regional.approved

    def transition_to(self, new_status: BookingStatus) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        allowed = BOOKING_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidStateTransition(
                f"Cannot transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def invariant_violations(self) -> list[str]:
        """Consistency rules every persisted booking must satisfy."""
        problems = []
        if (self.provider_id is not None) != (self.status in ASSIGNED_STATUSES):
            problems.append("provider_id must be set iff the booking is assigned")
        if (self.final_price is not None) != (
            self.status is BookingStatus.COMPLETED
        ):
            problems.append("final_price must be set iff the booking is completed")
        stamps = [
            t for t in (self.accepted_at, self.started_at, self.completed_at) if t
        ]
        if stamps != sorted(stamps):
            problems.append("accepted_at <= started_at <= completed_at")
        return problems


# Reason stamped on sibling offers closed when another provider wins
ASSIGNED_ELSEWHERE = "assigned_to_another_provider"


@dataclass
class DriverOffer:
    id: Optional[int] = None
    booking_id: int = 0
    provider_id: int = 0
    status: OfferStatus = OfferStatus.OFFERED
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    reason: Optional[str] = None
    distance_km: Optional[float] = None

    def is_open_at(self, now: datetime) -> bool:
        return self.status is OfferStatus.OFFERED and (
            self.expires_at is None or now <= self.expires_at
        )

    @property
    def closed_by_assignment(self) -> bool:
        return self.status is OfferStatus.EXPIRED and self.reason == ASSIGNED_ELSEWHERE


@dataclass
class SharedRideGroup:
    id: Optional[int] = None
    leader_booking_id: int = 0
    member_booking_ids: list[int] = field(default_factory=list)
    total_price: float = 0.0
    max_capacity: int = 4
    status: GroupStatus = GroupStatus.OPEN
    created_at: Optional[datetime] = None

    @property
    def passenger_count(self) -> int:
        return len(self.member_booking_ids)

    def has_room(self, seats: int = 1) -> bool:
        return (
            self.status is GroupStatus.OPEN
            and self.passenger_count + seats <= self.max_capacity
        )

    def add_member(self, booking_id: int) -> None:
        self.member_booking_ids.append(booking_id)
        if self.passenger_count >= self.max_capacity:
            self.status = GroupStatus.CLOSED

    def remove_member(self, booking_id: int, reopen: bool = False) -> None:
        self.member_booking_ids.remove(booking_id)
        if reopen and self.passenger_count < self.max_capacity:
            self.status = GroupStatus.OPEN


@dataclass
class EarningRecord:
    provider_id: int
    booking_id: int
    service_kind: ServiceKind
    amount: float
    commission: float
    net_earning: float
    week_starting: datetime
    month_year: str
    id: Optional[int] = None

    @staticmethod
    def buckets(at: datetime) -> tuple[datetime, str]:
        """Sunday-start week and ``YYYY-MM`` month that *at* falls in."""
        days_since_sunday = (at.weekday() + 1) % 7
        week = (at - timedelta(days=days_since_sunday)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        return week, at.strftime("%Y-%m")


@dataclass
class TrackingUpdate:
    booking_id: int
    status: TrackingStatus
    latitude: float = 0.0
    longitude: float = 0.0
    heading: Optional[float] = None
    speed: Optional[float] = None
    message: str = ""
    timestamp: Optional[datetime] = None
    id: Optional[int] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
