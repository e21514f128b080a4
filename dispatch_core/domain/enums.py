"""Domain enumerations and state-transition rules."""

import enum


class BookingStatus(str, enum.Enum):
    CONFIRMED = "confirmed"  # scheduled, not yet released for dispatch
    PENDING = "pending"
    ASSIGNED = "assigned"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# State machine: maps current status -> set of valid next statuses
BOOKING_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.CONFIRMED: {
        BookingStatus.PENDING,
        BookingStatus.ASSIGNED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.PENDING: {BookingStatus.ASSIGNED, BookingStatus.CANCELLED},
    BookingStatus.ASSIGNED: {
        BookingStatus.ARRIVED,
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
    },
    BookingStatus.ARRIVED: {BookingStatus.IN_PROGRESS},
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

# Statuses in which a booking holds a provider
ASSIGNED_STATUSES = frozenset(
    {
        BookingStatus.ASSIGNED,
        BookingStatus.ARRIVED,
        BookingStatus.IN_PROGRESS,
        BookingStatus.COMPLETED,
    }
)

ACTIVE_STATUSES = frozenset(
    {
        BookingStatus.CONFIRMED,
        BookingStatus.PENDING,
        BookingStatus.ASSIGNED,
        BookingStatus.ARRIVED,
        BookingStatus.IN_PROGRESS,
    }
)

# Statuses in which a provider is busy with the booking
PROVIDER_ACTIVE_STATUSES = ASSIGNED_STATUSES - {BookingStatus.COMPLETED}

AWAITING_PROVIDER_STATUSES = frozenset(
    {BookingStatus.PENDING, BookingStatus.CONFIRMED}
)


def sources_for(target: BookingStatus) -> set[BookingStatus]:
    """Every status from which *target* is reachable in one step."""
    return {
        status
        for status, allowed in BOOKING_TRANSITIONS.items()
        if target in allowed
    }


class ServiceKind(str, enum.Enum):
    RIDE = "ride"
    TAXI = "taxi"
    DISPATCH_DELIVERY = "dispatch_delivery"
    SHARED_RIDE = "shared_ride"
    DAY_BOOKING = "day_booking"
    HOUSE_MOVING = "house_moving"


class OfferStatus(str, enum.Enum):
    OFFERED = "offered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ZoneType(str, enum.Enum):
    LOCAL = "local"
    REGIONAL = "regional"


class GroupStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class ActorRole(str, enum.Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


class TrackingStatus(str, enum.Enum):
    TRACKING_STARTED = "TRACKING_STARTED"
    LOCATION_UPDATE = "LOCATION_UPDATE"
    DRIVER_ARRIVED = "DRIVER_ARRIVED"
    TRIP_STARTED = "TRIP_STARTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Notice(str, enum.Enum):
    """Outbound notification / broadcast event names."""

    BOOKING_CREATED = "BOOKING_CREATED"
    NEW_BOOKING_REQUEST = "NEW_BOOKING_REQUEST"
    BOOKING_ACCEPTED = "BOOKING_ACCEPTED"
    BOOKING_ASSIGNED = "BOOKING_ASSIGNED"
    OFFER_EXPIRED = "OFFER_EXPIRED"
    DRIVER_ARRIVED = "DRIVER_ARRIVED"
    TRIP_STARTED = "TRIP_STARTED"
    TRIP_COMPLETED = "TRIP_COMPLETED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    NO_PROVIDER_AVAILABLE = "NO_PROVIDER_AVAILABLE"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    SHARED_RIDE_UPDATED = "SHARED_RIDE_UPDATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    LOCATION_UPDATE = "LOCATION_UPDATE"
    SYSTEM_ALERT = "SYSTEM_ALERT"
    SAFETY_ALERT = "SAFETY_ALERT"
