"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from dispatch_core.domain.entities import (
    Booking,
    DriverOffer,
    Location,
    ServiceZone,
    SharedRideGroup,
    TrackingUpdate,
)
from dispatch_core.domain.enums import (
    BookingStatus,
    GroupStatus,
    OfferStatus,
    ServiceKind,
    TrackingStatus,
)
from dispatch_core.domain.service_data import InterRegionalData, ServiceData


# ── Requests ──────────────────────────────────────────────────────────


class Point(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    def to_location(self) -> Location:
        return Location(self.lat, self.lng)


class BookingCreateRequest(BaseModel):
    service_kind: ServiceKind
    pickup: Point
    dropoff: Optional[Point] = None
    scheduled_at: Optional[datetime] = None
    service_data: Optional[ServiceData] = None
    idempotency_key: Optional[str] = Field(
        None,
        max_length=64,
        description="Client-generated UUID to prevent double-booking on retries.",
    )


class CompleteRequest(BaseModel):
    final_price: Optional[float] = Field(None, ge=0)
    distance_km: Optional[float] = Field(None, ge=0)
    duration_min: Optional[int] = Field(None, ge=0)


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class SharedRideCreateRequest(BaseModel):
    pickup: Point
    dropoff: Point
    notes: Optional[str] = Field(None, max_length=500)


class InterRegionalCheckRequest(BaseModel):
    pickup: Point
    dropoff: Point


class LocationUpdateRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    heading: Optional[float] = Field(None, ge=0, lt=360)
    speed: Optional[float] = Field(None, ge=0)


class AvailabilityRequest(BaseModel):
    is_online: bool
    is_available: bool


# ── Responses ─────────────────────────────────────────────────────────


class BookingResponse(BaseModel):
    id: int
    customer_id: int
    provider_id: Optional[int] = None
    service_kind: ServiceKind
    status: BookingStatus
    pickup: Point
    dropoff: Optional[Point] = None
    pickup_zone_id: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    estimated_price: float
    estimated_distance_km: Optional[float] = None
    estimated_duration_min: Optional[int] = None
    surge_multiplier: float = 1.0
    final_price: Optional[float] = None
    platform_commission: Optional[float] = None
    provider_earning: Optional[float] = None
    cancellation_fee: Optional[float] = None
    cancellation_reason: Optional[str] = None
    service_data: Optional[dict[str, Any]] = None
    inter_regional: Optional[InterRegionalData] = None

    @classmethod
    def from_entity(cls, booking: Booking) -> "BookingResponse":
        return cls(
            id=booking.id,
            customer_id=booking.customer_id,
            provider_id=booking.provider_id,
            service_kind=booking.service_kind,
            status=booking.status,
            pickup=Point(lat=booking.pickup.latitude, lng=booking.pickup.longitude),
            dropoff=(
                Point(lat=booking.dropoff.latitude, lng=booking.dropoff.longitude)
                if booking.dropoff
                else None
            ),
            pickup_zone_id=booking.pickup_zone_id,
            scheduled_at=booking.scheduled_at,
            created_at=booking.created_at,
            accepted_at=booking.accepted_at,
            started_at=booking.started_at,
            completed_at=booking.completed_at,
            cancelled_at=booking.cancelled_at,
            estimated_price=booking.estimated_price,
            estimated_distance_km=booking.estimated_distance_km,
            estimated_duration_min=booking.estimated_duration_min,
            surge_multiplier=booking.surge_multiplier,
            final_price=booking.final_price,
            platform_commission=booking.platform_commission,
            provider_earning=booking.provider_earning,
            cancellation_fee=booking.cancellation_fee,
            cancellation_reason=booking.cancellation_reason,
            service_data=(
                booking.service_data.model_dump(mode="json")
                if booking.service_data is not None
                else None
            ),
            inter_regional=booking.inter_regional,
        )


class BookingPage(BaseModel):
    items: list[BookingResponse]
    total: int
    page: int
    limit: int


class OfferResponse(BaseModel):
    id: int
    booking_id: int
    provider_id: int
    status: OfferStatus
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    distance_km: Optional[float] = None

    @classmethod
    def from_entity(cls, offer: DriverOffer) -> "OfferResponse":
        return cls(
            id=offer.id,
            booking_id=offer.booking_id,
            provider_id=offer.provider_id,
            status=offer.status,
            issued_at=offer.issued_at,
            expires_at=offer.expires_at,
            responded_at=offer.responded_at,
            distance_km=offer.distance_km,
        )


class TrackingResponse(BaseModel):
    status: TrackingStatus
    lat: float
    lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    message: str = ""
    timestamp: Optional[datetime] = None

    @classmethod
    def from_entity(cls, update: TrackingUpdate) -> "TrackingResponse":
        return cls(
            status=update.status,
            lat=update.latitude,
            lng=update.longitude,
            heading=update.heading,
            speed=update.speed,
            message=update.message,
            timestamp=update.timestamp,
        )


class ZoneResponse(BaseModel):
    id: int
    name: str
    display_name: str
    zone_type: str
    priority: int
    radius_m: float

    @classmethod
    def from_entity(cls, zone: Optional[ServiceZone]) -> Optional["ZoneResponse"]:
        if zone is None:
            return None
        return cls(
            id=zone.id,
            name=zone.name,
            display_name=zone.display_name,
            zone_type=zone.zone_type.value,
            priority=zone.priority,
            radius_m=zone.radius_m,
        )


class ZoneResolveResponse(BaseModel):
    zone: Optional[ZoneResponse] = None


class InterRegionalCheckResponse(BaseModel):
    can_book: bool
    is_inter_regional: bool
    origin_zone: Optional[ZoneResponse] = None
    destination_zone: Optional[ZoneResponse] = None
    additional_fee: float = 0.0
    requires_approval: bool = False
    distance_km: float = 0.0
    duration_min: int = 0


class CompatibleGroupResponse(BaseModel):
    group_id: int
    leader_booking_id: int
    score: float
    current_passengers: int
    max_capacity: int


class SharedRideGroupResponse(BaseModel):
    id: int
    leader_booking_id: int
    member_booking_ids: list[int]
    total_price: float
    max_capacity: int
    status: GroupStatus
    created_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, group: SharedRideGroup) -> "SharedRideGroupResponse":
        return cls(
            id=group.id,
            leader_booking_id=group.leader_booking_id,
            member_booking_ids=group.member_booking_ids,
            total_price=group.total_price,
            max_capacity=group.max_capacity,
            status=group.status,
            created_at=group.created_at,
        )


class LocationResponse(BaseModel):
    current_zone: Optional[ZoneResponse] = None
    zone_changed: bool
    is_authorized_in_zone: bool


class ProviderStatusResponse(BaseModel):
    id: int
    is_online: bool
    is_available: bool
    current_zone_id: Optional[int] = None


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    kind: str
    detail: str
