"""
Per-service-kind booking payloads.

Each service kind carries its own typed attributes.  The variants form a
pydantic discriminated union keyed by ``kind`` so that rows round-trip through
a single JSON column without stringly-typed field access.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from .enums import ServiceKind


class RideData(BaseModel):
    kind: Literal["ride", "taxi"] = "ride"
    ride_type: str = "standard"
    notes: Optional[str] = None


class DeliveryData(BaseModel):
    kind: Literal["dispatch_delivery"] = "dispatch_delivery"
    package_description: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None


class SharedRideData(BaseModel):
    kind: Literal["shared_ride"] = "shared_ride"
    group_id: Optional[int] = None
    is_leader: bool = False
    # Leader-only bookkeeping
    accepting_passengers: bool = False
    current_passengers: int = 1
    max_passengers: int = 4
    member_booking_ids: list[int] = []


class DayBookingData(BaseModel):
    kind: Literal["day_booking"] = "day_booking"
    hours: int = Field(8, ge=1, le=24)
    notes: Optional[str] = None


class MovingItem(BaseModel):
    name: str
    quantity: int = Field(1, ge=1)
    fragile: bool = False


class MovingData(BaseModel):
    kind: Literal["house_moving"] = "house_moving"
    inventory: list[MovingItem] = []
    floors: int = Field(0, ge=0)
    needs_packing: bool = False


ServiceData = Annotated[
    Union[RideData, DeliveryData, SharedRideData, DayBookingData, MovingData],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter = TypeAdapter(ServiceData)


class InterRegionalData(BaseModel):
    origin_zone_id: int
    destination_zone_id: int
    fee: float
    requires_approval: bool = False
    approved: bool = True


def default_service_data(kind: ServiceKind):
    """Empty payload for *kind*."""
    if kind in (ServiceKind.RIDE, ServiceKind.TAXI):
        return RideData(kind=kind.value)
    if kind is ServiceKind.DISPATCH_DELIVERY:
        return DeliveryData()
    if kind is ServiceKind.SHARED_RIDE:
        return SharedRideData()
    if kind is ServiceKind.DAY_BOOKING:
        return DayBookingData()
    return MovingData()


def matches_kind(data, kind: ServiceKind) -> bool:
    return data.kind == kind.value


def parse_service_data(raw: Optional[dict]):
    return _adapter.validate_python(raw) if raw else None


def dump_service_data(data) -> Optional[dict]:
    return data.model_dump(mode="json") if data is not None else None
