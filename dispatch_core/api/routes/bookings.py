"""
Booking endpoints
=================

POST  /api/v1/bookings                      -- create a booking
GET   /api/v1/bookings                      -- list own bookings (paged)
GET   /api/v1/bookings/{id}                 -- booking detail
PATCH /api/v1/bookings/{id}/arrive          -- provider arrived at pickup
PATCH /api/v1/bookings/{id}/start           -- trip started
PATCH /api/v1/bookings/{id}/complete        -- trip completed
PATCH /api/v1/bookings/{id}/cancel          -- cancel
PATCH /api/v1/bookings/{id}/approve         -- approve an inter-regional booking
GET   /api/v1/bookings/{id}/tracking        -- tracking history
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from dispatch_core.api.dependencies import get_actor, get_services
from dispatch_core.api.middleware import DEFAULT_LIMIT, limiter
from dispatch_core.api.schemas import (
    BookingCreateRequest,
    BookingPage,
    BookingResponse,
    CompleteRequest,
    ErrorResponse,
    ReasonRequest,
    TrackingResponse,
)
from dispatch_core.domain.entities import Actor, BookingRequest, TripActuals
from dispatch_core.domain.enums import BookingStatus
from dispatch_core.services.container import Services

router = APIRouter(prefix="/bookings", tags=["bookings"])

_ERRORS = {
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


@router.post(
    "",
    status_code=201,
    response_model=BookingResponse,
    summary="Create a booking",
    description=(
        "Validates, prices and persists the booking.  Immediate bookings "
        "are offered to nearby providers straight away; scheduled ones "
        "stay confirmed until the dispatch worker releases them."
    ),
    responses={**_ERRORS, 503: {"model": ErrorResponse}},
)
@limiter.limit(DEFAULT_LIMIT)
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    booking = await services.lifecycle.create(
        actor,
        BookingRequest(
            service_kind=body.service_kind,
            pickup=body.pickup.to_location(),
            dropoff=body.dropoff.to_location() if body.dropoff else None,
            scheduled_at=body.scheduled_at,
            service_data=body.service_data,
            idempotency_key=body.idempotency_key,
        ),
    )
    return BookingResponse.from_entity(booking)


@router.get("", response_model=BookingPage, summary="List bookings")
@limiter.limit(DEFAULT_LIMIT)
async def list_bookings(
    request: Request,
    status: Optional[BookingStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    items, total = await services.lifecycle.list_bookings(
        actor, status, date_from, date_to, page, limit
    )
    return BookingPage(
        items=[BookingResponse.from_entity(b) for b in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get(
    "/{booking_id}",
    response_model=BookingResponse,
    summary="Get a booking",
    responses=_ERRORS,
)
@limiter.limit(DEFAULT_LIMIT)
async def get_booking(
    request: Request,
    booking_id: int,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    return BookingResponse.from_entity(await services.lifecycle.get(booking_id, actor))


@router.patch(
    "/{booking_id}/arrive",
    response_model=BookingResponse,
    summary="Provider arrived at pickup",
    responses=_ERRORS,
)
@limiter.limit(DEFAULT_LIMIT)
async def mark_arrived(
    request: Request,
    booking_id: int,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    booking = await services.lifecycle.mark_arrived(booking_id, actor)
    return BookingResponse.from_entity(booking)


@router.patch(
    "/{booking_id}/start",
    response_model=BookingResponse,
    summary="Start the trip",
    responses=_ERRORS,
)
@limiter.limit(DEFAULT_LIMIT)
async def start_trip(
    request: Request,
    booking_id: int,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    booking = await services.lifecycle.start(booking_id, actor)
    return BookingResponse.from_entity(booking)


@router.patch(
    "/{booking_id}/complete",
    response_model=BookingResponse,
    summary="Complete the trip",
    description=(
        "Settles the final price (estimate unless overridden), splits it "
        "into platform commission and provider earning, frees the provider "
        "and records the earning."
    ),
    responses=_ERRORS,
)
@limiter.limit(DEFAULT_LIMIT)
async def complete_trip(
    request: Request,
    booking_id: int,
    body: Optional[CompleteRequest] = None,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    body = body or CompleteRequest()
    booking = await services.lifecycle.complete(
        booking_id,
        actor,
        TripActuals(
            final_price=body.final_price,
            distance_km=body.distance_km,
            duration_min=body.duration_min,
        ),
    )
    return BookingResponse.from_entity(booking)


@router.patch(
    "/{booking_id}/cancel",
    response_model=BookingResponse,
    summary="Cancel a booking",
    description=(
        "Allowed before the trip starts.  A customer cancelling after a "
        "provider was assigned pays a cancellation fee."
    ),
    responses=_ERRORS,
)
@limiter.limit(DEFAULT_LIMIT)
async def cancel_booking(
    request: Request,
    booking_id: int,
    body: Optional[ReasonRequest] = None,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    reason = body.reason if body else None
    booking = await services.lifecycle.cancel(booking_id, actor, reason)
    return BookingResponse.from_entity(booking)


@router.patch(
    "/{booking_id}/approve",
    response_model=BookingResponse,
    summary="Approve an inter-regional booking (admin)",
    responses=_ERRORS,
)
@limiter.limit(DEFAULT_LIMIT)
async def approve_inter_regional(
    request: Request,
    booking_id: int,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    booking = await services.lifecycle.approve_inter_regional(booking_id, actor)
    return BookingResponse.from_entity(booking)


@router.get(
    "/{booking_id}/tracking",
    response_model=list[TrackingResponse],
    summary="Tracking history",
    responses=_ERRORS,
)
@limiter.limit(DEFAULT_LIMIT)
async def tracking_history(
    request: Request,
    booking_id: int,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    history = await services.lifecycle.tracking_history(booking_id, actor)
    return [TrackingResponse.from_entity(u) for u in history]
