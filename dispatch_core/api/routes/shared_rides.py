"""
Shared-ride endpoints
=====================

POST /api/v1/shared-rides                     -- join the best group or open one
POST /api/v1/shared-rides/compatible          -- list joinable groups
POST /api/v1/shared-rides/{group_id}/join     -- join a specific group
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from dispatch_core.api.dependencies import get_actor, get_services
from dispatch_core.api.middleware import DEFAULT_LIMIT, limiter
from dispatch_core.api.schemas import (
    BookingResponse,
    CompatibleGroupResponse,
    ErrorResponse,
    SharedRideCreateRequest,
)
from dispatch_core.domain.entities import Actor
from dispatch_core.services.container import Services
from dispatch_core.services.shared_rides import SharedRideRequest

router = APIRouter(prefix="/shared-rides", tags=["shared-rides"])


def _request(body: SharedRideCreateRequest) -> SharedRideRequest:
    return SharedRideRequest(
        pickup=body.pickup.to_location(),
        dropoff=body.dropoff.to_location(),
        notes=body.notes,
    )


@router.post(
    "",
    status_code=201,
    response_model=BookingResponse,
    summary="Request a shared ride",
    description=(
        "Joins the most similar open group created in the last 15 minutes "
        "(score >= 0.7), or opens a new group led by this booking."
    ),
)
@limiter.limit(DEFAULT_LIMIT)
async def request_shared_ride(
    request: Request,
    body: SharedRideCreateRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    booking = await services.shared_rides.request_ride(actor, _request(body))
    return BookingResponse.from_entity(booking)


@router.post(
    "/compatible",
    response_model=list[CompatibleGroupResponse],
    summary="List compatible shared-ride groups",
)
@limiter.limit(DEFAULT_LIMIT)
async def compatible_groups(
    request: Request,
    body: SharedRideCreateRequest,
    services: Services = Depends(get_services),
):
    matches = await services.shared_rides.find_compatible(_request(body))
    return [
        CompatibleGroupResponse(
            group_id=m.group_id,
            leader_booking_id=m.leader_booking_id,
            score=m.score,
            current_passengers=m.current_passengers,
            max_capacity=m.max_capacity,
        )
        for m in matches
    ]


@router.post(
    "/{group_id}/join",
    status_code=201,
    response_model=BookingResponse,
    summary="Join a shared-ride group",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
@limiter.limit(DEFAULT_LIMIT)
async def join_group(
    request: Request,
    group_id: int,
    body: SharedRideCreateRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    booking = await services.shared_rides.join(actor, _request(body), group_id)
    return BookingResponse.from_entity(booking)
