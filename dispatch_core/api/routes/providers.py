"""
Provider endpoints
==================

PUT /api/v1/providers/me/location       -- location ping (last write wins)
PUT /api/v1/providers/me/availability   -- go online / offline
"""

from fastapi import APIRouter, Depends, Request

from dispatch_core.api.dependencies import get_actor, get_services
from dispatch_core.api.middleware import limiter
from dispatch_core.api.schemas import (
    AvailabilityRequest,
    LocationResponse,
    LocationUpdateRequest,
    ProviderStatusResponse,
    ZoneResponse,
)
from dispatch_core.domain.entities import Actor
from dispatch_core.services.container import Services

router = APIRouter(prefix="/providers", tags=["providers"])


@router.put(
    "/me/location",
    response_model=LocationResponse,
    summary="Report the provider's current position",
)
@limiter.limit("600/minute")
async def update_location(
    request: Request,
    body: LocationUpdateRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    result = await services.tracking.update_location(
        actor, body.lat, body.lng, body.heading, body.speed
    )
    return LocationResponse(
        current_zone=ZoneResponse.from_entity(result.zone),
        zone_changed=result.zone_changed,
        is_authorized_in_zone=result.is_authorized_in_zone,
    )


@router.put(
    "/me/availability",
    response_model=ProviderStatusResponse,
    summary="Set online / available flags",
)
@limiter.limit("100/minute")
async def set_availability(
    request: Request,
    body: AvailabilityRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    provider = await services.tracking.set_availability(
        actor, body.is_online, body.is_available
    )
    return ProviderStatusResponse(
        id=provider.id,
        is_online=provider.is_online,
        is_available=provider.is_available,
        current_zone_id=provider.current_zone_id,
    )
