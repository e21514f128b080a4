"""
Zone endpoints
==============

GET  /api/v1/zones/resolve?lat=..&lng=..   -- zone containing a point
POST /api/v1/zones/inter-regional-check    -- can pickup -> dropoff be booked
"""

from fastapi import APIRouter, Depends, Query, Request

from dispatch_core.api.dependencies import get_services
from dispatch_core.api.middleware import DEFAULT_LIMIT, limiter
from dispatch_core.api.schemas import (
    InterRegionalCheckRequest,
    InterRegionalCheckResponse,
    ZoneResolveResponse,
    ZoneResponse,
)
from dispatch_core.services.container import Services

router = APIRouter(prefix="/zones", tags=["zones"])


@router.get(
    "/resolve",
    response_model=ZoneResolveResponse,
    summary="Resolve the service zone for a point",
)
@limiter.limit(DEFAULT_LIMIT)
async def resolve_zone(
    request: Request,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    services: Services = Depends(get_services),
):
    zone = await services.zones.resolve(lat, lng)
    return ZoneResolveResponse(zone=ZoneResponse.from_entity(zone))


@router.post(
    "/inter-regional-check",
    response_model=InterRegionalCheckResponse,
    summary="Inter-regional eligibility and fee",
)
@limiter.limit(DEFAULT_LIMIT)
async def inter_regional_check(
    request: Request,
    body: InterRegionalCheckRequest,
    services: Services = Depends(get_services),
):
    check = await services.zones.inter_regional_eligibility(
        body.pickup.to_location(), body.dropoff.to_location()
    )
    return InterRegionalCheckResponse(
        can_book=check.can_book,
        is_inter_regional=check.is_inter_regional,
        origin_zone=ZoneResponse.from_entity(check.origin_zone),
        destination_zone=ZoneResponse.from_entity(check.destination_zone),
        additional_fee=check.additional_fee,
        requires_approval=check.requires_approval,
        distance_km=check.distance_km,
        duration_min=check.duration_min,
    )
