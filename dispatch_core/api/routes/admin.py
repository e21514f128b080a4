"""
Admin / observability endpoints
===============================

GET /api/v1/admin/shared-ride-groups -- list open shared-ride groups
GET /api/v1/admin/health             -- simple health check
"""

from fastapi import APIRouter, Depends, Request

from dispatch_core.api.dependencies import get_actor, get_services
from dispatch_core.api.middleware import DEFAULT_LIMIT, limiter
from dispatch_core.api.schemas import HealthResponse, SharedRideGroupResponse
from dispatch_core.domain.entities import Actor
from dispatch_core.domain.errors import Unauthorized
from dispatch_core.services.container import Services

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/shared-ride-groups",
    response_model=list[SharedRideGroupResponse],
    summary="List open shared-ride groups",
)
@limiter.limit(DEFAULT_LIMIT)
async def open_groups(
    request: Request,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    if not actor.is_privileged:
        raise Unauthorized("Admin only")
    groups = await services.shared_rides.open_groups()
    return [SharedRideGroupResponse.from_entity(g) for g in groups]


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
