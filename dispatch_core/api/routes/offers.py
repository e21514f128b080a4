"""
Offer endpoints (providers)
===========================

GET   /api/v1/offers                  -- own offers, optionally by status
PATCH /api/v1/offers/{id}/accept      -- accept within the window
PATCH /api/v1/offers/{id}/reject      -- decline
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from dispatch_core.api.dependencies import get_actor, get_services
from dispatch_core.api.middleware import DEFAULT_LIMIT, limiter
from dispatch_core.api.schemas import (
    BookingResponse,
    ErrorResponse,
    OfferResponse,
    ReasonRequest,
)
from dispatch_core.domain.entities import Actor
from dispatch_core.domain.enums import OfferStatus
from dispatch_core.services.container import Services

router = APIRouter(prefix="/offers", tags=["offers"])


@router.get("", response_model=list[OfferResponse], summary="List own offers")
@limiter.limit(DEFAULT_LIMIT)
async def list_offers(
    request: Request,
    status: Optional[OfferStatus] = None,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    offers = await services.dispatcher.list_offers(actor, status)
    return [OfferResponse.from_entity(o) for o in offers]


@router.patch(
    "/{offer_id}/accept",
    response_model=BookingResponse,
    summary="Accept an offer",
    description=(
        "The first provider to accept inside the 60 s window gets the "
        "booking; every other outstanding offer for it expires.  Late or "
        "losing acceptances get 409."
    ),
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
@limiter.limit(DEFAULT_LIMIT)
async def accept_offer(
    request: Request,
    offer_id: int,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    booking = await services.dispatcher.accept(offer_id, actor)
    return BookingResponse.from_entity(booking)


@router.patch(
    "/{offer_id}/reject",
    response_model=OfferResponse,
    summary="Reject an offer",
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
@limiter.limit(DEFAULT_LIMIT)
async def reject_offer(
    request: Request,
    offer_id: int,
    body: Optional[ReasonRequest] = None,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    offer = await services.dispatcher.reject(
        offer_id, actor, body.reason if body else None
    )
    return OfferResponse.from_entity(offer)
