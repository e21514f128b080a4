"""HTTP client for an external pricing service."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

import httpx

from dispatch_core.domain.entities import Location
from dispatch_core.domain.enums import ServiceKind
from dispatch_core.domain.errors import UpstreamUnavailable
from dispatch_core.domain.pricing import PriceEstimate
from dispatch_core.domain.service_data import dump_service_data

logger = logging.getLogger(__name__)


class RemotePricingOracle:
    """
    POSTs ``{pickup, dropoff, service_kind, scheduled_at, service_data}`` and
    expects ``{price, distance_km, duration_min, surge_multiplier?}`` back.
    Any transport error, non-2xx status or malformed body is surfaced as
    ``UpstreamUnavailable``.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 3.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def estimate(
        self,
        pickup: Location,
        dropoff: Optional[Location],
        kind: ServiceKind,
        scheduled_at: Optional[datetime] = None,
        service_data=None,
    ) -> PriceEstimate:
        body = {
            "pickup": {"lat": pickup.latitude, "lng": pickup.longitude},
            "dropoff": (
                {"lat": dropoff.latitude, "lng": dropoff.longitude}
                if dropoff
                else None
            ),
            "service_kind": kind.value,
            "scheduled_at": scheduled_at.isoformat() if scheduled_at else None,
            "service_data": dump_service_data(service_data),
        }
        try:
            response = await self.client.post(self.url, json=body)
            response.raise_for_status()
            data = response.json()
            return PriceEstimate(
                price=float(data["price"]),
                distance_km=float(data["distance_km"]),
                duration_min=int(data["duration_min"]),
                surge_multiplier=float(data.get("surge_multiplier", 1.0)),
            )
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Pricing oracle call failed: %s", exc)
            raise UpstreamUnavailable("Pricing oracle unavailable") from exc

    async def aclose(self) -> None:
        await self.client.aclose()
