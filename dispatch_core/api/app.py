"""
FastAPI application factory.

* Registers routes for bookings, offers, zones, shared rides, providers
  and admin.
* Maps the ``DispatchError`` hierarchy onto ``{"kind", "detail"}`` bodies.
* Starts / stops the dispatch worker and the outbound event queue via
  lifespan events; in production Redis backs the broadcast channel and
  the shared-ride group locks.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from dispatch_core.api.middleware import limiter
from dispatch_core.api.routes import admin, bookings, offers, providers, shared_rides, zones
from dispatch_core.config import settings
from dispatch_core.domain.errors import DispatchError
from dispatch_core.domain.pricing import PricingEngine
from dispatch_core.infrastructure.database import async_session_factory
from dispatch_core.infrastructure.events import (
    OutboundQueue,
    RedisBroadcastChannel,
    WebhookNotificationTransport,
)
from dispatch_core.infrastructure.locks import KeyedLock, redis_lock_factory
from dispatch_core.infrastructure.pricing_oracle import RemotePricingOracle
from dispatch_core.infrastructure.redis_client import get_redis
from dispatch_core.workers import dispatcher as _dispatcher

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def build_pricing():
    if settings.pricing_oracle_url:
        return RemotePricingOracle(
            settings.pricing_oracle_url, settings.pricing_oracle_timeout_seconds
        )
    return PricingEngine(
        base_fare=settings.base_fare,
        rate_per_km=settings.rate_per_km,
        rate_per_minute=settings.rate_per_minute,
        minimum_fare=settings.minimum_fare,
        kind_multipliers=settings.kind_multipliers,
        hourly_rate=settings.day_booking_hourly_rate,
        speed_kmh=settings.average_speed_kmh,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire Redis, start the outbound queue and the dispatch worker."""
    state = app.state
    redis = await get_redis()
    state.outbound.channel = RedisBroadcastChannel(redis)
    state.lock_factory = redis_lock_factory(redis)
    state.outbound.start()
    await _dispatcher.start_dispatch_loop(
        state.outbound, state.pricing, state.session_factory, redis
    )
    yield
    await _dispatcher.stop_dispatch_loop()
    await state.outbound.stop()
    transport = state.outbound.transport
    if isinstance(transport, WebhookNotificationTransport):
        await transport.aclose()
    if isinstance(state.pricing, RemotePricingOracle):
        await state.pricing.aclose()


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"kind": exc.kind, "detail": str(exc)},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Dispatch Core API",
        description=(
            "Multi-service dispatch marketplace: books rides, taxis, "
            "deliveries, shared rides, day bookings and house moves, offers "
            "them to nearby eligible providers and drives each booking "
            "through its lifecycle."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Process-wide collaborators; lifespan upgrades them to Redis-backed ones
    transport = (
        WebhookNotificationTransport(settings.notification_webhook_url)
        if settings.notification_webhook_url
        else None
    )
    app.state.outbound = OutboundQueue(
        transport=transport, maxsize=settings.outbound_queue_size
    )
    app.state.pricing = build_pricing()
    app.state.lock_factory = KeyedLock()
    app.state.session_factory = async_session_factory

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(DispatchError, dispatch_error_handler)

    # Routers
    for module in (bookings, offers, zones, shared_rides, providers, admin):
        app.include_router(module.router, prefix="/api/v1")

    return app
