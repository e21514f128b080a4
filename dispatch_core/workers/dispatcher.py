"""
Background Dispatch Worker
==========================

Runs every ``DISPATCH_INTERVAL_SECONDS`` (default 15 s).

Concurrency safety
------------------
* **Redis distributed lock** ``dispatch_worker`` ensures only one instance
  runs a cycle at a time across multiple API processes.
* Every write the cycle makes is the same compare-and-swap the API uses,
  so a cycle racing an API request loses cleanly.

Algorithm per cycle
-------------------
1. Expire offers whose acceptance window has lapsed.
2. Release scheduled (``confirmed``) bookings due within the lead time
   into dispatch.
3. Refresh the demand figures the local pricing engine surges on.
4. Re-dispatch every pending booking without an outstanding offer:
   expanded radius, providers already offered skipped, at most
   ``MAX_DISPATCH_ATTEMPTS`` passes before the customer is told.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

import redis.asyncio as aioredis

from dispatch_core.config import settings
from dispatch_core.domain.entities import utcnow
from dispatch_core.domain.errors import DispatchError
from dispatch_core.domain.pricing import PricingEngine, PricingOracle
from dispatch_core.infrastructure.database import async_session_factory
from dispatch_core.infrastructure.events import EventBuffer, EventPublisher
from dispatch_core.infrastructure.locks import DistributedLock
from dispatch_core.infrastructure.redis_client import get_redis
from dispatch_core.services.container import build_services
from dispatch_core.services.lifecycle import Clock

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_dispatch_loop(
    outbound: EventPublisher,
    pricing: PricingOracle,
    session_factory=None,
    redis: Optional[aioredis.Redis] = None,
) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(
        _loop(outbound, pricing, session_factory or async_session_factory, redis)
    )
    logger.info(
        "Dispatch worker started (interval=%ds)", settings.dispatch_interval_seconds
    )


async def stop_dispatch_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Dispatch worker stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(outbound, pricing, session_factory, redis) -> None:
    """Periodic loop: run a dispatch cycle then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_dispatch_cycle(outbound, pricing, session_factory, redis)
        except Exception:
            logger.exception("Unhandled error in dispatch cycle")
        # Wait for the interval or until stop is signalled
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.dispatch_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle


async def run_dispatch_cycle(
    outbound: EventPublisher,
    pricing: PricingOracle,
    session_factory=None,
    redis: Optional[aioredis.Redis] = None,
    clock: Clock = utcnow,
    config=settings,
) -> int:
    """Execute one dispatch cycle.  Returns the number of offers issued."""
    lock = DistributedLock(
        redis or await get_redis(), "dispatch_worker", ttl_seconds=60
    )
    if not await lock.acquire():
        logger.debug("Lock held by another worker - skipping cycle")
        return 0

    factory = session_factory or async_session_factory
    events = EventBuffer()
    issued = 0
    try:
        async with factory() as session:
            services = build_services(
                session, events, pricing, clock=clock, config=config
            )
            lifecycle = services.lifecycle
            now = clock()

            # 1. Lapsed offers
            expired = await services.dispatcher.expire_lapsed(now)

            # 2. Scheduled bookings coming due
            lead = timedelta(minutes=config.scheduled_dispatch_lead_minutes)
            released = set()
            for booking in await lifecycle.bookings.list_due_scheduled(now + lead):
                try:
                    await lifecycle.release_scheduled(booking.id)
                    released.add(booking.id)
                except DispatchError:
                    logger.exception("Could not release booking %s", booking.id)

            # 3. Demand for surge
            if isinstance(pricing, PricingEngine):
                pricing.set_demand(
                    await lifecycle.bookings.count_pending(),
                    await lifecycle.providers.count_ready(),
                )

            # 4. Re-dispatch
            for booking in await lifecycle.bookings.list_pending():
                if booking.id in released:
                    continue
                try:
                    issued += len(await services.dispatcher.retry(booking))
                except DispatchError:
                    logger.exception("Re-dispatch failed for booking %s", booking.id)

            await session.commit()
        events.flush(outbound)
        if expired or released or issued:
            logger.info(
                "Dispatch cycle: %d offers expired, %d scheduled released, "
                "%d offers issued",
                expired,
                len(released),
                issued,
            )
    except Exception:
        events.discard()
        logger.exception("Error in dispatch cycle")
    finally:
        await lock.release()

    return issued
