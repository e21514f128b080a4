"""
Outbound side effects (notifications + real-time broadcasts).

Core services never talk to a transport directly.  They publish
``OutboundEvent``s to an ``EventPublisher`` and move on:

* ``EventBuffer``   -- per unit of work; holds events until the session
  commits, then hands them to the process queue.  Discarded on rollback so
  nobody is told about a transition that never happened.
* ``OutboundQueue`` -- process-wide ``asyncio.Queue`` drained by a
  background task into a ``NotificationTransport`` / ``BroadcastChannel``.
  Delivery failures are logged and swallowed.

Transports: logging (default), webhook (``httpx``), Redis ``PUBLISH``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

import httpx
import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

PROVIDER = "provider"
CUSTOMER = "customer"
BROADCAST = "broadcast"


@dataclass(frozen=True)
class OutboundEvent:
    channel: str
    target: Union[int, str]
    event: str
    payload: dict = field(default_factory=dict)


def _name(event) -> str:
    return getattr(event, "value", event)


class EventPublisher:
    """Port the core publishes to.  Subclasses implement ``publish``."""

    def publish(self, event: OutboundEvent) -> None:
        raise NotImplementedError

    def notify_provider(self, provider_id: int, event: str, payload: dict) -> None:
        self.publish(OutboundEvent(PROVIDER, provider_id, _name(event), payload))

    def notify_customer(self, customer_id: int, event: str, payload: dict) -> None:
        self.publish(OutboundEvent(CUSTOMER, customer_id, _name(event), payload))

    def broadcast(self, topic: str, event: str, payload: dict) -> None:
        self.publish(OutboundEvent(BROADCAST, topic, _name(event), payload))


class EventBuffer(EventPublisher):
    def __init__(self):
        self.events: list[OutboundEvent] = []

    def publish(self, event: OutboundEvent) -> None:
        self.events.append(event)

    def flush(self, sink: EventPublisher) -> int:
        pending, self.events = self.events, []
        for event in pending:
            sink.publish(event)
        return len(pending)

    def discard(self) -> None:
        if self.events:
            logger.debug("Discarding %d events after rollback", len(self.events))
        self.events = []


# ── Transports ────────────────────────────────────────────────────────


class NotificationTransport(Protocol):
    async def notify_provider(
        self, provider_id: int, event: str, payload: dict
    ) -> None: ...

    async def notify_customer(
        self, customer_id: int, event: str, payload: dict
    ) -> None: ...


class BroadcastChannel(Protocol):
    async def publish(self, topic: str, event: str, payload: dict) -> None: ...


class LoggingNotificationTransport:
    async def notify_provider(self, provider_id: int, event: str, payload: dict) -> None:
        logger.info("notify provider=%s event=%s %s", provider_id, event, payload)

    async def notify_customer(self, customer_id: int, event: str, payload: dict) -> None:
        logger.info("notify customer=%s event=%s %s", customer_id, event, payload)


class LoggingBroadcastChannel:
    async def publish(self, topic: str, event: str, payload: dict) -> None:
        logger.debug("broadcast topic=%s event=%s %s", topic, event, payload)


class WebhookNotificationTransport:
    """POSTs each notification to a delivery service."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=5.0)

    async def _post(self, recipient: str, recipient_id: int, event: str, payload: dict):
        response = await self.client.post(
            self.url,
            json={
                "recipient_type": recipient,
                "recipient_id": recipient_id,
                "event": event,
                "payload": payload,
            },
        )
        response.raise_for_status()

    async def notify_provider(self, provider_id: int, event: str, payload: dict) -> None:
        await self._post(PROVIDER, provider_id, event, payload)

    async def notify_customer(self, customer_id: int, event: str, payload: dict) -> None:
        await self._post(CUSTOMER, customer_id, event, payload)

    async def aclose(self) -> None:
        await self.client.aclose()


class RedisBroadcastChannel:
    def __init__(self, client: aioredis.Redis):
        self.redis = client

    async def publish(self, topic: str, event: str, payload: dict) -> None:
        message = json.dumps({"event": event, "payload": payload}, default=str)
        await self.redis.publish(topic, message)


# ── Process queue ─────────────────────────────────────────────────────


class OutboundQueue(EventPublisher):
    """Non-blocking sink drained in the background."""

    def __init__(
        self,
        transport: Optional[NotificationTransport] = None,
        channel: Optional[BroadcastChannel] = None,
        maxsize: int = 1000,
    ):
        self.transport = transport or LoggingNotificationTransport()
        self.channel = channel or LoggingBroadcastChannel()
        self.queue: asyncio.Queue[OutboundEvent] = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None

    def publish(self, event: OutboundEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Outbound queue full, dropping %s", event.event)

    async def deliver(self, event: OutboundEvent) -> None:
        try:
            if event.channel == PROVIDER:
                await self.transport.notify_provider(event.target, event.event, event.payload)
            elif event.channel == CUSTOMER:
                await self.transport.notify_customer(event.target, event.event, event.payload)
            else:
                await self.channel.publish(event.target, event.event, event.payload)
        except Exception:
            logger.exception(
                "Delivery failed for %s to %s:%s", event.event, event.channel, event.target
            )

    async def drain(self) -> int:
        """Deliver everything currently queued.  Returns the count."""
        delivered = 0
        while not self.queue.empty():
            await self.deliver(self.queue.get_nowait())
            self.queue.task_done()
            delivered += 1
        return delivered

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self.deliver(event)
            finally:
                self.queue.task_done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            logger.info("Outbound queue started")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        logger.info("Outbound queue stopped")

