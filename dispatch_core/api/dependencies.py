"""FastAPI dependency injection helpers."""

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_core.domain.entities import Actor
from dispatch_core.domain.enums import ActorRole
from dispatch_core.infrastructure.database import async_session_factory
from dispatch_core.infrastructure.events import EventBuffer
from dispatch_core.services.container import Services, build_services


async def get_events(request: Request) -> AsyncGenerator[EventBuffer, None]:
    """
    Per-request event buffer.  Handed to the outbound queue only after the
    request finished cleanly, which is after ``get_db`` committed.
    """
    events = EventBuffer()
    try:
        yield events
    except Exception:
        events.discard()
        raise
    events.flush(request.app.state.outbound)


async def get_db(
    request: Request, events: EventBuffer = Depends(get_events)
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async DB session; commit on success, rollback on error."""
    factory = getattr(request.app.state, "session_factory", async_session_factory)
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_actor(
    x_actor_id: int = Header(..., description="Authenticated user id"),
    x_actor_role: ActorRole = Header(..., description="customer | provider | admin"),
) -> Actor:
    if x_actor_role is ActorRole.SYSTEM:
        raise HTTPException(status_code=403, detail="System role is internal")
    return Actor(user_id=x_actor_id, role=x_actor_role)


async def get_services(
    request: Request,
    db: AsyncSession = Depends(get_db),
    events: EventBuffer = Depends(get_events),
) -> Services:
    state = request.app.state
    return build_services(db, events, state.pricing, state.lock_factory)
