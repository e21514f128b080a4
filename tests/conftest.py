"""
Shared test fixtures.

Uses an in-memory SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  The production models are used as-is: H3
cells replace spatial columns and the partial unique indexes carry a
SQLite predicate too.  Every test gets a fresh engine.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from dispatch_core.domain.entities import Actor
from dispatch_core.domain.enums import ActorRole, ServiceKind, ZoneType
from dispatch_core.domain.matching import cell_for
from dispatch_core.domain.pricing import PricingEngine
from dispatch_core.infrastructure import models  # noqa: F401  registers tables
from dispatch_core.infrastructure.database import Base
from dispatch_core.infrastructure.events import EventPublisher, OutboundEvent
from dispatch_core.infrastructure.locks import KeyedLock
from dispatch_core.infrastructure.models import (
    InterRegionalRouteModel,
    ProviderModel,
    ProviderZoneModel,
    ServiceZoneModel,
)
from dispatch_core.services.container import build_services

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

# Accra, roughly Kotoka airport
ACCRA = (5.6037, -0.1870)
KUMASI = (6.6885, -1.6244)

START = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


# ── Test doubles ──────────────────────────────────────────────────────


class RecordingPublisher(EventPublisher):
    """Keeps every published event for assertions."""

    def __init__(self):
        self.events: list[OutboundEvent] = []

    def publish(self, event: OutboundEvent) -> None:
        self.events.append(event)

    def named(self, name: str) -> list[OutboundEvent]:
        return [e for e in self.events if e.event == name]

    def sent_to(self, channel: str, target) -> list[str]:
        return [
            e.event for e in self.events if e.channel == channel and e.target == target
        ]

    def clear(self) -> None:
        self.events = []


class FixedClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


def customer(user_id: int = 1) -> Actor:
    return Actor(user_id=user_id, role=ActorRole.CUSTOMER)


def provider(user_id: int) -> Actor:
    return Actor(user_id=user_id, role=ActorRole.PROVIDER)


ADMIN = Actor(user_id=999, role=ActorRole.ADMIN)


# ── Seed helpers ──────────────────────────────────────────────────────


async def add_zone(
    session: AsyncSession,
    name: str,
    lat: float,
    lng: float,
    radius_m: float = 10_000,
    priority: int = 0,
    zone_type: ZoneType = ZoneType.LOCAL,
    fee: float = 0.0,
    is_active: bool = True,
) -> int:
    zone = ServiceZoneModel(
        name=name,
        display_name=name.title(),
        center_lat=lat,
        center_lng=lng,
        radius_m=radius_m,
        priority=priority,
        zone_type=zone_type,
        inter_regional_fee=fee,
        is_active=is_active,
    )
    session.add(zone)
    await session.flush()
    return zone.id


async def add_route(
    session: AsyncSession,
    origin_id: int,
    destination_id: int,
    base_fee: float = 0.0,
    requires_approval: bool = False,
) -> None:
    session.add(
        InterRegionalRouteModel(
            origin_zone_id=origin_id,
            destination_zone_id=destination_id,
            base_fee=base_fee,
            requires_approval=requires_approval,
        )
    )
    await session.flush()


async def add_provider(
    session: AsyncSession,
    lat: float,
    lng: float,
    kinds=(ServiceKind.RIDE,),
    zones=(),
    inter_regional_zones=(),
    rating: float = 5.0,
    online: bool = True,
    available: bool = True,
    verified: bool = True,
    name: str = "Provider",
) -> int:
    row = ProviderModel(
        name=name,
        rating=rating,
        service_kinds=[k.value for k in kinds],
        is_online=online,
        is_available=available,
        is_verified=verified,
        latitude=lat,
        longitude=lng,
        h3_cell=cell_for(lat, lng),
    )
    session.add(row)
    await session.flush()
    for zone_id in zones:
        session.add(
            ProviderZoneModel(
                provider_id=row.id,
                zone_id=zone_id,
                can_accept_inter_regional=zone_id in inter_regional_zones,
            )
        )
    await session.flush()
    return row.id


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy own BEGIN so SAVEPOINTs behave under the sqlite3 driver
    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def events() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def pricing() -> PricingEngine:
    return PricingEngine()


@pytest.fixture
def services(db_session, events, pricing, clock):
    return build_services(db_session, events, pricing, KeyedLock(), clock)
