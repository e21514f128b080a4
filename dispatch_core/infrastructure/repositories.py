"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work), exposes
domain-relevant queries only, and hands back domain entities rather than
ORM rows.

Compare-and-swap
----------------
Every state-machine write is a single
``UPDATE ... WHERE id = :id AND status IN (:expected)``; the affected row
count decides who won.  Never read-then-write a status.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .database import as_utc
from .models import (
    BookingModel,
    DriverOfferModel,
    EarningRecordModel,
    InterRegionalRouteModel,
    ProviderModel,
    ProviderZoneModel,
    ServiceZoneModel,
    SharedRideGroupModel,
    TrackingUpdateModel,
)
from dispatch_core.domain.entities import (
    Booking,
    DriverOffer,
    EarningRecord,
    InterRegionalRoute,
    Location,
    ProviderSnapshot,
    ServiceZone,
    SharedRideGroup,
    TrackingUpdate,
    utcnow,
)
from dispatch_core.domain.enums import (
    ACTIVE_STATUSES,
    PROVIDER_ACTIVE_STATUSES,
    BookingStatus,
    GroupStatus,
    OfferStatus,
    ServiceKind,
)
from dispatch_core.domain.service_data import (
    InterRegionalData,
    dump_service_data,
    parse_service_data,
)


# ── Mappers ───────────────────────────────────────────────────────────


def _booking(row: BookingModel) -> Booking:
    dropoff = (
        Location(row.dropoff_lat, row.dropoff_lng)
        if row.dropoff_lat is not None
        else None
    )
    return Booking(
        id=row.id,
        customer_id=row.customer_id,
        provider_id=row.provider_id,
        service_kind=row.service_kind,
        status=row.status,
        pickup=Location(row.pickup_lat, row.pickup_lng),
        dropoff=dropoff,
        pickup_zone_id=row.pickup_zone_id,
        scheduled_at=as_utc(row.scheduled_at),
        created_at=as_utc(row.created_at),
        accepted_at=as_utc(row.accepted_at),
        started_at=as_utc(row.started_at),
        completed_at=as_utc(row.completed_at),
        cancelled_at=as_utc(row.cancelled_at),
        estimated_price=row.estimated_price,
        estimated_distance_km=row.estimated_distance_km,
        estimated_duration_min=row.estimated_duration_min,
        surge_multiplier=row.surge_multiplier,
        final_price=row.final_price,
        actual_distance_km=row.actual_distance_km,
        actual_duration_min=row.actual_duration_min,
        platform_commission=row.platform_commission,
        provider_earning=row.provider_earning,
        service_data=parse_service_data(row.service_data),
        inter_regional=(
            InterRegionalData.model_validate(row.inter_regional)
            if row.inter_regional
            else None
        ),
        cancelled_by=row.cancelled_by,
        cancelled_by_role=row.cancelled_by_role,
        cancellation_reason=row.cancellation_reason,
        cancellation_fee=row.cancellation_fee,
        released_provider_id=row.released_provider_id,
        idempotency_key=row.idempotency_key,
        dispatch_attempts=row.dispatch_attempts or 0,
    )


def _booking_columns(values: dict) -> dict:
    """Translate entity-level values into column values."""
    columns = dict(values)
    if "service_data" in columns:
        columns["service_data"] = dump_service_data(columns["service_data"])
    if "inter_regional" in columns:
        data = columns["inter_regional"]
        columns["inter_regional"] = data.model_dump() if data is not None else None
    return columns


def _offer(row: DriverOfferModel) -> DriverOffer:
    return DriverOffer(
        id=row.id,
        booking_id=row.booking_id,
        provider_id=row.provider_id,
        status=row.status,
        issued_at=as_utc(row.issued_at),
        expires_at=as_utc(row.expires_at),
        responded_at=as_utc(row.responded_at),
        reason=row.reason,
        distance_km=row.distance_km,
    )


def _zone(row: ServiceZoneModel) -> ServiceZone:
    return ServiceZone(
        id=row.id,
        name=row.name,
        center=Location(row.center_lat, row.center_lng),
        radius_m=row.radius_m,
        zone_type=row.zone_type,
        priority=row.priority,
        is_active=row.is_active,
        display_name=row.display_name or row.name,
        inter_regional_fee=row.inter_regional_fee,
    )


def _group(row: SharedRideGroupModel) -> SharedRideGroup:
    return SharedRideGroup(
        id=row.id,
        leader_booking_id=row.leader_booking_id,
        member_booking_ids=list(row.member_booking_ids or []),
        total_price=row.total_price,
        max_capacity=row.max_capacity,
        status=row.status,
        created_at=as_utc(row.created_at),
    )


# ── Bookings ──────────────────────────────────────────────────────────


class BookingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, booking: Booking) -> Booking:
        row = BookingModel(
            customer_id=booking.customer_id,
            provider_id=booking.provider_id,
            service_kind=booking.service_kind,
            status=booking.status,
            scheduled_at=booking.scheduled_at,
            pickup_lat=booking.pickup.latitude,
            pickup_lng=booking.pickup.longitude,
            dropoff_lat=booking.dropoff.latitude if booking.dropoff else None,
            dropoff_lng=booking.dropoff.longitude if booking.dropoff else None,
            pickup_zone_id=booking.pickup_zone_id,
            estimated_price=booking.estimated_price,
            estimated_distance_km=booking.estimated_distance_km,
            estimated_duration_min=booking.estimated_duration_min,
            surge_multiplier=booking.surge_multiplier,
            platform_commission=booking.platform_commission,
            provider_earning=booking.provider_earning,
            service_data=dump_service_data(booking.service_data),
            inter_regional=(
                booking.inter_regional.model_dump()
                if booking.inter_regional
                else None
            ),
            idempotency_key=booking.idempotency_key,
            dispatch_attempts=booking.dispatch_attempts,
            created_at=booking.created_at or utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        return _booking(row)

    async def get(self, booking_id: int) -> Optional[Booking]:
        row = await self.session.get(
            BookingModel, booking_id, populate_existing=True
        )
        return _booking(row) if row else None

    async def get_by_idempotency_key(self, key: str) -> Optional[Booking]:
        result = await self.session.execute(
            select(BookingModel).where(BookingModel.idempotency_key == key)
        )
        row = result.scalar_one_or_none()
        return _booking(row) if row else None

    async def transition(
        self,
        booking_id: int,
        expected: Iterable[BookingStatus],
        target: BookingStatus,
        **values,
    ) -> bool:
        """CAS the status from any of *expected* to *target*."""
        result = await self.session.execute(
            update(BookingModel)
            .where(
                BookingModel.id == booking_id,
                BookingModel.status.in_(list(expected)),
            )
            .values(status=target, **_booking_columns(values))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_fields(self, booking_id: int, **values) -> None:
        """Write non-status fields (prices, payloads)."""
        await self.session.execute(
            update(BookingModel)
            .where(BookingModel.id == booking_id)
            .values(**_booking_columns(values))
            .execution_options(synchronize_session=False)
        )

    async def bump_dispatch_attempts(self, booking_id: int) -> None:
        await self.session.execute(
            update(BookingModel)
            .where(BookingModel.id == booking_id)
            .values(dispatch_attempts=BookingModel.dispatch_attempts + 1)
            .execution_options(synchronize_session=False)
        )

    async def count_active_for_customer(self, customer_id: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(BookingModel)
            .where(
                BookingModel.customer_id == customer_id,
                BookingModel.status.in_(list(ACTIVE_STATUSES)),
            )
        )
        return result.scalar() or 0

    async def list_active_for_provider(self, provider_id: int) -> list[Booking]:
        result = await self.session.execute(
            select(BookingModel).where(
                BookingModel.provider_id == provider_id,
                BookingModel.status.in_(list(PROVIDER_ACTIVE_STATUSES)),
            )
        )
        return [_booking(r) for r in result.scalars().all()]

    async def list_pending(self) -> list[Booking]:
        result = await self.session.execute(
            select(BookingModel)
            .where(BookingModel.status == BookingStatus.PENDING)
            .order_by(BookingModel.created_at, BookingModel.id)
        )
        return [_booking(r) for r in result.scalars().all()]

    async def list_due_scheduled(self, before: datetime) -> list[Booking]:
        result = await self.session.execute(
            select(BookingModel)
            .where(
                BookingModel.status == BookingStatus.CONFIRMED,
                BookingModel.scheduled_at <= before,
            )
            .order_by(BookingModel.scheduled_at)
        )
        return [_booking(r) for r in result.scalars().all()]

    async def list_recent_shared(self, since: datetime) -> list[Booking]:
        result = await self.session.execute(
            select(BookingModel)
            .where(
                BookingModel.service_kind == ServiceKind.SHARED_RIDE,
                BookingModel.status == BookingStatus.PENDING,
                BookingModel.created_at >= since,
            )
            .order_by(BookingModel.created_at)
        )
        return [_booking(r) for r in result.scalars().all()]

    async def search(
        self,
        *,
        customer_id: Optional[int] = None,
        provider_id: Optional[int] = None,
        status: Optional[BookingStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Booking], int]:
        filters = []
        if customer_id is not None:
            filters.append(BookingModel.customer_id == customer_id)
        if provider_id is not None:
            filters.append(
                (BookingModel.provider_id == provider_id)
                | (BookingModel.released_provider_id == provider_id)
            )
        if status is not None:
            filters.append(BookingModel.status == status)
        if date_from is not None:
            filters.append(BookingModel.created_at >= date_from)
        if date_to is not None:
            filters.append(BookingModel.created_at <= date_to)

        total = await self.session.execute(
            select(func.count()).select_from(BookingModel).where(*filters)
        )
        result = await self.session.execute(
            select(BookingModel)
            .where(*filters)
            .order_by(BookingModel.created_at.desc(), BookingModel.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return [_booking(r) for r in result.scalars().all()], total.scalar() or 0

    async def count_pending(self) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(BookingModel)
            .where(BookingModel.status == BookingStatus.PENDING)
        )
        return result.scalar() or 0


# ── Offers ────────────────────────────────────────────────────────────


class OfferRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, offer: DriverOffer) -> DriverOffer:
        row = DriverOfferModel(
            booking_id=offer.booking_id,
            provider_id=offer.provider_id,
            status=offer.status,
            distance_km=offer.distance_km,
            issued_at=offer.issued_at,
            expires_at=offer.expires_at,
        )
        self.session.add(row)
        await self.session.flush()
        return _offer(row)

    async def get(self, offer_id: int) -> Optional[DriverOffer]:
        row = await self.session.get(
            DriverOfferModel, offer_id, populate_existing=True
        )
        return _offer(row) if row else None

    async def transition(
        self,
        offer_id: int,
        expected: OfferStatus,
        target: OfferStatus,
        **values,
    ) -> bool:
        result = await self.session.execute(
            update(DriverOfferModel)
            .where(
                DriverOfferModel.id == offer_id,
                DriverOfferModel.status == expected,
            )
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def outstanding_for(self, booking_id: int) -> list[DriverOffer]:
        result = await self.session.execute(
            select(DriverOfferModel)
            .where(
                DriverOfferModel.booking_id == booking_id,
                DriverOfferModel.status == OfferStatus.OFFERED,
            )
            .order_by(DriverOfferModel.id)
        )
        return [_offer(r) for r in result.scalars().all()]

    async def has_outstanding(self, booking_id: int, provider_id: int) -> bool:
        result = await self.session.execute(
            select(func.count())
            .select_from(DriverOfferModel)
            .where(
                DriverOfferModel.booking_id == booking_id,
                DriverOfferModel.provider_id == provider_id,
                DriverOfferModel.status == OfferStatus.OFFERED,
            )
        )
        return bool(result.scalar())

    async def offered_provider_ids(self, booking_id: int) -> set[int]:
        result = await self.session.execute(
            select(DriverOfferModel.provider_id)
            .where(DriverOfferModel.booking_id == booking_id)
            .distinct()
        )
        return set(result.scalars().all())

    async def expire_for_booking(
        self, booking_id: int, now: datetime, reason: Optional[str] = None
    ) -> list[DriverOffer]:
        """Expire outstanding offers for a booking; returns those expired."""
        siblings = await self.outstanding_for(booking_id)
        if siblings:
            await self.session.execute(
                update(DriverOfferModel)
                .where(
                    DriverOfferModel.id.in_([o.id for o in siblings]),
                    DriverOfferModel.status == OfferStatus.OFFERED,
                )
                .values(status=OfferStatus.EXPIRED, responded_at=now, reason=reason)
                .execution_options(synchronize_session=False)
            )
        return siblings

    async def expire_lapsed(self, now: datetime) -> int:
        result = await self.session.execute(
            update(DriverOfferModel)
            .where(
                DriverOfferModel.status == OfferStatus.OFFERED,
                DriverOfferModel.expires_at < now,
            )
            .values(status=OfferStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def list_for_provider(
        self, provider_id: int, status: Optional[OfferStatus] = None
    ) -> list[DriverOffer]:
        query = select(DriverOfferModel).where(
            DriverOfferModel.provider_id == provider_id
        )
        if status is not None:
            query = query.where(DriverOfferModel.status == status)
        result = await self.session.execute(
            query.order_by(DriverOfferModel.issued_at.desc())
        )
        return [_offer(r) for r in result.scalars().all()]


# ── Zones ─────────────────────────────────────────────────────────────


class ZoneRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_active_zones(self) -> list[ServiceZone]:
        result = await self.session.execute(
            select(ServiceZoneModel).where(ServiceZoneModel.is_active.is_(True))
        )
        return [_zone(r) for r in result.scalars().all()]

    async def list_active_routes(self) -> list[InterRegionalRoute]:
        result = await self.session.execute(
            select(InterRegionalRouteModel).where(
                InterRegionalRouteModel.is_active.is_(True)
            )
        )
        return [
            InterRegionalRoute(
                origin_zone_id=r.origin_zone_id,
                destination_zone_id=r.destination_zone_id,
                base_fee=r.base_fee,
                requires_approval=r.requires_approval,
                is_active=r.is_active,
            )
            for r in result.scalars().all()
        ]

    async def get(self, zone_id: int) -> Optional[ServiceZone]:
        row = await self.session.get(ServiceZoneModel, zone_id)
        return _zone(row) if row else None


# ── Providers ─────────────────────────────────────────────────────────


class ProviderRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _zone_rights(self, provider_ids: list[int]) -> dict[int, list]:
        rights: dict[int, list] = {pid: [] for pid in provider_ids}
        if not provider_ids:
            return rights
        result = await self.session.execute(
            select(ProviderZoneModel).where(
                ProviderZoneModel.provider_id.in_(provider_ids)
            )
        )
        for row in result.scalars().all():
            rights[row.provider_id].append(row)
        return rights

    @staticmethod
    def _snapshot(row: ProviderModel, rights: list) -> ProviderSnapshot:
        location = (
            Location(row.latitude, row.longitude)
            if row.latitude is not None
            else None
        )
        return ProviderSnapshot(
            id=row.id,
            name=row.name,
            rating=row.rating,
            location=location,
            service_kinds=frozenset(row.service_kinds or ()),
            zone_ids=frozenset(r.zone_id for r in rights),
            inter_regional_zone_ids=frozenset(
                r.zone_id for r in rights if r.can_accept_inter_regional
            ),
            is_online=row.is_online,
            is_available=row.is_available,
            is_verified=row.is_verified,
            current_zone_id=row.current_zone_id,
        )

    async def get(self, provider_id: int) -> Optional[ProviderSnapshot]:
        row = await self.session.get(
            ProviderModel, provider_id, populate_existing=True
        )
        if row is None:
            return None
        rights = await self._zone_rights([row.id])
        return self._snapshot(row, rights[row.id])

    async def find_ready_in_cells(self, cells: Iterable[str]) -> list[ProviderSnapshot]:
        """Online, available, verified providers whose last cell is in *cells*."""
        result = await self.session.execute(
            select(ProviderModel).where(
                ProviderModel.h3_cell.in_(list(cells)),
                ProviderModel.is_online.is_(True),
                ProviderModel.is_available.is_(True),
                ProviderModel.is_verified.is_(True),
            )
        )
        rows = list(result.scalars().all())
        rights = await self._zone_rights([r.id for r in rows])
        return [self._snapshot(r, rights[r.id]) for r in rows]

    async def claim(self, provider_id: int) -> bool:
        """CAS the provider from available to busy."""
        result = await self.session.execute(
            update(ProviderModel)
            .where(
                ProviderModel.id == provider_id,
                ProviderModel.is_available.is_(True),
            )
            .values(is_available=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release(self, provider_id: int) -> None:
        await self.session.execute(
            update(ProviderModel)
            .where(ProviderModel.id == provider_id)
            .values(is_available=True)
            .execution_options(synchronize_session=False)
        )

    async def update_location(
        self,
        provider_id: int,
        *,
        latitude: float,
        longitude: float,
        h3_cell: str,
        at: datetime,
        heading: Optional[float] = None,
        zone_id: Optional[int] = None,
        update_zone: bool = False,
    ) -> None:
        values = dict(
            latitude=latitude,
            longitude=longitude,
            h3_cell=h3_cell,
            heading=heading,
            location_updated_at=at,
        )
        if update_zone:
            values["current_zone_id"] = zone_id
        await self.session.execute(
            update(ProviderModel)
            .where(ProviderModel.id == provider_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def set_status(
        self, provider_id: int, *, is_online: bool, is_available: bool
    ) -> None:
        await self.session.execute(
            update(ProviderModel)
            .where(ProviderModel.id == provider_id)
            .values(is_online=is_online, is_available=is_available)
            .execution_options(synchronize_session=False)
        )

    async def count_ready(self) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(ProviderModel)
            .where(
                ProviderModel.is_online.is_(True),
                ProviderModel.is_available.is_(True),
            )
        )
        return result.scalar() or 0


# ── Shared-ride groups ────────────────────────────────────────────────


class SharedRideGroupRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, group: SharedRideGroup) -> SharedRideGroup:
        row = SharedRideGroupModel(
            leader_booking_id=group.leader_booking_id,
            member_booking_ids=list(group.member_booking_ids),
            total_price=group.total_price,
            max_capacity=group.max_capacity,
            status=group.status,
            created_at=group.created_at or utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        return _group(row)

    async def get(self, group_id: int) -> Optional[SharedRideGroup]:
        row = await self.session.get(
            SharedRideGroupModel, group_id, populate_existing=True
        )
        return _group(row) if row else None

    async def get_for_update(self, group_id: int) -> Optional[SharedRideGroup]:
        """SELECT ... FOR UPDATE to prevent concurrent membership changes."""
        result = await self.session.execute(
            select(SharedRideGroupModel)
            .where(SharedRideGroupModel.id == group_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _group(row) if row else None

    async def get_by_leader(self, booking_id: int) -> Optional[SharedRideGroup]:
        result = await self.session.execute(
            select(SharedRideGroupModel).where(
                SharedRideGroupModel.leader_booking_id == booking_id
            )
        )
        row = result.scalar_one_or_none()
        return _group(row) if row else None

    async def save_membership(self, group: SharedRideGroup) -> None:
        await self.session.execute(
            update(SharedRideGroupModel)
            .where(SharedRideGroupModel.id == group.id)
            .values(
                member_booking_ids=list(group.member_booking_ids),
                status=group.status,
            )
            .execution_options(synchronize_session=False)
        )

    async def close(self, group_id: int) -> bool:
        result = await self.session.execute(
            update(SharedRideGroupModel)
            .where(
                SharedRideGroupModel.id == group_id,
                SharedRideGroupModel.status == GroupStatus.OPEN,
            )
            .values(status=GroupStatus.CLOSED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_open(self) -> list[SharedRideGroup]:
        result = await self.session.execute(
            select(SharedRideGroupModel)
            .where(SharedRideGroupModel.status == GroupStatus.OPEN)
            .order_by(SharedRideGroupModel.created_at)
        )
        return [_group(r) for r in result.scalars().all()]


# ── Ledger & history ──────────────────────────────────────────────────


class EarningRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, record: EarningRecord) -> EarningRecord:
        row = EarningRecordModel(
            provider_id=record.provider_id,
            booking_id=record.booking_id,
            service_kind=record.service_kind,
            amount=record.amount,
            commission=record.commission,
            net_earning=record.net_earning,
            week_starting=record.week_starting,
            month_year=record.month_year,
        )
        self.session.add(row)
        await self.session.flush()
        record.id = row.id
        return record

    async def list_for_provider(self, provider_id: int) -> list[EarningRecord]:
        result = await self.session.execute(
            select(EarningRecordModel)
            .where(EarningRecordModel.provider_id == provider_id)
            .order_by(EarningRecordModel.id)
        )
        return [
            EarningRecord(
                id=r.id,
                provider_id=r.provider_id,
                booking_id=r.booking_id,
                service_kind=r.service_kind,
                amount=r.amount,
                commission=r.commission,
                net_earning=r.net_earning,
                week_starting=as_utc(r.week_starting),
                month_year=r.month_year,
            )
            for r in result.scalars().all()
        ]


class TrackingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, update_: TrackingUpdate) -> None:
        self.session.add(
            TrackingUpdateModel(
                booking_id=update_.booking_id,
                status=update_.status,
                latitude=update_.latitude,
                longitude=update_.longitude,
                heading=update_.heading,
                speed=update_.speed,
                message=update_.message,
                timestamp=update_.timestamp,
            )
        )
        await self.session.flush()

    async def history(self, booking_id: int) -> list[TrackingUpdate]:
        result = await self.session.execute(
            select(TrackingUpdateModel)
            .where(TrackingUpdateModel.booking_id == booking_id)
            .order_by(TrackingUpdateModel.timestamp, TrackingUpdateModel.id)
        )
        return [
            TrackingUpdate(
                id=r.id,
                booking_id=r.booking_id,
                status=r.status,
                latitude=r.latitude,
                longitude=r.longitude,
                heading=r.heading,
                speed=r.speed,
                message=r.message or "",
                timestamp=as_utc(r.timestamp),
            )
            for r in result.scalars().all()
        ]
