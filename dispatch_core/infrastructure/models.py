"""
SQLAlchemy ORM models  (maps to PostgreSQL; SQLite-compatible for tests).

Tables
------
* ``service_zones``          -- circular operating regions
* ``inter_regional_routes``  -- symmetric zone pairs open for cross-zone trips
* ``providers``              -- drivers / riders with last known position
* ``provider_zones``         -- zone authorisations per provider
* ``bookings``               -- service requests and their lifecycle state
* ``driver_offers``          -- time-boxed dispatch offers
* ``shared_ride_groups``     -- pooled bookings sharing one ride
* ``earning_records``        -- provider earnings ledger
* ``tracking_updates``       -- per-booking position / status history

Indexes
-------
* **B-Tree** on ``providers.h3_cell`` for the spatial prefilter (H3 cells
  replace PostGIS geometry).
* **Partial unique** on ``bookings.provider_id`` for active statuses: a
  provider holds at most one active booking.
* **Partial unique** on ``driver_offers(booking_id, provider_id)`` while the
  offer is outstanding.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)

from .database import Base
from dispatch_core.domain.enums import (
    ActorRole,
    BookingStatus,
    GroupStatus,
    OfferStatus,
    ServiceKind,
    TrackingStatus,
    ZoneType,
)

# Enum columns store member names
_ACTIVE_PROVIDER_BOOKING = text("status IN ('ASSIGNED', 'ARRIVED', 'IN_PROGRESS')")
_OUTSTANDING_OFFER = text("status = 'OFFERED'")


class ServiceZoneModel(Base):
    __tablename__ = "service_zones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(80), unique=True, nullable=False)
    display_name = Column(String(120), nullable=True)
    center_lat = Column(Float, nullable=False)
    center_lng = Column(Float, nullable=False)
    radius_m = Column(Float, nullable=False)
    zone_type = Column(Enum(ZoneType), default=ZoneType.LOCAL, nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    inter_regional_fee = Column(Float, default=0.0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_zones_active", "is_active"),)


class InterRegionalRouteModel(Base):
    __tablename__ = "inter_regional_routes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    origin_zone_id = Column(
        Integer, ForeignKey("service_zones.id"), nullable=False
    )
    destination_zone_id = Column(
        Integer, ForeignKey("service_zones.id"), nullable=False
    )
    base_fee = Column(Float, default=0.0, nullable=False)
    requires_approval = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "origin_zone_id", "destination_zone_id", name="uq_route_pair"
        ),
    )


class ProviderModel(Base):
    __tablename__ = "providers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    rating = Column(Float, default=5.0, nullable=False)
    service_kinds = Column(JSON, nullable=False, default=list)

    is_online = Column(Boolean, default=False, nullable=False)
    is_available = Column(Boolean, default=False, nullable=False)
    is_verified = Column(Boolean, default=True, nullable=False)

    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)
    h3_cell = Column(String(20), nullable=True)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)
    current_zone_id = Column(
        Integer, ForeignKey("service_zones.id"), nullable=True
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_providers_cell", "h3_cell"),
        Index("idx_providers_ready", "is_online", "is_available"),
    )


class ProviderZoneModel(Base):
    __tablename__ = "provider_zones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=False)
    zone_id = Column(Integer, ForeignKey("service_zones.id"), nullable=False)
    can_accept_inter_regional = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider_id", "zone_id", name="uq_provider_zone"),
    )


class SharedRideGroupModel(Base):
    __tablename__ = "shared_ride_groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    leader_booking_id = Column(Integer, nullable=False)
    member_booking_ids = Column(JSON, nullable=False, default=list)
    total_price = Column(Float, nullable=False)
    max_capacity = Column(Integer, default=4, nullable=False)
    status = Column(Enum(GroupStatus), default=GroupStatus.OPEN, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_groups_status", "status"),
        Index("idx_groups_leader", "leader_booking_id"),
    )


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Integer, nullable=False)
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=True)
    service_kind = Column(Enum(ServiceKind), nullable=False)
    status = Column(
        Enum(BookingStatus), default=BookingStatus.PENDING, nullable=False
    )
    scheduled_at = Column(DateTime(timezone=True), nullable=True)

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    dropoff_lat = Column(Float, nullable=True)
    dropoff_lng = Column(Float, nullable=True)
    pickup_zone_id = Column(
        Integer, ForeignKey("service_zones.id"), nullable=True
    )

    estimated_price = Column(Float, nullable=False)
    estimated_distance_km = Column(Float, nullable=True)
    estimated_duration_min = Column(Integer, nullable=True)
    surge_multiplier = Column(Float, default=1.0, nullable=False)
    final_price = Column(Float, nullable=True)
    actual_distance_km = Column(Float, nullable=True)
    actual_duration_min = Column(Integer, nullable=True)
    platform_commission = Column(Float, nullable=True)
    provider_earning = Column(Float, nullable=True)

    # Typed payloads (see domain.service_data)
    service_data = Column(JSON, nullable=True)
    inter_regional = Column(JSON, nullable=True)

    cancelled_by = Column(Integer, nullable=True)
    cancelled_by_role = Column(Enum(ActorRole), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    cancellation_fee = Column(Float, nullable=True)
    released_provider_id = Column(Integer, nullable=True)
    idempotency_key = Column(String(64), unique=True, nullable=True)
    dispatch_attempts = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_bookings_status", "status"),
        Index("idx_bookings_customer", "customer_id"),
        Index("idx_bookings_kind_status", "service_kind", "status"),
        Index(
            "uq_bookings_active_provider",
            "provider_id",
            unique=True,
            postgresql_where=_ACTIVE_PROVIDER_BOOKING,
            sqlite_where=_ACTIVE_PROVIDER_BOOKING,
        ),
    )


class DriverOfferModel(Base):
    __tablename__ = "driver_offers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=False)
    status = Column(
        Enum(OfferStatus), default=OfferStatus.OFFERED, nullable=False
    )
    distance_km = Column(Float, nullable=True)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    reason = Column(String(500), nullable=True)

    __table_args__ = (
        Index("idx_offers_booking", "booking_id"),
        Index("idx_offers_status_expiry", "status", "expires_at"),
        Index(
            "uq_offers_outstanding",
            "booking_id",
            "provider_id",
            unique=True,
            postgresql_where=_OUTSTANDING_OFFER,
            sqlite_where=_OUTSTANDING_OFFER,
        ),
    )


class EarningRecordModel(Base):
    __tablename__ = "earning_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=False)
    booking_id = Column(
        Integer, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    service_kind = Column(Enum(ServiceKind), nullable=False)
    amount = Column(Float, nullable=False)
    commission = Column(Float, nullable=False)
    net_earning = Column(Float, nullable=False)
    week_starting = Column(DateTime(timezone=True), nullable=False)
    month_year = Column(String(7), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_earnings_provider_week", "provider_id", "week_starting"),
        Index("idx_earnings_provider_month", "provider_id", "month_year"),
    )


class TrackingUpdateModel(Base):
    __tablename__ = "tracking_updates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    status = Column(Enum(TrackingStatus), nullable=False)
    latitude = Column(Float, nullable=False, default=0.0)
    longitude = Column(Float, nullable=False, default=0.0)
    heading = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    message = Column(String(500), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_tracking_booking_time", "booking_id", "timestamp"),
    )
