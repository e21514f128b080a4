"""Initial schema: zones, providers, bookings, offers, shared rides, ledger.

Revision ID: 001
Create Date: 2026-09-02
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

# Enum columns store member names, matching the ORM models
ZONE_TYPE = sa.Enum("LOCAL", "REGIONAL", name="zonetype")
SERVICE_KIND = sa.Enum(
    "RIDE",
    "TAXI",
    "DISPATCH_DELIVERY",
    "SHARED_RIDE",
    "DAY_BOOKING",
    "HOUSE_MOVING",
    name="servicekind",
)
BOOKING_STATUS = sa.Enum(
    "CONFIRMED",
    "PENDING",
    "ASSIGNED",
    "ARRIVED",
    "IN_PROGRESS",
    "COMPLETED",
    "CANCELLED",
    name="bookingstatus",
)
OFFER_STATUS = sa.Enum("OFFERED", "ACCEPTED", "REJECTED", "EXPIRED", name="offerstatus")
GROUP_STATUS = sa.Enum("OPEN", "CLOSED", name="groupstatus")
ACTOR_ROLE = sa.Enum("CUSTOMER", "PROVIDER", "ADMIN", "SYSTEM", name="actorrole")
TRACKING_STATUS = sa.Enum(
    "TRACKING_STARTED",
    "LOCATION_UPDATE",
    "DRIVER_ARRIVED",
    "TRIP_STARTED",
    "COMPLETED",
    "CANCELLED",
    name="trackingstatus",
)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    # ── service_zones ─────────────────────────────────────────────────
    op.create_table(
        "service_zones",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(80), unique=True, nullable=False),
        sa.Column("display_name", sa.String(120), nullable=True),
        sa.Column("center_lat", sa.Float, nullable=False),
        sa.Column("center_lng", sa.Float, nullable=False),
        sa.Column("radius_m", sa.Float, nullable=False),
        sa.Column("zone_type", ZONE_TYPE, nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column(
            "inter_regional_fee", sa.Float, nullable=False, server_default="0"
        ),
        _created_at(),
    )
    op.create_index("idx_zones_active", "service_zones", ["is_active"])

    # ── inter_regional_routes ─────────────────────────────────────────
    op.create_table(
        "inter_regional_routes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "origin_zone_id",
            sa.Integer,
            sa.ForeignKey("service_zones.id"),
            nullable=False,
        ),
        sa.Column(
            "destination_zone_id",
            sa.Integer,
            sa.ForeignKey("service_zones.id"),
            nullable=False,
        ),
        sa.Column("base_fee", sa.Float, nullable=False, server_default="0"),
        sa.Column(
            "requires_approval", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.UniqueConstraint(
            "origin_zone_id", "destination_zone_id", name="uq_route_pair"
        ),
    )

    # ── providers ─────────────────────────────────────────────────────
    op.create_table(
        "providers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("rating", sa.Float, nullable=False, server_default="5"),
        sa.Column("service_kinds", sa.JSON, nullable=False),
        sa.Column("is_online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "is_available", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("is_verified", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("latitude", sa.Float, nullable=True),
        sa.Column("longitude", sa.Float, nullable=True),
        sa.Column("heading", sa.Float, nullable=True),
        sa.Column("h3_cell", sa.String(20), nullable=True),
        sa.Column("location_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "current_zone_id",
            sa.Integer,
            sa.ForeignKey("service_zones.id"),
            nullable=True,
        ),
        _created_at(),
    )
    op.create_index("idx_providers_cell", "providers", ["h3_cell"])
    op.create_index(
        "idx_providers_ready", "providers", ["is_online", "is_available"]
    )

    # ── provider_zones ────────────────────────────────────────────────
    op.create_table(
        "provider_zones",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "provider_id", sa.Integer, sa.ForeignKey("providers.id"), nullable=False
        ),
        sa.Column(
            "zone_id", sa.Integer, sa.ForeignKey("service_zones.id"), nullable=False
        ),
        sa.Column(
            "can_accept_inter_regional",
            sa.Boolean,
            nullable=False,
            server_default=sa.false(),
        ),
        sa.UniqueConstraint("provider_id", "zone_id", name="uq_provider_zone"),
    )

    # ── shared_ride_groups ────────────────────────────────────────────
    op.create_table(
        "shared_ride_groups",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("leader_booking_id", sa.Integer, nullable=False),
        sa.Column("member_booking_ids", sa.JSON, nullable=False),
        sa.Column("total_price", sa.Float, nullable=False),
        sa.Column("max_capacity", sa.Integer, nullable=False, server_default="4"),
        sa.Column("status", GROUP_STATUS, nullable=False),
        _created_at(),
    )
    op.create_index("idx_groups_status", "shared_ride_groups", ["status"])
    op.create_index("idx_groups_leader", "shared_ride_groups", ["leader_booking_id"])

    # ── bookings ──────────────────────────────────────────────────────
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.Integer, nullable=False),
        sa.Column(
            "provider_id", sa.Integer, sa.ForeignKey("providers.id"), nullable=True
        ),
        sa.Column("service_kind", SERVICE_KIND, nullable=False),
        sa.Column("status", BOOKING_STATUS, nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("dropoff_lat", sa.Float, nullable=True),
        sa.Column("dropoff_lng", sa.Float, nullable=True),
        sa.Column(
            "pickup_zone_id",
            sa.Integer,
            sa.ForeignKey("service_zones.id"),
            nullable=True,
        ),
        sa.Column("estimated_price", sa.Float, nullable=False),
        sa.Column("estimated_distance_km", sa.Float, nullable=True),
        sa.Column("estimated_duration_min", sa.Integer, nullable=True),
        sa.Column("surge_multiplier", sa.Float, nullable=False, server_default="1"),
        sa.Column("final_price", sa.Float, nullable=True),
        sa.Column("actual_distance_km", sa.Float, nullable=True),
        sa.Column("actual_duration_min", sa.Integer, nullable=True),
        sa.Column("platform_commission", sa.Float, nullable=True),
        sa.Column("provider_earning", sa.Float, nullable=True),
        sa.Column("service_data", sa.JSON, nullable=True),
        sa.Column("inter_regional", sa.JSON, nullable=True),
        sa.Column("cancelled_by", sa.Integer, nullable=True),
        sa.Column("cancelled_by_role", ACTOR_ROLE, nullable=True),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        sa.Column("cancellation_fee", sa.Float, nullable=True),
        sa.Column("released_provider_id", sa.Integer, nullable=True),
        sa.Column("idempotency_key", sa.String(64), unique=True, nullable=True),
        sa.Column(
            "dispatch_attempts", sa.Integer, nullable=False, server_default="0"
        ),
        _created_at(),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_bookings_status", "bookings", ["status"])
    op.create_index("idx_bookings_customer", "bookings", ["customer_id"])
    op.create_index(
        "idx_bookings_kind_status", "bookings", ["service_kind", "status"]
    )
    # A provider holds at most one active booking
    op.create_index(
        "uq_bookings_active_provider",
        "bookings",
        ["provider_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('ASSIGNED', 'ARRIVED', 'IN_PROGRESS')"),
    )

    # ── driver_offers ─────────────────────────────────────────────────
    op.create_table(
        "driver_offers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "booking_id", sa.Integer, sa.ForeignKey("bookings.id"), nullable=False
        ),
        sa.Column(
            "provider_id", sa.Integer, sa.ForeignKey("providers.id"), nullable=False
        ),
        sa.Column("status", OFFER_STATUS, nullable=False),
        sa.Column("distance_km", sa.Float, nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.String(500), nullable=True),
    )
    op.create_index("idx_offers_booking", "driver_offers", ["booking_id"])
    op.create_index(
        "idx_offers_status_expiry", "driver_offers", ["status", "expires_at"]
    )
    op.create_index(
        "uq_offers_outstanding",
        "driver_offers",
        ["booking_id", "provider_id"],
        unique=True,
        postgresql_where=sa.text("status = 'OFFERED'"),
    )

    # ── earning_records ───────────────────────────────────────────────
    op.create_table(
        "earning_records",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "provider_id", sa.Integer, sa.ForeignKey("providers.id"), nullable=False
        ),
        sa.Column(
            "booking_id",
            sa.Integer,
            sa.ForeignKey("bookings.id"),
            unique=True,
            nullable=False,
        ),
        # Type already created with the bookings table
        sa.Column(
            "service_kind",
            postgresql.ENUM(name="servicekind", create_type=False),
            nullable=False,
        ),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column("commission", sa.Float, nullable=False),
        sa.Column("net_earning", sa.Float, nullable=False),
        sa.Column("week_starting", sa.DateTime(timezone=True), nullable=False),
        sa.Column("month_year", sa.String(7), nullable=False),
        _created_at(),
    )
    op.create_index(
        "idx_earnings_provider_week", "earning_records", ["provider_id", "week_starting"]
    )
    op.create_index(
        "idx_earnings_provider_month", "earning_records", ["provider_id", "month_year"]
    )

    # ── tracking_updates ──────────────────────────────────────────────
    op.create_table(
        "tracking_updates",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "booking_id", sa.Integer, sa.ForeignKey("bookings.id"), nullable=False
        ),
        sa.Column("status", TRACKING_STATUS, nullable=False),
        sa.Column("latitude", sa.Float, nullable=False),
        sa.Column("longitude", sa.Float, nullable=False),
        sa.Column("heading", sa.Float, nullable=True),
        sa.Column("speed", sa.Float, nullable=True),
        sa.Column("message", sa.String(500), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_tracking_booking_time", "tracking_updates", ["booking_id", "timestamp"]
    )


def downgrade() -> None:
    op.drop_table("tracking_updates")
    op.drop_table("earning_records")
    op.drop_table("driver_offers")
    op.drop_table("bookings")
    op.drop_table("shared_ride_groups")
    op.drop_table("provider_zones")
    op.drop_table("providers")
    op.drop_table("inter_regional_routes")
    op.drop_table("service_zones")
    for name in (
        "trackingstatus",
        "actorrole",
        "groupstatus",
        "offerstatus",
        "bookingstatus",
        "servicekind",
        "zonetype",
    ):
        op.execute(f"DROP TYPE IF EXISTS {name}")
