"""Unit tests for pricing, commissions, cancellation fees and fare splitting."""

from datetime import datetime, timezone

import pytest

from dispatch_core.domain.entities import Location
from dispatch_core.domain.enums import BookingStatus, ServiceKind
from dispatch_core.domain.pricing import (
    PricingEngine,
    StandardPricing,
    SurgePricing,
    cancellation_fee,
    commission_split,
    per_passenger_cost,
)
from dispatch_core.domain.service_data import DayBookingData

PICKUP = Location(5.60, -0.19)
DROPOFF = Location(5.65, -0.20)


class TestPricingStrategies:
    def test_standard_pricing(self):
        assert StandardPricing().calculate(40.0) == 40.0

    def test_surge_pricing_multiplier(self):
        assert SurgePricing(surge_multiplier=2.0).calculate(40.0) == 80.0


class TestPricingEngine:
    def setup_method(self):
        self.engine = PricingEngine()

    def test_compute_surge_normal(self):
        assert self.engine.compute_surge(10, 10) == 1.0

    def test_compute_surge_high_demand(self):
        assert self.engine.compute_surge(30, 10) == 3.0  # capped at 3.0

    def test_compute_surge_no_providers(self):
        assert self.engine.compute_surge(10, 0) == 3.0

    def test_compute_surge_low_demand(self):
        assert self.engine.compute_surge(5, 10) == 1.0  # min 1.0

    @pytest.mark.asyncio
    async def test_distance_and_time_fare(self):
        estimate = await self.engine.estimate(PICKUP, DROPOFF, ServiceKind.RIDE)
        # 8 + 5.668 km * 2.5 + 12 min * 0.3
        assert estimate.distance_km == pytest.approx(5.668, abs=0.01)
        assert estimate.duration_min == 12
        assert estimate.price == pytest.approx(
            8 + estimate.distance_km * 2.5 + 12 * 0.3, abs=0.02
        )
        assert estimate.surge_multiplier == 1.0

    @pytest.mark.asyncio
    async def test_minimum_fare(self):
        estimate = await self.engine.estimate(
            PICKUP, Location(5.601, -0.19), ServiceKind.RIDE
        )
        assert estimate.price == 10.0

    @pytest.mark.asyncio
    async def test_surge_applies_to_immediate_bookings(self):
        calm = await self.engine.estimate(PICKUP, DROPOFF, ServiceKind.RIDE)
        self.engine.set_demand(20, 10)
        busy = await self.engine.estimate(PICKUP, DROPOFF, ServiceKind.RIDE)
        assert busy.surge_multiplier == 2.0
        assert busy.price == pytest.approx(calm.price * 2, abs=0.02)

    @pytest.mark.asyncio
    async def test_scheduled_bookings_skip_surge(self):
        self.engine.set_demand(20, 10)
        later = datetime(2026, 3, 3, 8, 0, tzinfo=timezone.utc)
        estimate = await self.engine.estimate(
            PICKUP, DROPOFF, ServiceKind.RIDE, scheduled_at=later
        )
        assert estimate.surge_multiplier == 1.0

    @pytest.mark.asyncio
    async def test_kind_multiplier(self):
        engine = PricingEngine(kind_multipliers={"house_moving": 2.5})
        ride = await engine.estimate(PICKUP, DROPOFF, ServiceKind.RIDE)
        moving = await engine.estimate(PICKUP, DROPOFF, ServiceKind.HOUSE_MOVING)
        assert moving.price == pytest.approx(ride.price * 2.5, abs=0.02)

    @pytest.mark.asyncio
    async def test_day_booking_priced_per_hour(self):
        estimate = await self.engine.estimate(
            PICKUP, None, ServiceKind.DAY_BOOKING, service_data=DayBookingData(hours=6)
        )
        assert estimate.price == 240.0
        assert estimate.distance_km == 0.0


class TestMoneyRules:
    def test_commission_split(self):
        assert commission_split(100.0, 0.18) == (18.0, 82.0)

    def test_commission_split_rounds_to_cents(self):
        commission, earning = commission_split(47.13, 0.15)
        assert commission == pytest.approx(7.07)
        assert earning == pytest.approx(40.06)

    def test_customer_cancelling_assigned_pays_ten_percent(self):
        assert cancellation_fee(BookingStatus.ASSIGNED, True, 100.0) == 10.0

    @pytest.mark.parametrize(
        "status,by_customer",
        [
            (BookingStatus.PENDING, True),
            (BookingStatus.CONFIRMED, True),
            (BookingStatus.ASSIGNED, False),
        ],
    )
    def test_other_cancellations_are_free(self, status, by_customer):
        assert cancellation_fee(status, by_customer, 100.0) == 0.0

    def test_per_passenger_cost_rounds_half_up(self):
        assert per_passenger_cost(50.0, 4) == 13.0  # 12.5 -> 13
        assert per_passenger_cost(50.0, 3) == 17.0  # 16.67 -> 17
        assert per_passenger_cost(40.0, 2) == 20.0

    def test_per_passenger_cost_needs_passengers(self):
        with pytest.raises(ValueError):
            per_passenger_cost(40.0, 0)
