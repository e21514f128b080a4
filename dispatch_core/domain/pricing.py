"""
Pricing  (Strategy Pattern)
===========================

Estimate formula (local oracle)
-------------------------------
Price = max(Minimum_Fare,
            (Base_Fare + Distance x Rate_Per_KM + Duration x Rate_Per_Min)
            x Kind_Multiplier x Surge_Multiplier)

Day bookings are priced per hour instead of per distance.

* **Surge_Multiplier** = clamp(active_requests / available_providers, 1.0, 3.0)

Money rules
-----------
* Commission = round(price x commission_rate(kind), 2); earning = price - commission
* Customer cancelling after assignment pays ``fee_rate x estimated_price``;
  everything else is free.
* Shared-ride members each pay ``round_half_up(total / passengers)``.

Complexity: O(1) per calculation.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from .distance import estimate_travel
from .entities import Location
from .enums import BookingStatus, ServiceKind
from .service_data import DayBookingData


@dataclass(frozen=True)
class PriceEstimate:
    price: float
    distance_km: float
    duration_min: int
    surge_multiplier: float = 1.0


class PricingOracle(Protocol):
    async def estimate(
        self,
        pickup: Location,
        dropoff: Optional[Location],
        kind: ServiceKind,
        scheduled_at: Optional[datetime] = None,
        service_data=None,
    ) -> PriceEstimate: ...


# ── Strategy hierarchy ────────────────────────────────────────────────


class PricingStrategy(ABC):
    @abstractmethod
    def calculate(self, subtotal: float) -> float: ...


class StandardPricing(PricingStrategy):
    def calculate(self, subtotal: float) -> float:
        return subtotal


class SurgePricing(PricingStrategy):
    def __init__(self, surge_multiplier: float = 1.0):
        self.surge_multiplier = surge_multiplier

    def calculate(self, subtotal: float) -> float:
        return subtotal * self.surge_multiplier


# ── Engine facade ─────────────────────────────────────────────────────


class PricingEngine:
    """In-process pricing oracle."""

    def __init__(
        self,
        base_fare: float = 8.0,
        rate_per_km: float = 2.5,
        rate_per_minute: float = 0.3,
        minimum_fare: float = 10.0,
        kind_multipliers: Optional[dict[str, float]] = None,
        hourly_rate: float = 40.0,
        speed_kmh: float = 30.0,
    ):
        self.base_fare = base_fare
        self.rate_per_km = rate_per_km
        self.rate_per_minute = rate_per_minute
        self.minimum_fare = minimum_fare
        self.kind_multipliers = kind_multipliers or {}
        self.hourly_rate = hourly_rate
        self.speed_kmh = speed_kmh
        self.demand = (1, 1)

    @staticmethod
    def compute_surge(active_requests: int, available_providers: int) -> float:
        if available_providers <= 0:
            return 3.0
        return min(3.0, max(1.0, active_requests / available_providers))

    def set_demand(self, active_requests: int, available_providers: int) -> None:
        self.demand = (active_requests, available_providers)

    async def estimate(
        self,
        pickup: Location,
        dropoff: Optional[Location],
        kind: ServiceKind,
        scheduled_at: Optional[datetime] = None,
        service_data=None,
    ) -> PriceEstimate:
        if dropoff is not None:
            travel = estimate_travel(
                pickup.latitude,
                pickup.longitude,
                dropoff.latitude,
                dropoff.longitude,
                self.speed_kmh,
            )
            distance, duration = travel.distance_km, travel.duration_min
        else:
            distance, duration = 0.0, 0

        if isinstance(service_data, DayBookingData):
            subtotal = self.hourly_rate * service_data.hours
        else:
            subtotal = (
                self.base_fare
                + distance * self.rate_per_km
                + duration * self.rate_per_minute
            )
        subtotal *= self.kind_multipliers.get(kind.value, 1.0)

        # Scheduled trips are priced at booking time without surge
        surge = 1.0 if scheduled_at else self.compute_surge(*self.demand)
        strategy = SurgePricing(surge) if surge > 1.0 else StandardPricing()
        price = max(self.minimum_fare, strategy.calculate(subtotal))
        return PriceEstimate(
            price=round(price, 2),
            distance_km=round(distance, 3),
            duration_min=duration,
            surge_multiplier=surge,
        )


# ── Money helpers ─────────────────────────────────────────────────────


def commission_split(price: float, rate: float) -> tuple[float, float]:
    """Return ``(commission, provider_earning)`` for *price*."""
    commission = round(price * rate, 2)
    return commission, round(price - commission, 2)


def cancellation_fee(
    status: BookingStatus,
    by_customer: bool,
    estimated_price: float,
    fee_rate: float = 0.10,
) -> float:
    if by_customer and status is BookingStatus.ASSIGNED:
        return round(estimated_price * fee_rate, 2)
    return 0.0


def per_passenger_cost(total_price: float, passengers: int) -> float:
    """Whole-unit share of *total_price*, rounding halves up."""
    if passengers <= 0:
        raise ValueError("passengers must be positive")
    return float(math.floor(total_price / passengers + 0.5))
