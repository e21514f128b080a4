"""Unit tests for great-circle distance, bearing and ETA helpers."""

import pytest

from dispatch_core.domain.distance import (
    bearing_difference,
    estimate_travel,
    haversine_km,
    haversine_m,
    initial_bearing,
)


class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_km(5.6, -0.19, 5.6, -0.19) == 0.0

    def test_known_distance(self):
        # Accra centre -> Kotoka airport, a little over 2 km
        d = haversine_km(5.6037, -0.1870, 5.6052, -0.1668)
        assert 2.0 < d < 2.5

    def test_one_degree_of_latitude(self):
        assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.19, abs=0.01)

    def test_symmetric(self):
        d1 = haversine_km(5.6, -0.19, 6.69, -1.62)
        d2 = haversine_km(6.69, -1.62, 5.6, -0.19)
        assert abs(d1 - d2) < 1e-9

    def test_metres_variant(self):
        km = haversine_km(5.6, -0.19, 5.65, -0.20)
        assert haversine_m(5.6, -0.19, 5.65, -0.20) == pytest.approx(km * 1000)


class TestBearing:
    def test_due_north(self):
        assert initial_bearing(0.0, 0.0, 1.0, 0.0) == pytest.approx(0.0)

    def test_due_east(self):
        assert initial_bearing(0.0, 0.0, 0.0, 1.0) == pytest.approx(90.0)

    def test_due_west_is_normalised(self):
        assert initial_bearing(0.0, 0.0, 0.0, -1.0) == pytest.approx(270.0)

    def test_difference_takes_shorter_arc(self):
        assert bearing_difference(350.0, 10.0) == pytest.approx(20.0)
        assert bearing_difference(10.0, 350.0) == pytest.approx(20.0)

    def test_opposite_bearings(self):
        assert bearing_difference(0.0, 180.0) == pytest.approx(180.0)


class TestEstimateTravel:
    def test_zero_distance_is_zero_minutes(self):
        travel = estimate_travel(5.6, -0.19, 5.6, -0.19)
        assert travel.distance_km == 0.0
        assert travel.duration_min == 0

    def test_minutes_round_up(self):
        # ~5.68 km at 30 km/h is 11.4 min
        travel = estimate_travel(5.60, -0.19, 5.65, -0.20)
        assert travel.duration_min == 12

    def test_faster_speed_shortens_eta(self):
        slow = estimate_travel(5.60, -0.19, 5.70, -0.30, speed_kmh=20)
        fast = estimate_travel(5.60, -0.19, 5.70, -0.30, speed_kmh=60)
        assert fast.duration_min < slow.duration_min
