"""Unit tests for geo-zone resolution and inter-regional eligibility."""

import pytest

from dispatch_core.domain.entities import InterRegionalRoute, Location, ServiceZone
from dispatch_core.domain.enums import ZoneType
from dispatch_core.domain.zones import GeoZoneResolver

ACCRA = ServiceZone(
    id=1,
    name="accra",
    center=Location(5.6037, -0.1870),
    radius_m=25_000,
    zone_type=ZoneType.REGIONAL,
    inter_regional_fee=15.0,
)
AIRPORT = ServiceZone(
    id=2, name="kotoka", center=Location(5.6052, -0.1668), radius_m=2_500, priority=10
)
KUMASI = ServiceZone(
    id=3,
    name="kumasi",
    center=Location(6.6885, -1.6244),
    radius_m=20_000,
    zone_type=ZoneType.REGIONAL,
    inter_regional_fee=25.0,
)
TAKORADI = ServiceZone(
    id=4, name="takoradi", center=Location(4.8845, -1.7554), radius_m=15_000
)
CLOSED = ServiceZone(
    id=5,
    name="closed",
    center=Location(5.6037, -0.1870),
    radius_m=1_000,
    priority=99,
    is_active=False,
)


def resolver(routes=()) -> GeoZoneResolver:
    return GeoZoneResolver([ACCRA, AIRPORT, KUMASI, TAKORADI, CLOSED], routes)


class TestResolveZone:
    def test_point_inside_single_zone(self):
        assert resolver().resolve_zone(6.69, -1.62).id == KUMASI.id

    def test_point_outside_every_zone(self):
        assert resolver().resolve_zone(9.40, -0.85) is None

    def test_overlap_prefers_higher_priority(self):
        # Kotoka sits inside Greater Accra
        assert resolver().resolve_zone(5.6052, -0.1668).id == AIRPORT.id

    def test_inactive_zones_are_ignored(self):
        assert resolver().resolve_zone(5.6037, -0.1870).id != CLOSED.id

    def test_equal_priority_prefers_tighter_zone(self):
        wide = ServiceZone(id=10, name="wide", center=Location(0, 0), radius_m=5_000)
        tight = ServiceZone(id=11, name="tight", center=Location(0, 0), radius_m=1_000)
        assert GeoZoneResolver([wide, tight]).resolve_zone(0, 0).id == tight.id

    def test_get_by_id(self):
        assert resolver().get(KUMASI.id) == KUMASI
        assert resolver().get(CLOSED.id) is None


class TestZoneChanged:
    def test_small_move_is_not_a_change(self):
        assert not resolver().zone_changed(5.60, -0.19, 5.65, -0.22)

    def test_latitude_jump_is_a_change(self):
        assert resolver().zone_changed(5.60, -0.19, 5.75, -0.19)

    def test_longitude_jump_is_a_change(self):
        assert resolver().zone_changed(5.60, -0.19, 5.60, -0.30)

    def test_threshold_is_configurable(self):
        strict = GeoZoneResolver([ACCRA], change_threshold_deg=0.01)
        assert strict.zone_changed(5.60, -0.19, 5.62, -0.19)


class TestInterRegional:
    def test_same_zone_is_regular_booking(self):
        check = resolver().can_create_inter_regional(
            Location(5.60, -0.19), Location(5.65, -0.20)
        )
        assert check.can_book
        assert not check.is_inter_regional
        assert check.additional_fee == 0.0

    def test_unzoned_endpoint_cannot_book(self):
        check = resolver().can_create_inter_regional(
            Location(5.60, -0.19), Location(9.40, -0.85)
        )
        assert not check.can_book
        assert check.destination_zone is None

    def test_missing_route_cannot_book(self):
        check = resolver().can_create_inter_regional(
            Location(5.60, -0.19), Location(6.69, -1.62)
        )
        assert not check.can_book
        assert check.origin_zone.id == ACCRA.id
        assert check.destination_zone.id == KUMASI.id

    def test_route_fee_plus_distance(self):
        routes = [InterRegionalRoute(ACCRA.id, KUMASI.id, base_fee=50.0)]
        check = resolver(routes).can_create_inter_regional(
            Location(5.60, -0.19), Location(6.69, -1.62)
        )
        assert check.can_book and check.is_inter_regional
        assert check.additional_fee == pytest.approx(
            50.0 + check.distance_km * 2.0, abs=0.01
        )
        assert 190 < check.distance_km < 210
        assert not check.requires_approval

    def test_routes_are_symmetric(self):
        routes = [InterRegionalRoute(ACCRA.id, KUMASI.id, base_fee=50.0)]
        check = resolver(routes).can_create_inter_regional(
            Location(6.69, -1.62), Location(5.60, -0.19)
        )
        assert check.is_inter_regional
        assert check.origin_zone.id == KUMASI.id

    def test_zone_fee_used_when_route_has_none(self):
        routes = [InterRegionalRoute(ACCRA.id, KUMASI.id)]
        check = resolver(routes).can_create_inter_regional(
            Location(5.60, -0.19), Location(6.69, -1.62)
        )
        # larger of the two zone fees
        assert check.additional_fee == pytest.approx(
            25.0 + check.distance_km * 2.0, abs=0.01
        )

    def test_approval_flag_is_reported(self):
        routes = [InterRegionalRoute(KUMASI.id, TAKORADI.id, 60.0, requires_approval=True)]
        check = resolver(routes).can_create_inter_regional(
            Location(6.69, -1.62), Location(4.88, -1.75)
        )
        assert check.is_inter_regional
        assert check.requires_approval

    def test_inactive_route_is_ignored(self):
        routes = [InterRegionalRoute(ACCRA.id, KUMASI.id, 50.0, is_active=False)]
        check = resolver(routes).can_create_inter_regional(
            Location(5.60, -0.19), Location(6.69, -1.62)
        )
        assert not check.can_book
