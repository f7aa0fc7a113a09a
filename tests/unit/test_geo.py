"""
Unit tests for Haversine distance, the bounding-box prefilter and money helpers.
"""
from decimal import Decimal

import pytest

from tripsalama.errors import InvalidInputError
from tripsalama.services.geo import bounding_box, haversine_km
from tripsalama.services.money import commission_split, positive_amount, to_money

CASABLANCA = (33.5731, -7.5898)
RABAT = (34.0209, -6.8416)


class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_km(*CASABLANCA, *CASABLANCA) == 0.0

    def test_casablanca_to_rabat(self):
        assert haversine_km(*CASABLANCA, *RABAT) == pytest.approx(85.2, abs=1.0)

    def test_symmetric(self):
        assert haversine_km(*CASABLANCA, *RABAT) == pytest.approx(haversine_km(*RABAT, *CASABLANCA))

    def test_one_degree_of_latitude(self):
        assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.19, abs=0.01)

    def test_antipodes(self):
        assert haversine_km(0.0, 0.0, 0.0, 180.0) == pytest.approx(20015.09, abs=0.1)


class TestBoundingBox:
    def test_contains_points_inside_radius(self):
        lat, lng = CASABLANCA
        min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, 10.0)
        # a point 9.9 km due north and one due east must fall inside the box
        assert min_lat <= lat + 9.9 / 111.19 <= max_lat
        east = lng + 9.9 / (111.19 * 0.8331)
        assert haversine_km(lat, lng, lat, east) < 10.0
        assert min_lng <= east <= max_lng

    def test_polar_box_spans_all_longitudes(self):
        _, _, min_lng, max_lng = bounding_box(89.99, 10.0, 50.0)
        assert (min_lng, max_lng) == (-180.0, 180.0)

    def test_antimeridian_box_spans_all_longitudes(self):
        _, _, min_lng, max_lng = bounding_box(0.0, 179.99, 10.0)
        assert (min_lng, max_lng) == (-180.0, 180.0)


class TestMoney:
    def test_to_money_rounds_half_up(self):
        assert to_money("10.005") == Decimal("10.01")
        assert to_money(3) == Decimal("3.00")

    def test_positive_amount_rejects_zero_and_negative(self):
        with pytest.raises(InvalidInputError):
            positive_amount(0)
        with pytest.raises(InvalidInputError):
            positive_amount("-5")

    def test_commission_split_is_twelve_percent(self):
        commission, earnings = commission_split(Decimal("100.00"))
        assert commission == Decimal("12.00")
        assert earnings == Decimal("88.00")

    def test_commission_split_adds_back_up(self):
        amount = Decimal("37.33")
        commission, earnings = commission_split(amount)
        assert commission == Decimal("4.48")
        assert commission + earnings == amount
