"""
Unit tests for the Geo Service.

Covers haversine distance properties and coordinate validation.
"""

import math

import pytest

from dispatch.core.exceptions import InvalidCoordinateError
from dispatch.services.geoService import (
    EARTH_RADIUS_KM,
    Coordinate,
    distance_km,
    haversine_distance,
    validate_coordinate,
)


class TestHaversineDistance:

    def test_same_point_is_zero(self):
        assert haversine_distance(43.6532, -79.3832, 43.6532, -79.3832) == 0.0

    def test_symmetric(self):
        d1 = haversine_distance(43.6532, -79.3832, 45.5017, -73.5673)
        d2 = haversine_distance(45.5017, -73.5673, 43.6532, -79.3832)
        assert d1 == pytest.approx(d2, abs=1e-9)

    def test_toronto_to_montreal(self):
        # Roughly 504 km great-circle
        d = haversine_distance(43.6532, -79.3832, 45.5017, -73.5673)
        assert 495 < d < 515

    def test_one_degree_of_latitude(self):
        d = haversine_distance(0.0, 0.0, 1.0, 0.0)
        assert d == pytest.approx(EARTH_RADIUS_KM * math.pi / 180, rel=1e-9)

    def test_antipodal_points_do_not_fail(self):
        d = haversine_distance(0.0, 0.0, 0.0, 180.0)
        assert d == pytest.approx(EARTH_RADIUS_KM * math.pi, rel=1e-9)

    def test_crossing_antimeridian(self):
        d = haversine_distance(0.0, 179.9, 0.0, -179.9)
        assert d < 25


class TestValidateCoordinate:

    @pytest.mark.parametrize(
        "lat,lng",
        [(0, 0), (90, 180), (-90, -180), (43.6532, -79.3832)],
    )
    def test_valid(self, lat, lng):
        validate_coordinate(lat, lng)

    @pytest.mark.parametrize(
        "lat,lng",
        [(90.0001, 0), (-91, 0), (0, 180.5), (0, -181), (float("nan"), 0)],
    )
    def test_invalid(self, lat, lng):
        with pytest.raises(InvalidCoordinateError):
            validate_coordinate(lat, lng)


class TestCoordinate:

    def test_rejects_out_of_range(self):
        with pytest.raises(InvalidCoordinateError):
            Coordinate(lat=120.0, lng=0.0)

    def test_distance_between_coordinates(self):
        a = Coordinate(43.6532, -79.3832)
        b = Coordinate(43.7, -79.4)
        assert distance_km(a, b) == pytest.approx(
            haversine_distance(a.lat, a.lng, b.lat, b.lng)
        )
