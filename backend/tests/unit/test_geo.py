"""Unit tests for great-circle distance helpers."""

import pytest

from mathbridge.core.exceptions import ValidationException
from mathbridge.utils import geo
from mathbridge.utils.geo import Coordinates


class TestDistance:
    def test_same_point_is_zero(self):
        assert geo.distance_km(21.0285, 105.8542, 21.0285, 105.8542) == 0.0

    def test_one_degree_of_latitude(self):
        assert geo.distance_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.19, abs=0.01)

    def test_symmetric(self):
        a = Coordinates(21.0285, 105.8542)
        b = Coordinates(10.8231, 106.6297)
        assert geo.distance_between(a, b) == pytest.approx(geo.distance_between(b, a))

    def test_hanoi_to_ho_chi_minh_city(self):
        distance = geo.distance_km(21.0285, 105.8542, 10.8231, 106.6297)
        assert 1130 < distance < 1150

    def test_antipodal_points_do_not_overflow(self):
        assert geo.distance_km(0.0, 0.0, 0.0, 180.0) == pytest.approx(20015.09, abs=0.1)

    @pytest.mark.parametrize(
        "lat, lon",
        [(91.0, 0.0), (-90.5, 0.0), (0.0, 180.5), (0.0, -181.0)],
    )
    def test_invalid_coordinates_rejected(self, lat, lon):
        with pytest.raises(ValidationException) as exc_info:
            geo.distance_km(lat, lon, 0.0, 0.0)
        assert exc_info.value.code == "INVALID_COORDINATES"


class TestRadius:
    def test_within_radius_boundary_is_inclusive(self):
        origin = Coordinates(0.0, 0.0)
        destination = Coordinates(1.0, 0.0)
        exact = geo.distance_between(origin, destination)
        assert geo.within_radius(origin, destination, exact)
        assert not geo.within_radius(origin, destination, exact - 0.01)

    def test_negative_radius_rejected(self):
        with pytest.raises(ValidationException):
            geo.within_radius(Coordinates(0.0, 0.0), Coordinates(0.0, 0.0), -1)

    def test_coordinates_or_none(self):
        assert geo.coordinates_or_none(None, 105.0) is None
        assert geo.coordinates_or_none(21.0, None) is None
        assert geo.coordinates_or_none(21, 105) == Coordinates(21.0, 105.0)
