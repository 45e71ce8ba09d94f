import math

import pytest

from nearfeed.domain.feed.exceptions import ValidationError
from nearfeed.domain.feed.models import Coordinates
from nearfeed.domain.feed.proximity import EARTH_RADIUS_KM, distance_km, haversine, within_radius

NEW_YORK = Coordinates(40.7128, -74.0060)
LOS_ANGELES = Coordinates(34.0522, -118.2437)


def test_new_york_to_los_angeles():
    assert distance_km(NEW_YORK, LOS_ANGELES) == pytest.approx(3936, abs=10)


def test_distance_is_symmetric_and_reflexive():
    assert distance_km(NEW_YORK, NEW_YORK) == 0.0
    assert distance_km(NEW_YORK, LOS_ANGELES) == pytest.approx(distance_km(LOS_ANGELES, NEW_YORK))


def test_antipodal_points_do_not_overflow():
    assert haversine(0.0, 0.0, 0.0, 180.0) == pytest.approx(math.pi * EARTH_RADIUS_KM)


def test_within_radius_is_inclusive():
    point = Coordinates(40.7228, -74.0060)
    exact = distance_km(NEW_YORK, point)
    assert within_radius(NEW_YORK, point, exact)
    assert not within_radius(NEW_YORK, point, exact - 0.001)
    assert within_radius(NEW_YORK, NEW_YORK, 0.0)


def test_negative_radius_is_rejected():
    with pytest.raises(ValidationError):
        within_radius(NEW_YORK, LOS_ANGELES, -1.0)
