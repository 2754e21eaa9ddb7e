from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from hypothesis import given, strategies as st

from matchscore.services.geo import compute_age, distance_between, haversine_km, to_number

lats = st.floats(min_value=-90, max_value=90, allow_nan=False)
lngs = st.floats(min_value=-180, max_value=180, allow_nan=False)


@given(lats, lngs, lats, lngs)
def test_haversine_is_symmetric(lat1, lng1, lat2, lng2):
    assert haversine_km(lat1, lng1, lat2, lng2) == pytest.approx(haversine_km(lat2, lng2, lat1, lng1), abs=1e-6)


def test_haversine_known_distance_and_zero():
    assert haversine_km(51.5074, -0.1278, 51.5074, -0.1278) == 0.0
    # London -> Paris
    assert haversine_km(51.5074, -0.1278, 48.8566, 2.3522) == pytest.approx(343.5, abs=1.0)


def test_to_number_coerces_db_numerics():
    assert to_number(Decimal("12.5")) == 12.5
    assert to_number(3) == 3.0
    assert to_number(" 4.25 ") == 4.25
    assert to_number("") is None
    assert to_number("abc") is None
    assert to_number(float("nan")) is None
    assert to_number(float("inf")) is None
    assert to_number(True) is None
    assert to_number(None) is None


def test_distance_between_treats_malformed_geo_as_unknown():
    assert distance_between(None, 0, 0, 0) is None
    assert distance_between(91, 0, 0, 0) is None
    assert distance_between(0, 181, 0, 0) is None
    assert distance_between("not-a-lat", 0, 0, 0) is None
    assert distance_between(Decimal("40.0"), "-73.9", 40.0, -73.9) == 0.0


def test_compute_age_is_calendar_aware():
    today = datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert compute_age(date(2000, 3, 1), today) == 26
    assert compute_age(date(2000, 3, 2), today) == 25
    assert compute_age(datetime(2000, 2, 28), today) == 26
    assert compute_age(None, today) is None
