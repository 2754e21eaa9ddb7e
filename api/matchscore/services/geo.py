from __future__ import annotations

import math
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

EARTH_RADIUS_KM = 6371.0


def to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, Decimal):
            out = float(value)
        elif isinstance(value, (int, float)):
            out = float(value)
        elif isinstance(value, str) and value.strip():
            out = float(Decimal(value.strip()))
        else:
            return None
    except (InvalidOperation, TypeError, ValueError):
        return None
    return out if math.isfinite(out) else None


def is_valid_latitude(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and -90.0 <= value <= 90.0


def is_valid_longitude(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and -180.0 <= value <= 180.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in km. Inputs must already be valid coordinates."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_between(lat1: Any, lng1: Any, lat2: Any, lng2: Any) -> float | None:
    a_lat, a_lng, b_lat, b_lng = to_number(lat1), to_number(lng1), to_number(lat2), to_number(lng2)
    if not (is_valid_latitude(a_lat) and is_valid_longitude(a_lng)):
        return None
    if not (is_valid_latitude(b_lat) and is_valid_longitude(b_lng)):
        return None
    return haversine_km(a_lat, a_lng, b_lat, b_lng)


def compute_age(birthdate: date | datetime | None, today: date | datetime) -> int | None:
    if birthdate is None:
        return None
    if isinstance(birthdate, datetime):
        birthdate = birthdate.date()
    if isinstance(today, datetime):
        today = today.date()
    age = today.year - birthdate.year
    if (today.month, today.day) < (birthdate.month, birthdate.day):
        age -= 1
    return age
