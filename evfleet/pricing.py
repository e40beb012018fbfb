"""Ride cost formula and the reason-specific penalty amounts.

Everything here is a pure function of its inputs. The ledger in
``evfleet.penalties`` never decides amounts; callers compute them here
first and hand the figure over.
"""
from typing import Optional

from .config import Settings, get_settings

SEVERITY_MULTIPLIERS = {"low": 0.5, "medium": 1.0, "high": 2.0}


def _money(value: float) -> float:
    return round(max(0.0, value), 2)


def ride_cost(distance_km: float, base_rate: float, included_km: float, extra_km_rate: float) -> float:
    """``base_rate + max(0, distance - included_km) * extra_km_rate``."""
    extra_km = max(0.0, distance_km - included_km)
    return _money(base_rate + extra_km * extra_km_rate)


def booking_cost(price_per_hour: float, duration_hours: float) -> float:
    return _money(price_per_hour * duration_hours)


def damage_penalty(severity: str, settings: Optional[Settings] = None) -> float:
    settings = settings or get_settings()
    try:
        multiplier = SEVERITY_MULTIPLIERS[severity]
    except KeyError:
        raise ValueError(f"unknown damage severity {severity!r}") from None
    return _money(settings.damage_penalty_base * multiplier)


def late_return_penalty(late_minutes: int, settings: Optional[Settings] = None) -> float:
    settings = settings or get_settings()
    if late_minutes <= 0:
        return 0.0
    if settings.late_penalty_type == "flat":
        return _money(settings.late_penalty_rate)
    minutes = min(late_minutes, settings.late_penalty_max_minutes)
    return _money(settings.late_penalty_rate * minutes)


def parking_distance_multiplier(distance_m: float) -> float:
    if distance_m > 500:
        return 2.0
    if distance_m > 100:
        return 1.5
    return 1.0


def improper_parking_penalty(distance_from_station_m: float, settings: Optional[Settings] = None) -> float:
    settings = settings or get_settings()
    return _money(settings.improper_parking_penalty_base * parking_distance_multiplier(distance_from_station_m))


def geofence_duration_multiplier(duration_minutes: float) -> float:
    multiplier = 0.0
    if duration_minutes > 10:
        multiplier += 0.5
    if duration_minutes > 30:
        multiplier += 0.5
    return multiplier


def geofence_distance_multiplier(distance_outside_m: float) -> float:
    return 1.5 if distance_outside_m > 500 else 1.0


def geofence_violation_penalty(duration_minutes: float, distance_outside_m: float,
                               settings: Optional[Settings] = None) -> float:
    settings = settings or get_settings()
    multiplier = geofence_duration_multiplier(duration_minutes) + geofence_distance_multiplier(distance_outside_m)
    return _money(settings.geofence_penalty_base * multiplier)


def cancellation_penalty(minutes_before_start: float, settings: Optional[Settings] = None) -> float:
    """Charge for cancelling inside the cancellation window, 0 outside it."""
    settings = settings or get_settings()
    if minutes_before_start >= settings.cancellation_window_minutes:
        return 0.0
    multiplier = 1.0
    if minutes_before_start < 15:
        multiplier = 1.5
    if minutes_before_start < 5:
        multiplier = 2.0
    return _money(settings.cancellation_penalty_base * multiplier)
