from datetime import timedelta

import pytest
from sqlmodel import select

from evfleet import bookings, geofence, rides
from evfleet.errors import Forbidden
from evfleet.geo import Geofence
from evfleet.models import Booking, BookingStatus, GeofenceWatch, Penalty, PenaltyReason

from conftest import CENTER, NOW, offset_east

T0 = NOW + timedelta(minutes=60)
INSIDE = offset_east(CENTER, 100)
OUTSIDE = offset_east(CENTER, 3000)


def at(minutes):
    return T0 + timedelta(minutes=minutes)


# ---------------- pure debounce ----------------
def test_advance_fires_once_after_threshold():
    watch = GeofenceWatch(ride_id=1)
    fired = [geofence.advance(watch, False, at(m), 10) for m in range(0, 16)]
    hits = [f for f in fired if f is not None]
    assert hits == [11]
    assert watch.violations == 1


def test_advance_resets_on_reentry():
    watch = GeofenceWatch(ride_id=1)
    assert geofence.advance(watch, False, at(0), 10) is None
    assert geofence.advance(watch, True, at(5), 10) is None
    assert watch.outside_since is None
    assert geofence.advance(watch, False, at(6), 10) is None
    # 11 minutes since the first exit, but only 5 since the second
    assert geofence.advance(watch, False, at(11), 10) is None
    assert geofence.advance(watch, False, at(17), 10) == 11


def test_advance_exactly_at_threshold_does_not_fire():
    watch = GeofenceWatch(ride_id=1)
    geofence.advance(watch, False, at(0), 10)
    assert geofence.advance(watch, False, at(10), 10) is None


def test_advance_ignores_out_of_order_fixes():
    watch = GeofenceWatch(ride_id=1)
    geofence.advance(watch, False, at(5), 10)
    geofence.advance(watch, True, at(3), 10)
    assert watch.outside_since == at(5)
    assert watch.last_seen_at == at(5)


def test_new_excursion_can_fire_again():
    watch = GeofenceWatch(ride_id=1)
    geofence.advance(watch, False, at(0), 10)
    assert geofence.advance(watch, False, at(12), 10) is not None
    geofence.advance(watch, True, at(13), 10)
    geofence.advance(watch, False, at(14), 10)
    assert geofence.advance(watch, False, at(30), 10) is not None
    assert watch.violations == 2


def test_in_service_area_without_zones_allows_everything():
    assert geofence.in_service_area([], 0, 0) == (True, 0.0)


def test_in_service_area_reports_nearest_distance():
    fences = [Geofence.from_parts(CENTER[0], CENTER[1], 1000)]
    inside, outside_by = geofence.in_service_area(fences, *OUTSIDE)
    assert not inside
    assert outside_by == pytest.approx(2000, abs=2)


# ---------------- through ride tracking ----------------
@pytest.fixture
def zone(session, admin):
    return geofence.create_zone(
        session, admin, name="City core", center_lon=CENTER[0], center_lat=CENTER[1], radius_m=1000,
    )


@pytest.fixture
def ride(session, alice, master, station, asset, window, settings, zone):
    start, end = window
    booking = bookings.create(session, alice, asset.id, station.id, station.id, start, end, settings=settings, now=NOW)
    bookings.set_status(session, booking.id, BookingStatus.APPROVED, master, settings=settings, now=NOW)
    return rides.start(session, booking.id, alice, *CENTER, now=T0)


def _geofence_penalties(session, booking_id):
    return session.exec(
        select(Penalty).where(Penalty.booking_id == booking_id, Penalty.reason == PenaltyReason.GEOFENCE_VIOLATION)
    ).all()


def test_continuous_excursion_accrues_exactly_one_penalty(session, alice, ride, settings, notifier):
    fired = [
        rides.track(session, ride.id, alice, *OUTSIDE, timestamp=at(m), settings=settings, notifier=notifier)
        for m in range(0, 16)
    ]
    hits = [p for p in fired if p is not None]
    assert len(hits) == 1
    # 11 min out, 2 km beyond the boundary: 150 * (0.5 + 1.5)
    assert hits[0].amount == 300
    assert len(_geofence_penalties(session, ride.booking_id)) == 1
    assert session.get(Booking, ride.booking_id, populate_existing=True).penalty_amount == 300
    assert notifier.sent[-1].recipient_id == alice.principal_id


def test_interrupted_excursion_accrues_nothing(session, alice, ride, settings):
    for m in range(0, 5):
        rides.track(session, ride.id, alice, *OUTSIDE, timestamp=at(m), settings=settings)
    rides.track(session, ride.id, alice, *INSIDE, timestamp=at(5), settings=settings)
    for m in range(6, 12):
        rides.track(session, ride.id, alice, *OUTSIDE, timestamp=at(m), settings=settings)
    assert _geofence_penalties(session, ride.booking_id) == []


def test_inactive_zone_is_ignored(session, admin, alice, ride, zone, settings):
    geofence.set_zone_active(session, admin, zone.id, False)
    for m in range(0, 15):
        assert rides.track(session, ride.id, alice, *OUTSIDE, timestamp=at(m), settings=settings) is None


def test_only_admin_manages_zones(session, master):
    with pytest.raises(Forbidden):
        geofence.create_zone(session, master, name="x", center_lon=0, center_lat=0, radius_m=10)
