from datetime import timedelta

import pytest
from sqlmodel import select

from evfleet import bookings, registry, rides
from evfleet.errors import Conflict, Forbidden, NotFound, ValidationError
from evfleet.models import Asset, AssetStatus, Booking, BookingStatus, Penalty, PenaltyReason, RideStatus, Station

from conftest import CENTER, NOW


def _book(session, actor, asset, station, window, settings, notifier=None, now=NOW, **kwargs):
    start, end = window
    return bookings.create(
        session, actor, asset.id, station.id, station.id, start, end,
        settings=settings, notifier=notifier, now=now, **kwargs,
    )


def _asset_status(session, asset):
    return session.get(Asset, asset.id, populate_existing=True).status


def test_create_reserves_asset_and_freezes_pricing(session, alice, master, station, asset, window, settings, notifier):
    booking = _book(session, alice, asset, station, window, settings, notifier, total_cost=50)
    assert booking.status == BookingStatus.PENDING
    assert (booking.base_rate, booking.included_km, booking.extra_km_rate) == (50, 10, 5)
    assert booking.duration_hours == pytest.approx(2)
    assert _asset_status(session, asset) == AssetStatus.BOOKED
    assert session.get(Station, station.id, populate_existing=True).available_count == 0
    assert {n.recipient_id for n in notifier.sent} == {alice.principal_id, master.principal_id}


def test_cost_defaults_to_hourly_price(session, alice, station, asset, window, settings):
    booking = _book(session, alice, asset, station, window, settings)
    assert booking.total_cost == 100


def test_second_booking_for_same_asset_conflicts(session, alice, bob, station, asset, window, settings):
    _book(session, alice, asset, station, window, settings)
    with pytest.raises(Conflict):
        _book(session, bob, asset, station, window, settings)
    assert len(session.exec(select(Booking)).all()) == 1


def test_one_open_booking_per_customer(session, alice, station, asset, window, settings):
    second = registry.register_asset(
        session, registration_number="KA01EV0002", model="ZS EV", manufacturer="MG", station_id=station.id,
        now=NOW - timedelta(days=1),
    )
    session.commit()
    _book(session, alice, asset, station, window, settings)
    with pytest.raises(Conflict) as exc:
        _book(session, alice, second, station, window, settings)
    assert "active booking" in exc.value.reason
    # the failed attempt left the second asset untouched
    assert _asset_status(session, second) == AssetStatus.AVAILABLE


def test_open_customer_index_backs_up_the_precheck(session, alice, station, asset, window, settings, monkeypatch):
    second = registry.register_asset(
        session, registration_number="KA01EV0002", model="ZS EV", manufacturer="MG", station_id=station.id,
        now=NOW - timedelta(days=1),
    )
    session.commit()
    _book(session, alice, asset, station, window, settings)
    available = session.get(Station, station.id, populate_existing=True).available_count
    # the re-check misses a booking committed by a concurrent request
    monkeypatch.setattr(bookings, "open_booking_of", lambda session, customer_id: None)

    with pytest.raises(Conflict) as exc:
        _book(session, alice, second, station, window, settings)
    assert exc.value.reason == "You already have an active booking"
    assert _asset_status(session, second) == AssetStatus.AVAILABLE
    assert session.get(Station, station.id, populate_existing=True).available_count == available
    assert len(session.exec(select(Booking)).all()) == 1


def test_open_asset_index_backs_up_the_reservation(session, alice, bob, station, asset, window, settings, monkeypatch):
    _book(session, alice, asset, station, window, settings)
    monkeypatch.setattr(registry, "reserve", lambda session, asset_id, now=None: None)

    with pytest.raises(Conflict) as exc:
        _book(session, bob, asset, station, window, settings)
    assert exc.value.reason == "This vehicle is not available for booking"
    assert [b.customer_id for b in session.exec(select(Booking)).all()] == [alice.principal_id]
    assert _asset_status(session, asset) == AssetStatus.BOOKED


def test_create_validation(session, alice, station, asset, settings):
    with pytest.raises(ValidationError):
        bookings.create(session, alice, asset.id, station.id, station.id, NOW, NOW, settings=settings, now=NOW)
    with pytest.raises(NotFound):
        bookings.create(
            session, alice, asset.id, station.id, 999, NOW, NOW + timedelta(hours=1), settings=settings, now=NOW,
        )
    assert _asset_status(session, asset) == AssetStatus.AVAILABLE


def test_approve_and_decline(session, alice, master, station, asset, window, settings):
    booking = _book(session, alice, asset, station, window, settings)
    with pytest.raises(Forbidden):
        bookings.set_status(session, booking.id, BookingStatus.APPROVED, alice, settings=settings, now=NOW)
    with pytest.raises(Forbidden) as exc:
        bookings.set_status(session, booking.id, BookingStatus.DECLINED, alice, settings=settings, now=NOW)
    assert exc.value.reason == "Only staff can approve or decline bookings"
    declined = bookings.set_status(session, booking.id, BookingStatus.DECLINED, master, settings=settings, now=NOW)
    assert declined.status == BookingStatus.DECLINED
    assert _asset_status(session, asset) == AssetStatus.AVAILABLE

    with pytest.raises(Conflict):
        bookings.set_status(session, booking.id, BookingStatus.APPROVED, master, settings=settings, now=NOW)


def test_ongoing_only_through_ride_start(session, alice, master, station, asset, window, settings):
    booking = _book(session, alice, asset, station, window, settings)
    bookings.set_status(session, booking.id, BookingStatus.APPROVED, master, settings=settings, now=NOW)
    with pytest.raises(Conflict):
        bookings.set_status(session, booking.id, BookingStatus.ONGOING, master, settings=settings, now=NOW)


def test_customer_cannot_complete(session, alice, master, station, asset, window, settings):
    booking = _book(session, alice, asset, station, window, settings)
    with pytest.raises(Forbidden):
        bookings.set_status(session, booking.id, BookingStatus.COMPLETED, alice, settings=settings, now=NOW)


def test_cancel_releases_asset(session, alice, station, asset, window, settings):
    booking = _book(session, alice, asset, station, window, settings)
    cancelled = bookings.cancel(session, booking.id, alice, settings=settings, now=NOW)
    assert cancelled.status == BookingStatus.CANCELLED
    assert _asset_status(session, asset) == AssetStatus.AVAILABLE
    assert session.get(Station, station.id, populate_existing=True).available_count == 1
    # a fresh booking is possible again
    assert _book(session, alice, asset, station, window, settings).status == BookingStatus.PENDING


def test_only_owner_or_admin_cancels(session, alice, bob, master, admin, station, asset, window, settings):
    booking = _book(session, alice, asset, station, window, settings)
    with pytest.raises(Forbidden):
        bookings.cancel(session, booking.id, bob, settings=settings, now=NOW)
    with pytest.raises(Forbidden):
        bookings.cancel(session, booking.id, master, settings=settings, now=NOW)
    assert bookings.cancel(session, booking.id, admin, settings=settings, now=NOW).status == BookingStatus.CANCELLED


def test_late_cancellation_of_approved_booking_is_charged(session, alice, master, station, asset, settings):
    start = NOW + timedelta(minutes=10)
    booking = _book(session, alice, asset, station, (start, start + timedelta(hours=1)), settings)
    bookings.set_status(session, booking.id, BookingStatus.APPROVED, master, settings=settings, now=NOW)
    cancelled = bookings.cancel(session, booking.id, alice, settings=settings, now=NOW)
    assert cancelled.penalty_amount == 150
    assert cancelled.has_penalty
    penalty = session.exec(select(Penalty).where(Penalty.booking_id == booking.id)).one()
    assert penalty.reason == PenaltyReason.CANCELLATION


def test_pending_cancellation_is_free(session, alice, station, asset, settings):
    start = NOW + timedelta(minutes=3)
    booking = _book(session, alice, asset, station, (start, start + timedelta(hours=1)), settings)
    assert bookings.cancel(session, booking.id, alice, settings=settings, now=NOW).penalty_amount == 0


def test_staff_forcing_terminal_state_cancels_ride(session, alice, master, station, asset, window, settings):
    booking = _book(session, alice, asset, station, window, settings)
    bookings.set_status(session, booking.id, BookingStatus.APPROVED, master, settings=settings, now=NOW)
    ride = rides.start(session, booking.id, alice, *CENTER, now=NOW)
    forced = bookings.set_status(session, booking.id, BookingStatus.COMPLETED, master, settings=settings, now=NOW)
    assert forced.actual_end_time == NOW
    session.refresh(ride)
    assert ride.status == RideStatus.CANCELLED
    assert _asset_status(session, asset) == AssetStatus.AVAILABLE


def test_report_damage_with_severity(session, alice, master, station, asset, window, settings, notifier):
    booking = _book(session, alice, asset, station, window, settings)
    with pytest.raises(Forbidden):
        bookings.report_damage(session, booking.id, alice, "Scratched door")
    report = bookings.report_damage(
        session, booking.id, master, "Cracked bumper", ["https://img/1.jpg"], 3000,
        severity="high", settings=settings, notifier=notifier, now=NOW,
    )
    assert report.images == ["https://img/1.jpg"]
    booking = session.get(Booking, booking.id, populate_existing=True)
    assert booking.has_damage
    assert booking.penalty_amount == 1000
    assert booking.status == BookingStatus.PENDING
    assert notifier.sent[-1].recipient_id == alice.principal_id


def test_report_damage_without_severity_adds_no_penalty(session, alice, master, station, asset, window, settings):
    booking = _book(session, alice, asset, station, window, settings)
    bookings.report_damage(session, booking.id, master, "Dirty seats", settings=settings, now=NOW)
    booking = session.get(Booking, booking.id, populate_existing=True)
    assert booking.has_damage and not booking.has_penalty


def test_record_payment(session, alice, station, asset, window, settings):
    booking = _book(session, alice, asset, station, window, settings)
    failed = bookings.record_payment(session, booking.id, False, alice, now=NOW)
    assert failed.payment_status == "failed"
    paid = bookings.record_payment(session, booking.id, True, alice, now=NOW)
    assert (paid.payment_status, paid.paid_at) == ("completed", NOW)
    with pytest.raises(Conflict):
        bookings.record_payment(session, booking.id, True, alice, now=NOW)


def test_late_return_derived_values(session, alice, station, asset, window, settings):
    booking = _book(session, alice, asset, station, window, settings)
    assert not booking.is_late_return and booking.late_minutes == 0
    booking.actual_end_time = booking.end_time + timedelta(minutes=4, seconds=1)
    assert booking.is_late_return
    assert booking.late_minutes == 5


def test_station_master_sees_own_station_bookings(
    session, alice, bob, master, admin, station, other_station, asset, window, settings,
):
    elsewhere = registry.register_asset(
        session, registration_number="KA01EV0009", model="ZS EV", manufacturer="MG",
        station_id=other_station.id, now=NOW - timedelta(days=1),
    )
    session.commit()
    _book(session, alice, asset, station, window, settings)
    start, end = window
    bookings.create(
        session, bob, elsewhere.id, other_station.id, other_station.id, start, end, settings=settings, now=NOW,
    )
    assert bookings.list_bookings(session, admin)["total"] == 2
    mine = bookings.list_bookings(session, master)
    assert mine["total"] == 1
    assert mine["bookings"][0].customer_id == alice.principal_id
    with pytest.raises(Forbidden):
        bookings.list_bookings(session, alice)
    assert [b.customer_id for b in bookings.my_bookings(session, bob)] == [bob.principal_id]


def test_get_booking_visibility(session, alice, bob, station, asset, window, settings):
    booking = _book(session, alice, asset, station, window, settings)
    assert bookings.get_booking(session, booking.id, alice).id == booking.id
    with pytest.raises(Forbidden):
        bookings.get_booking(session, booking.id, bob)


def test_booking_statistics(session, alice, admin, station, asset, window, settings):
    _book(session, alice, asset, station, window, settings)
    stats = bookings.booking_statistics(session, admin, now=NOW)
    assert stats["total_bookings"] == 1
    assert stats["status_breakdown"]["pending"] == 1
    assert stats["daily_bookings"] == [{"date": NOW.date().isoformat(), "count": 1}]
