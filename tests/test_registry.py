from datetime import timedelta

import pytest

from evfleet import registry
from evfleet.database import atomic
from evfleet.errors import Conflict, NotFound, ValidationError
from evfleet.models import AssetStatus, Station

from conftest import CENTER, NOW, OTHER, offset_east


def _count(session, station_id):
    return session.get(Station, station_id, populate_existing=True).available_count


def test_register_bumps_station_counter(session, station, asset):
    assert asset.status == AssetStatus.AVAILABLE
    assert (asset.location_lon, asset.location_lat) == CENTER
    assert _count(session, station.id) == 1


def test_duplicate_registration_number(session, station, asset):
    with pytest.raises(Conflict):
        with atomic(session):
            registry.register_asset(
                session, registration_number="KA01EV0001", model="ZS EV", manufacturer="MG",
                station_id=station.id,
            )


def test_reserve_then_second_reserve_conflicts(session, station, asset):
    with atomic(session):
        reserved = registry.reserve(session, asset.id, now=NOW)
    assert reserved.status == AssetStatus.BOOKED
    assert _count(session, station.id) == 0

    with pytest.raises(Conflict) as exc:
        with atomic(session):
            registry.reserve(session, asset.id, now=NOW)
    assert "not available" in exc.value.reason
    assert _count(session, station.id) == 0


def test_reserve_unknown_asset(session):
    with pytest.raises(NotFound):
        registry.reserve(session, 999)


def test_release_is_idempotent(session, station, asset):
    with atomic(session):
        registry.reserve(session, asset.id, now=NOW)
    with atomic(session):
        assert registry.release(session, asset.id, now=NOW) is True
    first = (registry.get_asset(session, asset.id).status, _count(session, station.id))

    with atomic(session):
        assert registry.release(session, asset.id, now=NOW) is False
    second = (registry.get_asset(session, asset.id).status, _count(session, station.id))
    assert first == second == (AssetStatus.AVAILABLE, 1)


def test_release_to_other_station_moves_roster(session, station, other_station, asset):
    with atomic(session):
        registry.reserve(session, asset.id, now=NOW)
        registry.release(session, asset.id, return_station_id=other_station.id, now=NOW)
    assert registry.get_asset(session, asset.id).station_id == other_station.id
    assert _count(session, station.id) == 0
    assert _count(session, other_station.id) == 1
    assert [a.id for a in registry.roster(session, other_station.id)] == [asset.id]


def test_update_location_last_write_wins(session, asset):
    later, earlier = NOW + timedelta(minutes=5), NOW + timedelta(minutes=1)
    east = offset_east(CENTER, 100)
    assert registry.update_location(session, asset.id, *east, timestamp=later)
    assert not registry.update_location(session, asset.id, *OTHER, timestamp=earlier)
    session.commit()
    fresh = registry.get_asset(session, asset.id)
    assert (fresh.location_lon, fresh.location_lat) == pytest.approx(east)


def test_update_location_never_raises(session, asset):
    assert registry.update_location(session, asset.id, 500, 500, timestamp=NOW) is False
    assert registry.update_location(session, 12345, 77.0, 12.0, timestamp=NOW) is False


def test_record_telemetry_commits(session, asset):
    assert registry.record_telemetry(session, asset.id, *OTHER, timestamp=NOW, battery_level=42)
    session.expire_all()
    fresh = registry.get_asset(session, asset.id)
    assert fresh.battery_level == 42
    assert fresh.location_lon == pytest.approx(OTHER[0])


def test_maintenance_takes_asset_out_of_service(session, station, asset):
    with atomic(session):
        record = registry.record_maintenance(session, asset.id, "Brake pads", 1200, "Workshop A", now=NOW)
    assert record.id is not None
    assert registry.get_asset(session, asset.id).status == AssetStatus.MAINTENANCE
    assert _count(session, station.id) == 0
    assert [r.description for r in registry.maintenance_history(session, asset.id)] == ["Brake pads"]

    with atomic(session):
        registry.clear_maintenance(session, asset.id, now=NOW)
    assert registry.get_asset(session, asset.id).status == AssetStatus.AVAILABLE
    assert _count(session, station.id) == 1


def test_maintenance_rejected_while_in_use(session, asset):
    with atomic(session):
        registry.reserve(session, asset.id, now=NOW)
        registry.mark_in_use(session, asset.id, now=NOW)
    with pytest.raises(Conflict):
        with atomic(session):
            registry.record_maintenance(session, asset.id, "Tyres", 100, "Workshop A", now=NOW)
    assert registry.get_asset(session, asset.id).status == AssetStatus.IN_USE


def test_maintenance_validation(session, asset):
    with pytest.raises(ValidationError):
        registry.record_maintenance(session, asset.id, "", 10, "Workshop A")
    with pytest.raises(ValidationError):
        registry.record_maintenance(session, asset.id, "Tyres", -1, "Workshop A")


def test_charging_until_full(session, station, asset):
    with atomic(session):
        registry.start_charging(session, asset.id, now=NOW)
        registry.update_battery(session, asset.id, 60, now=NOW)
    assert registry.get_asset(session, asset.id).status == AssetStatus.CHARGING
    with atomic(session):
        charged = registry.update_battery(session, asset.id, 100, now=NOW)
    assert charged.status == AssetStatus.AVAILABLE
    assert _count(session, station.id) == 1
    with pytest.raises(ValidationError):
        registry.update_battery(session, asset.id, 101)


def test_transfer_and_remove(session, station, other_station, asset):
    with atomic(session):
        moved = registry.transfer_asset(session, asset.id, other_station.id, now=NOW)
    assert moved.station_id == other_station.id
    assert _count(session, station.id) == 0
    assert _count(session, other_station.id) == 1

    with atomic(session):
        registry.remove_asset(session, asset.id)
    assert _count(session, other_station.id) == 0
    with pytest.raises(NotFound):
        registry.get_asset(session, asset.id)


def test_reconcile_repairs_drift(session, station, asset):
    station.available_count = 7
    session.add(station)
    session.commit()
    with atomic(session):
        assert registry.reconcile_available_count(session, station.id) == 1
    assert _count(session, station.id) == 1


def test_nearest_stations_sorted_and_bounded(session, station, other_station):
    found = registry.nearest_stations(session, *offset_east(CENTER, 50), max_distance_m=10000)
    assert [s.id for s, _ in found] == [station.id, other_station.id]
    assert found[0][1] == pytest.approx(50, abs=1)
    assert [s.id for s, _ in registry.nearest_stations(session, *CENTER, max_distance_m=1000)] == [station.id]


def test_station_availability(session, station, asset):
    info = registry.station_availability(session, station.id)
    assert info["total"] == 1
    assert info["available"] == 1


def test_station_polygon_validation(session):
    with pytest.raises(ValidationError):
        registry.create_station(
            session, name="Bad", address="-", center_lon=0, center_lat=0, polygon=[[0, 0], [1, 1]],
        )
    st = registry.create_station(
        session, name="Square", address="-", center_lon=0.5, center_lat=0.5,
        polygon=[[0, 0], [1, 0], [1, 1], [0, 1]],
    )
    assert st.polygon[0] == st.polygon[-1]
    assert registry.station_geofence(st).contains(0.5, 0.5)
