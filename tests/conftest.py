import math
from datetime import datetime, timedelta

import pytest
from sqlmodel import Session

from evfleet import registry
from evfleet.config import Settings
from evfleet.database import atomic, init_db, make_engine
from evfleet.geo import METERS_PER_DEGREE
from evfleet.models import Role, User
from evfleet.notifications import MemoryNotifier
from evfleet.permissions import Principal

NOW = datetime(2025, 3, 1, 9, 0, 0)

# MG Road, Bengaluru and a second station ~5 km north-east
CENTER = (77.5946, 12.9716)
OTHER = (77.6360, 12.9960)


def offset_east(point, meters):
    """A point ``meters`` due east of ``point``."""
    lon, lat = point
    return (lon + meters / (METERS_PER_DEGREE * math.cos(math.radians(lat))), lat)


def offset_north(point, meters):
    lon, lat = point
    return (lon, lat + meters / METERS_PER_DEGREE)


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        allowed_origins=[],
        log_level="INFO",
        geofence_polygon_vertices=32,
        geofence_violation_threshold_minutes=10,
        included_km=10,
        extra_km_rate=5,
        damage_penalty_base=500,
        cancellation_penalty_base=100,
        improper_parking_penalty_base=200,
        geofence_penalty_base=150,
        late_penalty_type="per_minute",
        late_penalty_rate=2,
        late_penalty_max_minutes=7 * 24 * 60,
        cancellation_window_minutes=30,
    )


@pytest.fixture
def notifier():
    return MemoryNotifier()


def _user(session, uid, role, name):
    session.add(User(id=uid, name=name, email=f"{name.lower()}@example.com", role=role))
    session.commit()
    return Principal(principal_id=uid, role=role)


@pytest.fixture
def admin(session):
    return _user(session, 1, Role.ADMIN, "Admin")


@pytest.fixture
def master(session):
    return _user(session, 2, Role.STATION_MASTER, "Master")


@pytest.fixture
def alice(session):
    return _user(session, 10, Role.CUSTOMER, "Alice")


@pytest.fixture
def bob(session):
    return _user(session, 11, Role.CUSTOMER, "Bob")


@pytest.fixture
def station(session, master):
    with atomic(session):
        st = registry.create_station(
            session, name="MG Road", address="MG Road, Bengaluru",
            center_lon=CENTER[0], center_lat=CENTER[1], radius_m=300, station_master_id=master.principal_id,
        )
    return st


@pytest.fixture
def other_station(session):
    with atomic(session):
        st = registry.create_station(
            session, name="Indiranagar", address="100ft Road",
            center_lon=OTHER[0], center_lat=OTHER[1], radius_m=300,
        )
    return st


@pytest.fixture
def asset(session, station):
    with atomic(session):
        a = registry.register_asset(
            session, registration_number="KA01EV0001", model="Nexon EV", manufacturer="Tata",
            station_id=station.id, price_per_hour=50, now=NOW - timedelta(days=1),
        )
    return a


@pytest.fixture
def window():
    return NOW + timedelta(minutes=60), NOW + timedelta(hours=3)
