import pytest

from evfleet.geo import (
    Geofence,
    build_regular_polygon,
    distance_km,
    distance_m,
    is_within_radius,
    point_in_polygon,
)

from conftest import CENTER, offset_east, offset_north

SQUARE = [(0, 0), (10, 0), (10, 10), (0, 10)]


def test_distance_same_point_is_zero():
    assert distance_km(12.97, 77.59, 12.97, 77.59) == 0


def test_distance_one_degree_latitude():
    assert distance_km(0, 0, 1, 0) == pytest.approx(111.195, abs=0.01)


def test_distance_m_takes_lon_lat_pairs():
    assert distance_m(CENTER, offset_north(CENTER, 500)) == pytest.approx(500, abs=0.5)


def test_is_within_radius():
    assert is_within_radius(CENTER, offset_east(CENTER, 250), 300)
    assert not is_within_radius(CENTER, offset_east(CENTER, 350), 300)


def test_point_in_polygon_open_and_closed_ring():
    assert point_in_polygon((5, 5), SQUARE)
    assert point_in_polygon((5, 5), SQUARE + [SQUARE[0]])
    assert not point_in_polygon((15, 5), SQUARE)


def test_degenerate_polygon_contains_nothing():
    assert not point_in_polygon((0, 0), [(0, 0), (1, 1)])
    assert not point_in_polygon((0.5, 0.5), [(0, 0), (1, 1), (0, 0)])


def test_regular_polygon_is_closed_and_sized():
    ring = build_regular_polygon(CENTER, 300, 32)
    assert len(ring) == 33
    assert ring[0] == ring[-1]
    for vertex in ring:
        assert distance_m(CENTER, vertex) == pytest.approx(300, rel=0.01)


def test_regular_polygon_needs_three_vertices():
    with pytest.raises(ValueError):
        build_regular_polygon(CENTER, 300, 2)


def test_geofence_from_radius():
    fence = Geofence.from_parts(CENTER[0], CENTER[1], 300)
    assert fence.contains(*offset_east(CENTER, 200))
    assert not fence.contains(*offset_east(CENTER, 500))
    assert fence.distance_outside_m(*offset_east(CENTER, 500)) == pytest.approx(200, abs=1)
    assert fence.distance_outside_m(*CENTER) == 0


def test_geofence_explicit_polygon_wins():
    fence = Geofence.from_parts(5, 5, 1, polygon=SQUARE)
    assert fence.contains(9, 9)
