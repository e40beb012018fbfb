"""Distance and containment primitives.

Coordinates travel as ``(lon, lat)`` pairs everywhere except in
``distance_km``, which keeps the conventional ``lat1, lon1, lat2, lon2``
argument order.
"""
from __future__ import annotations
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

EARTH_RADIUS_KM = 6371.0
# meters spanned by one degree of latitude on the same sphere haversine uses
METERS_PER_DEGREE = EARTH_RADIUS_KM * 1000 * math.pi / 180

Point = Tuple[float, float]
Ring = List[Point]


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers (haversine)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_m(a: Point, b: Point) -> float:
    """Distance in meters between two ``(lon, lat)`` points."""
    return distance_km(a[1], a[0], b[1], b[0]) * 1000


def is_within_radius(center: Point, point: Point, radius_m: float) -> bool:
    return distance_m(center, point) <= radius_m


def _distinct_vertices(polygon: Sequence[Point]) -> Ring:
    ring = [(float(p[0]), float(p[1])) for p in polygon]
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring = ring[:-1]
    return ring


def point_in_polygon(point: Point, polygon: Sequence[Point]) -> bool:
    """Ray-casting containment test over a ring of ``(lon, lat)`` vertices.

    The ring may or may not repeat its first vertex at the end. Rings with
    fewer than three distinct vertices contain nothing.
    """
    ring = _distinct_vertices(polygon)
    if len(set(ring)) < 3:
        return False

    x, y = point
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i
    return inside


def build_regular_polygon(center: Point, radius_m: float, vertex_count: int = 32) -> Ring:
    """Approximate a circle of ``radius_m`` around ``center`` as a closed N-gon."""
    if vertex_count < 3:
        raise ValueError("a polygon needs at least 3 vertices")
    lon, lat = center
    lat_step = radius_m / METERS_PER_DEGREE
    # a degree of longitude shrinks with cos(latitude)
    lon_step = radius_m / (METERS_PER_DEGREE * math.cos(math.radians(lat)))

    ring: Ring = []
    for i in range(vertex_count):
        angle = 2 * math.pi * i / vertex_count
        ring.append((lon + lon_step * math.cos(angle), lat + lat_step * math.sin(angle)))
    ring.append(ring[0])
    return ring


@dataclass(frozen=True)
class Geofence:
    """A station or service-zone boundary.

    Built from a center and radius, an explicit polygon, or both. When only
    the radius is known the boundary is approximated by a regular polygon
    before any containment test.
    """

    center: Point
    radius_m: float
    polygon: Optional[Tuple[Point, ...]] = None
    vertex_count: int = 32

    @classmethod
    def from_parts(
        cls,
        center_lon: float,
        center_lat: float,
        radius_m: float,
        polygon: Optional[Sequence[Sequence[float]]] = None,
        vertex_count: int = 32,
    ) -> "Geofence":
        ring = tuple((float(p[0]), float(p[1])) for p in polygon) if polygon else None
        return cls(center=(center_lon, center_lat), radius_m=radius_m, polygon=ring, vertex_count=vertex_count)

    def ring(self) -> Ring:
        if self.polygon:
            return list(self.polygon)
        return build_regular_polygon(self.center, self.radius_m, self.vertex_count)

    def contains(self, lon: float, lat: float) -> bool:
        return point_in_polygon((lon, lat), self.ring())

    def distance_from_center_m(self, lon: float, lat: float) -> float:
        return distance_m(self.center, (lon, lat))

    def distance_outside_m(self, lon: float, lat: float) -> float:
        if self.contains(lon, lat):
            return 0.0
        return max(0.0, self.distance_from_center_m(lon, lat) - self.radius_m)
