"""Out-of-zone monitor for active rides.

The debounce timer is a row (``GeofenceWatch``) rather than a live timer:
every tracked fix advances it with the fix's own timestamp, so a ride that
re-enters the zone simply clears ``outside_since`` and no late penalty can
fire afterwards.
"""
from __future__ import annotations
import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlmodel import Session, select

from . import penalties, pricing
from . import permissions as can
from .config import Settings, get_settings
from .errors import Forbidden, NotFound, ValidationError
from .geo import Geofence
from .models import Booking, GeofenceWatch, Penalty, PenaltyReason, Ride, ServiceZone
from .permissions import Principal
from .registry import require_point, require_polygon

logger = logging.getLogger(__name__)


# ---------------- service zones ----------------
def zone_geofence(zone: ServiceZone, settings: Optional[Settings] = None) -> Geofence:
    settings = settings or get_settings()
    return Geofence.from_parts(
        zone.center_lon, zone.center_lat, zone.radius_m,
        polygon=zone.polygon, vertex_count=settings.geofence_polygon_vertices,
    )


def service_zones(session: Session, active_only: bool = True) -> List[ServiceZone]:
    stmt = select(ServiceZone)
    if active_only:
        stmt = stmt.where(ServiceZone.active == True)  # noqa: E712
    return list(session.exec(stmt.order_by(ServiceZone.id)).all())


def in_service_area(fences: Sequence[Geofence], lon: float, lat: float) -> Tuple[bool, float]:
    """(inside any fence, meters outside the nearest one).

    No fences at all means no restriction.
    """
    if not fences:
        return True, 0.0
    if any(f.contains(lon, lat) for f in fences):
        return True, 0.0
    return False, min(f.distance_outside_m(lon, lat) for f in fences)


def create_zone(
    session: Session,
    actor: Principal,
    *,
    name: str,
    center_lon: float,
    center_lat: float,
    radius_m: float,
    polygon: Optional[Sequence[Sequence[float]]] = None,
) -> ServiceZone:
    if not can.can_manage_stations(actor):
        raise Forbidden("Only an admin can manage service zones")
    if not name:
        raise ValidationError("Zone name is required")
    center_lon, center_lat = require_point(center_lon, center_lat)
    if radius_m is None or radius_m <= 0:
        raise ValidationError("Zone radius must be positive")
    zone = ServiceZone(
        name=name, center_lon=center_lon, center_lat=center_lat,
        radius_m=radius_m, polygon=require_polygon(polygon),
    )
    session.add(zone)
    session.commit()
    session.refresh(zone)
    return zone


def set_zone_active(session: Session, actor: Principal, zone_id: int, active: bool) -> ServiceZone:
    if not can.can_manage_stations(actor):
        raise Forbidden("Only an admin can manage service zones")
    zone = session.get(ServiceZone, zone_id)
    if not zone:
        raise NotFound("Service zone not found")
    zone.active = active
    session.add(zone)
    session.commit()
    session.refresh(zone)
    return zone


# ---------------- debounce ----------------
def advance(watch: GeofenceWatch, inside: bool, now: datetime, threshold_minutes: float) -> Optional[float]:
    """Feed one fix into the watch.

    Returns the out-of-zone duration in minutes when this fix is the one
    that pushes the current excursion past the threshold, else None. Each
    excursion fires at most once; fixes older than the last one seen are
    ignored.
    """
    if watch.last_seen_at is not None and now < watch.last_seen_at:
        return None
    watch.last_seen_at = now

    if inside:
        watch.outside_since = None
        watch.last_inside = True
        watch.violation_accrued = False
        return None

    if watch.last_inside or watch.outside_since is None:
        watch.outside_since = now
        watch.last_inside = False
        return None

    minutes = (now - watch.outside_since).total_seconds() / 60
    if minutes > threshold_minutes and not watch.violation_accrued:
        watch.violation_accrued = True
        watch.violations += 1
        return minutes
    return None


def watch_for(session: Session, ride_id: int) -> GeofenceWatch:
    watch = session.exec(
        select(GeofenceWatch).where(GeofenceWatch.ride_id == ride_id).with_for_update()
    ).one_or_none()
    if watch is None:
        watch = GeofenceWatch(ride_id=ride_id)
        session.add(watch)
        session.flush()
    return watch


def evaluate(
    session: Session,
    ride: Ride,
    booking: Booking,
    lon: float,
    lat: float,
    now: datetime,
    settings: Optional[Settings] = None,
) -> Optional[Penalty]:
    """Advance the ride's watch and accrue a violation when it fires.

    Runs inside the caller's transaction.
    """
    settings = settings or get_settings()
    fences = [zone_geofence(z, settings) for z in service_zones(session)]
    inside, outside_by = in_service_area(fences, lon, lat)

    watch = watch_for(session, ride.id)
    minutes = advance(watch, inside, now, settings.geofence_violation_threshold_minutes)
    session.add(watch)
    session.flush()
    if minutes is None:
        return None

    amount = pricing.geofence_violation_penalty(minutes, outside_by, settings)
    logger.info("ride %s outside service area for %.1f min (%.0f m)", ride.id, minutes, outside_by)
    return penalties.accrue(
        session, booking.id, PenaltyReason.GEOFENCE_VIOLATION, amount,
        description=f"Outside the service area for {minutes:.0f} minutes, {outside_by:.0f} m from the boundary",
        now=now,
    )
