"""Asset and station inventory.

Status changes are made with conditional UPDATE statements so that the
check and the set happen in one round trip; the station's cached
``available_count`` is adjusted in the same transaction with an SQL-side
increment. Nothing here commits: the caller owns the transaction (see
``evfleet.database.atomic``), except for ``record_telemetry`` which is
best-effort by contract.
"""
from __future__ import annotations
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from .config import Settings, get_settings
from .errors import Conflict, NotFound, ValidationError
from .geo import Geofence, distance_m
from .models import (
    Asset,
    AssetStatus,
    Booking,
    BookingStatus,
    MaintenanceRecord,
    Station,
)

logger = logging.getLogger(__name__)


# ---------------- helpers ----------------
def require_point(lon, lat) -> Tuple[float, float]:
    try:
        lon, lat = float(lon), float(lat)
    except (TypeError, ValueError):
        raise ValidationError("Longitude and latitude must be numbers") from None
    if not (-180 <= lon <= 180 and -90 <= lat <= 90):
        raise ValidationError(f"Coordinates out of range: [{lon}, {lat}]")
    return lon, lat


def require_polygon(polygon: Optional[Sequence[Sequence[float]]]) -> Optional[List[List[float]]]:
    if not polygon:
        return None
    ring = [list(require_point(p[0], p[1])) for p in polygon]
    if len({tuple(p) for p in ring}) < 3:
        raise ValidationError("A geofence polygon needs at least 3 distinct vertices")
    if ring[0] != ring[-1]:
        ring.append(list(ring[0]))
    return ring


def get_asset(session: Session, asset_id: int) -> Asset:
    asset = session.get(Asset, asset_id)
    if not asset:
        raise NotFound("Asset not found")
    return asset


def get_station(session: Session, station_id: int) -> Station:
    station = session.get(Station, station_id)
    if not station:
        raise NotFound("Station not found")
    return station


def station_geofence(station: Station, settings: Optional[Settings] = None) -> Geofence:
    settings = settings or get_settings()
    return Geofence.from_parts(
        station.center_lon,
        station.center_lat,
        station.radius_m,
        polygon=station.polygon,
        vertex_count=settings.geofence_polygon_vertices,
    )


def _reload(session: Session, model, pk):
    return session.get(model, pk, populate_existing=True)


def _set_status(session: Session, asset_id: int, expected: Sequence[str], now: datetime, **values) -> bool:
    stmt = (
        update(Asset)
        .where(Asset.id == asset_id, Asset.status.in_(list(expected)))
        .values(updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return session.exec(stmt).rowcount == 1


def _adjust_available(session: Session, station_id: int, delta: int) -> None:
    new_value = Station.available_count + delta
    if delta < 0:
        new_value = case((new_value >= 0, new_value), else_=0)
    session.exec(
        update(Station)
        .where(Station.id == station_id)
        .values(available_count=new_value)
        .execution_options(synchronize_session=False)
    )
    _reload(session, Station, station_id)


# ---------------- core operations ----------------
def reserve(session: Session, asset_id: int, now: Optional[datetime] = None) -> Asset:
    """available -> booked, or ``Conflict`` if somebody got there first."""
    now = now or datetime.utcnow()
    asset = get_asset(session, asset_id)
    if not _set_status(session, asset_id, [AssetStatus.AVAILABLE], now, status=AssetStatus.BOOKED):
        asset = _reload(session, Asset, asset_id)
        raise Conflict(
            f"Asset {asset.registration_number} is not available for booking (status: {asset.status})",
            detail={"asset_id": asset_id, "status": asset.status},
        )
    _adjust_available(session, asset.station_id, -1)
    logger.info("asset %s reserved", asset_id)
    return _reload(session, Asset, asset_id)


def release(
    session: Session,
    asset_id: int,
    return_station_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> bool:
    """booked/in-use -> available. Calling it on any other status is a no-op.

    With ``return_station_id`` the asset also joins that station's roster.
    Returns True when the status actually changed.
    """
    now = now or datetime.utcnow()
    asset = get_asset(session, asset_id)
    station_id = return_station_id or asset.station_id
    if return_station_id is not None:
        get_station(session, return_station_id)

    changed = _set_status(
        session, asset_id, AssetStatus.RESERVED, now,
        status=AssetStatus.AVAILABLE, station_id=station_id,
    )
    if not changed:
        logger.debug("release of asset %s ignored (status %s)", asset_id, asset.status)
        return False
    _adjust_available(session, station_id, +1)
    _reload(session, Asset, asset_id)
    logger.info("asset %s released to station %s", asset_id, station_id)
    return True


def mark_in_use(session: Session, asset_id: int, now: Optional[datetime] = None) -> Asset:
    """booked -> in-use when a ride starts."""
    now = now or datetime.utcnow()
    get_asset(session, asset_id)
    if not _set_status(session, asset_id, [AssetStatus.BOOKED], now, status=AssetStatus.IN_USE):
        asset = _reload(session, Asset, asset_id)
        if asset.status == AssetStatus.MAINTENANCE:
            raise Conflict("This vehicle is under maintenance and cannot be used right now")
        raise Conflict(f"This vehicle is not available for use (status: {asset.status})")
    return _reload(session, Asset, asset_id)


def update_location(
    session: Session,
    asset_id: int,
    lon: float,
    lat: float,
    timestamp: Optional[datetime] = None,
    force: bool = False,
) -> bool:
    """Overwrite the last known location; older fixes than the stored one lose.

    ``force`` skips the age check: ride start and end always own the
    position. Never raises: telemetry is best-effort. Returns whether the
    fix was kept.
    """
    timestamp = timestamp or datetime.utcnow()
    try:
        lon, lat = require_point(lon, lat)
    except ValidationError as exc:
        logger.warning("dropping location fix for asset %s: %s", asset_id, exc.reason)
        return False
    stmt = update(Asset).where(Asset.id == asset_id)
    if not force:
        stmt = stmt.where(Asset.location_at <= timestamp)
    result = session.exec(
        stmt
        .values(location_lon=lon, location_lat=lat, location_at=timestamp)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.debug("stale or unknown location fix for asset %s", asset_id)
        return False
    _reload(session, Asset, asset_id)
    return True


def record_telemetry(session: Session, asset_id: int, lon: float, lat: float,
                     timestamp: Optional[datetime] = None, battery_level: Optional[int] = None) -> bool:
    """Standalone telemetry push: commits on its own and never raises."""
    try:
        kept = update_location(session, asset_id, lon, lat, timestamp)
        if battery_level is not None and 0 <= battery_level <= 100:
            session.exec(
                update(Asset)
                .where(Asset.id == asset_id)
                .values(battery_level=int(battery_level))
                .execution_options(synchronize_session=False)
            )
        session.commit()
        return kept
    except SQLAlchemyError:
        session.rollback()
        logger.warning("telemetry for asset %s could not be stored", asset_id, exc_info=True)
        return False


def record_maintenance(
    session: Session,
    asset_id: int,
    description: str,
    cost: float,
    performed_by: str,
    now: Optional[datetime] = None,
) -> MaintenanceRecord:
    """Append a history record and take the asset out of service."""
    now = now or datetime.utcnow()
    if not description or not performed_by:
        raise ValidationError("All fields are required for maintenance record")
    if cost is None or cost < 0:
        raise ValidationError("Maintenance cost must be a non-negative number")
    asset = get_asset(session, asset_id)

    if _set_status(session, asset_id, [AssetStatus.AVAILABLE], now, status=AssetStatus.MAINTENANCE):
        _adjust_available(session, asset.station_id, -1)
    elif not _set_status(
        session, asset_id,
        [AssetStatus.BOOKED, AssetStatus.CHARGING, AssetStatus.MAINTENANCE], now,
        status=AssetStatus.MAINTENANCE,
    ):
        raise Conflict("Cannot start maintenance while the vehicle is in use")

    record = MaintenanceRecord(
        asset_id=asset_id, date=now, description=description, cost=cost, performed_by=performed_by,
    )
    session.add(record)
    session.flush()
    _reload(session, Asset, asset_id)
    logger.info("asset %s taken into maintenance: %s", asset_id, description)
    return record


def open_booking_for(session: Session, asset_id: int) -> Optional[Booking]:
    return session.exec(
        select(Booking).where(Booking.asset_id == asset_id, Booking.status.in_(BookingStatus.OPEN))
    ).first()


def clear_maintenance(session: Session, asset_id: int, now: Optional[datetime] = None) -> Asset:
    """Return a maintained asset to service.

    It goes back to ``booked`` when an open booking still holds it, so the
    booking/asset coupling survives the maintenance window.
    """
    now = now or datetime.utcnow()
    asset = get_asset(session, asset_id)
    held = open_booking_for(session, asset_id) is not None
    target = AssetStatus.BOOKED if held else AssetStatus.AVAILABLE
    if not _set_status(session, asset_id, [AssetStatus.MAINTENANCE], now, status=target):
        raise Conflict(f"Asset is not under maintenance (status: {asset.status})")
    if target == AssetStatus.AVAILABLE:
        _adjust_available(session, asset.station_id, +1)
    return _reload(session, Asset, asset_id)


def start_charging(session: Session, asset_id: int, now: Optional[datetime] = None) -> Asset:
    now = now or datetime.utcnow()
    asset = get_asset(session, asset_id)
    if not _set_status(session, asset_id, [AssetStatus.AVAILABLE], now, status=AssetStatus.CHARGING):
        raise Conflict(f"Only an available vehicle can be put on charge (status: {asset.status})")
    _adjust_available(session, asset.station_id, -1)
    return _reload(session, Asset, asset_id)


def update_battery(session: Session, asset_id: int, level: int, now: Optional[datetime] = None) -> Asset:
    now = now or datetime.utcnow()
    if level is None or not 0 <= level <= 100:
        raise ValidationError("Battery level must be between 0 and 100")
    asset = get_asset(session, asset_id)
    session.exec(
        update(Asset)
        .where(Asset.id == asset_id)
        .values(battery_level=int(level), updated_at=now)
        .execution_options(synchronize_session=False)
    )
    # fully charged vehicles go back on the shelf
    if level >= 100 and _set_status(session, asset_id, [AssetStatus.CHARGING], now, status=AssetStatus.AVAILABLE):
        _adjust_available(session, asset.station_id, +1)
    return _reload(session, Asset, asset_id)


def register_asset(
    session: Session,
    *,
    registration_number: str,
    model: str,
    manufacturer: str,
    station_id: int,
    price_per_hour: float = 50.0,
    battery_level: int = 100,
    status: str = AssetStatus.AVAILABLE,
    lon: Optional[float] = None,
    lat: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Asset:
    now = now or datetime.utcnow()
    if status not in (AssetStatus.AVAILABLE, AssetStatus.CHARGING, AssetStatus.MAINTENANCE):
        raise ValidationError(f"A new asset cannot start as {status!r}")
    if price_per_hour < 0:
        raise ValidationError("Price per hour must be non-negative")
    if not 0 <= battery_level <= 100:
        raise ValidationError("Battery level must be between 0 and 100")
    station = get_station(session, station_id)
    if lon is None or lat is None:
        lon, lat = station.center_lon, station.center_lat
    lon, lat = require_point(lon, lat)

    asset = Asset(
        registration_number=registration_number.strip(),
        model=model,
        manufacturer=manufacturer,
        station_id=station_id,
        status=status,
        battery_level=battery_level,
        price_per_hour=price_per_hour,
        location_lon=lon,
        location_lat=lat,
        location_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(asset)
    try:
        session.flush()
    except IntegrityError:
        raise Conflict(f"Registration number {registration_number} already exists") from None
    if status == AssetStatus.AVAILABLE:
        _adjust_available(session, station_id, +1)
    logger.info("asset %s registered at station %s", asset.id, station_id)
    return asset


def transfer_asset(session: Session, asset_id: int, new_station_id: int, now: Optional[datetime] = None) -> Asset:
    """Move an idle asset to another station's roster."""
    now = now or datetime.utcnow()
    asset = get_asset(session, asset_id)
    get_station(session, new_station_id)
    if asset.status in AssetStatus.RESERVED:
        raise Conflict("Cannot move a vehicle that is booked or in use")
    old_station_id, observed = asset.station_id, asset.status
    if old_station_id == new_station_id:
        return asset
    if not _set_status(session, asset_id, [observed], now, station_id=new_station_id):
        raise Conflict("Vehicle status changed while moving it, retry")
    if observed == AssetStatus.AVAILABLE:
        _adjust_available(session, old_station_id, -1)
        _adjust_available(session, new_station_id, +1)
    return _reload(session, Asset, asset_id)


def remove_asset(session: Session, asset_id: int) -> None:
    asset = get_asset(session, asset_id)
    if asset.status in AssetStatus.RESERVED:
        raise Conflict("Cannot delete a vehicle that is currently booked or in use")
    has_history = session.exec(select(Booking.id).where(Booking.asset_id == asset_id)).first()
    if has_history is not None:
        raise Conflict("Cannot delete a vehicle with booking history; take it into maintenance instead")
    for record in session.exec(select(MaintenanceRecord).where(MaintenanceRecord.asset_id == asset_id)).all():
        session.delete(record)
    if asset.status == AssetStatus.AVAILABLE:
        _adjust_available(session, asset.station_id, -1)
    session.delete(asset)
    session.flush()


def list_assets(session: Session, station_id: Optional[int] = None, status: Optional[str] = None) -> List[Asset]:
    stmt = select(Asset)
    if station_id is not None:
        stmt = stmt.where(Asset.station_id == station_id)
    if status is not None:
        stmt = stmt.where(Asset.status == status)
    return list(session.exec(stmt.order_by(Asset.id)).all())


def maintenance_history(session: Session, asset_id: int) -> List[MaintenanceRecord]:
    get_asset(session, asset_id)
    return list(session.exec(
        select(MaintenanceRecord).where(MaintenanceRecord.asset_id == asset_id).order_by(MaintenanceRecord.date)
    ).all())


# ---------------- stations ----------------
def create_station(
    session: Session,
    *,
    name: str,
    address: str,
    center_lon: float,
    center_lat: float,
    radius_m: float = 100.0,
    polygon: Optional[Sequence[Sequence[float]]] = None,
    station_master_id: Optional[int] = None,
    opening: str = "09:00",
    closing: str = "18:00",
) -> Station:
    center_lon, center_lat = require_point(center_lon, center_lat)
    if radius_m is None or radius_m <= 0:
        raise ValidationError("Geofence radius must be positive")
    station = Station(
        name=name,
        address=address,
        center_lon=center_lon,
        center_lat=center_lat,
        radius_m=radius_m,
        polygon=require_polygon(polygon),
        station_master_id=station_master_id,
        opening=opening,
        closing=closing,
    )
    session.add(station)
    session.flush()
    return station


def update_station(session: Session, station_id: int, changes: Dict, now: Optional[datetime] = None) -> Station:
    station = get_station(session, station_id)
    changes = dict(changes)
    changes.pop("available_count", None)
    if "center_lon" in changes or "center_lat" in changes:
        changes["center_lon"], changes["center_lat"] = require_point(
            changes.get("center_lon", station.center_lon), changes.get("center_lat", station.center_lat),
        )
    if "radius_m" in changes and (changes["radius_m"] is None or changes["radius_m"] <= 0):
        raise ValidationError("Geofence radius must be positive")
    if "polygon" in changes:
        changes["polygon"] = require_polygon(changes["polygon"])
    if changes.get("status") not in (None, "active", "inactive", "maintenance"):
        raise ValidationError(f"Unknown station status {changes['status']!r}")
    for k, v in changes.items():
        setattr(station, k, v)
    station.updated_at = now or datetime.utcnow()
    session.add(station)
    session.flush()
    return station


def list_stations(session: Session, status: Optional[str] = None) -> List[Station]:
    stmt = select(Station)
    if status:
        stmt = stmt.where(Station.status == status)
    return list(session.exec(stmt.order_by(Station.id)).all())


def nearest_stations(
    session: Session, lon: float, lat: float, max_distance_m: float = 10000
) -> List[Tuple[Station, float]]:
    lon, lat = require_point(lon, lat)
    if max_distance_m is None or max_distance_m <= 0:
        raise ValidationError("maxDistance must be positive")
    found = []
    for station in list_stations(session, status="active"):
        d = distance_m((station.center_lon, station.center_lat), (lon, lat))
        if d <= max_distance_m:
            found.append((station, d))
    found.sort(key=lambda pair: pair[1])
    return found


def roster(session: Session, station_id: int) -> List[Asset]:
    return list_assets(session, station_id=station_id)


def station_availability(session: Session, station_id: int) -> Dict:
    get_station(session, station_id)
    assets = roster(session, station_id)
    return {
        "station_id": station_id,
        "total": len(assets),
        "available": sum(1 for a in assets if a.status == AssetStatus.AVAILABLE),
        "assets": assets,
    }


def reconcile_available_count(session: Session, station_id: int) -> int:
    """Recount available roster members and repair the cached counter."""
    station = get_station(session, station_id)
    actual = session.exec(
        select(func.count(Asset.id)).where(Asset.station_id == station_id, Asset.status == AssetStatus.AVAILABLE)
    ).one()
    if station.available_count != actual:
        logger.info(
            "fixed available count for station %s: %s -> %s", station.name, station.available_count, actual,
        )
        station.available_count = actual
        session.add(station)
        session.flush()
    return actual
