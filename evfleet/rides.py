"""Ride session: the in-motion part of an approved booking.

``start`` and ``end`` each run as one transaction spanning the ride, its
booking and the asset. ``end`` is where settlement happens: ride cost from
the booking's frozen pricing snapshot plus any late-return or parking
penalties.
"""
from __future__ import annotations
import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import geofence, penalties, pricing, registry
from . import permissions as can
from .bookings import lock_booking
from .config import Settings, get_settings
from .database import atomic
from .errors import Conflict, Forbidden, GeofenceViolation, NotFound, ValidationError
from .geo import distance_km
from .models import (
    Asset,
    BookingStatus,
    GeofenceOverride,
    GeofenceWatch,
    Penalty,
    PenaltyReason,
    Ride,
    RideIssue,
    RideStatus,
)
from .notifications import NotificationRequest, Notifier, for_staff
from .permissions import Principal

logger = logging.getLogger(__name__)


@dataclass
class RideSettlement:
    ride: Ride
    booking_status: str
    cost: float
    distance_km: float
    penalties: List[Penalty] = field(default_factory=list)
    override: Optional[GeofenceOverride] = None


def _lock_ride(session: Session, ride_id: int) -> Ride:
    ride = session.exec(select(Ride).where(Ride.id == ride_id).with_for_update()).one_or_none()
    if not ride:
        raise NotFound("Ride not found")
    return ride


def active_ride_of(session: Session, booking_id: int) -> Optional[Ride]:
    return session.exec(
        select(Ride).where(Ride.booking_id == booking_id, Ride.status == RideStatus.ACTIVE)
    ).first()


# ---------------- start / end ----------------
def start(
    session: Session,
    booking_id: int,
    actor: Principal,
    lon: float,
    lat: float,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Ride:
    now = now or datetime.utcnow()
    lon, lat = registry.require_point(lon, lat)

    with atomic(session):
        booking = lock_booking(session, booking_id)
        if not can.can_start_ride(actor, booking):
            raise Forbidden("Not authorized to start this ride")
        if active_ride_of(session, booking.id) is not None:
            raise Conflict("A ride is already active for this booking")
        if booking.status != BookingStatus.APPROVED:
            raise Conflict(f"Booking must be approved to start a ride (status: {booking.status})")

        registry.mark_in_use(session, booking.asset_id, now=now)
        registry.update_location(session, booking.asset_id, lon, lat, now, force=True)

        ride = Ride(
            booking_id=booking.id,
            customer_id=booking.customer_id,
            asset_id=booking.asset_id,
            start_time=now,
            start_lon=lon,
            start_lat=lat,
            created_at=now,
        )
        session.add(ride)
        try:
            session.flush()
        except IntegrityError:
            raise Conflict("A ride is already active for this booking") from None
        session.add(GeofenceWatch(ride_id=ride.id))

        booking.status = BookingStatus.ONGOING
        booking.last_known_lon, booking.last_known_lat, booking.last_known_at = lon, lat, now
        booking.updated_at = now
        session.add(booking)

    session.refresh(ride)
    logger.info("ride %s started for booking %s", ride.id, booking_id)
    if notifier:
        notifier.emit(NotificationRequest(
            recipient_id=ride.customer_id, type="success",
            message="Your ride has started", link=f"/rides/{ride.id}",
        ))
    return ride


def end(
    session: Session,
    ride_id: int,
    actor: Principal,
    lon: float,
    lat: float,
    override_reason: Optional[str] = None,
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> RideSettlement:
    """Close an active ride and settle its booking.

    The end point must lie inside the end station's geofence. Staff may
    close a ride elsewhere by giving an ``override_reason``; the override
    is recorded and the customer is charged for improper parking. Customers
    get the same ``GeofenceViolation`` whether or not they send a reason.

    The booking ends ``completed``, or ``penalized`` when settlement accrued
    a late-return or improper-parking charge.
    """
    settings = settings or get_settings()
    now = now or datetime.utcnow()
    lon, lat = registry.require_point(lon, lat)
    override_reason = (override_reason or "").strip() or None

    with atomic(session):
        ride = _lock_ride(session, ride_id)
        if not can.can_end_ride(actor, ride):
            raise Forbidden("Not authorized to end this ride")
        if ride.status != RideStatus.ACTIVE:
            raise Conflict(f"Ride is not active (status: {ride.status})")
        booking = lock_booking(session, ride.booking_id)
        station = registry.get_station(session, booking.end_station_id)
        fence = registry.station_geofence(station, settings)

        override = None
        from_center = fence.distance_from_center_m(lon, lat)
        if not fence.contains(lon, lat):
            outside_by = fence.distance_outside_m(lon, lat)
            if override_reason is None or not can.can_override_geofence(actor):
                raise GeofenceViolation(
                    f"Cannot end ride: still outside designated zone of {station.name} "
                    f"({from_center:.0f} m from the station, {outside_by:.0f} m outside)",
                    detail={"station_id": station.id, "distance_m": round(from_center, 1)},
                )
            override = GeofenceOverride(
                ride_id=ride.id, authorized_by=actor.principal_id,
                reason=override_reason, distance_m=round(from_center, 1), created_at=now,
            )
            session.add(override)

        distance = distance_km(ride.start_lat, ride.start_lon, lat, lon)
        cost = pricing.ride_cost(distance, booking.base_rate, booking.included_km, booking.extra_km_rate)

        ride.end_time = now
        ride.end_lon, ride.end_lat = lon, lat
        ride.distance_km = round(distance, 3)
        ride.cost = cost
        ride.status = RideStatus.COMPLETED
        session.add(ride)

        booking.actual_end_time = now
        booking.final_cost = cost
        booking.last_known_lon, booking.last_known_lat, booking.last_known_at = lon, lat, now
        booking.was_within_geofence = override is None
        booking.updated_at = now
        session.add(booking)
        session.flush()

        accrued = []
        late = booking.late_minutes
        if late > 0:
            amount = pricing.late_return_penalty(late, settings)
            if amount > 0:
                accrued.append(penalties.accrue(
                    session, booking.id, PenaltyReason.LATE_RETURN, amount,
                    description=f"Returned {late} minutes late", now=now,
                ))
        if override is not None:
            accrued.append(penalties.accrue(
                session, booking.id, PenaltyReason.IMPROPER_PARKING,
                pricing.improper_parking_penalty(from_center, settings),
                description=f"Parked {from_center:.0f} m from {station.name}: {override_reason}", now=now,
            ))

        booking.status = BookingStatus.PENALIZED if accrued else BookingStatus.COMPLETED
        session.add(booking)
        session.flush()

        if not registry.release(session, booking.asset_id, return_station_id=station.id, now=now):
            raise Conflict("The vehicle could not be returned to the station, try again")
        registry.update_location(session, booking.asset_id, lon, lat, now, force=True)

    session.refresh(ride)
    session.refresh(booking)
    logger.info(
        "ride %s ended: %.2f km, cost %.2f, booking %s %s",
        ride.id, ride.distance_km, cost, booking.id, booking.status,
    )
    if notifier:
        notifier.emit(NotificationRequest(
            recipient_id=ride.customer_id,
            type="warning" if accrued else "success",
            message=f"Ride completed. Cost: {cost:.2f}"
            + (f", penalties: {sum(p.amount for p in accrued):.2f}" if accrued else ""),
            link=f"/rides/{ride.id}",
        ))
    return RideSettlement(
        ride=ride, booking_status=booking.status, cost=cost, distance_km=ride.distance_km,
        penalties=accrued, override=override,
    )


# ---------------- in-ride events ----------------
def track(
    session: Session,
    ride_id: int,
    actor: Principal,
    lon: float,
    lat: float,
    timestamp: Optional[datetime] = None,
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
) -> Optional[Penalty]:
    """Push a location fix for an active ride.

    Updates the asset and booking positions and advances the out-of-zone
    monitor. Returns the geofence penalty if this fix triggered one.
    """
    settings = settings or get_settings()
    timestamp = timestamp or datetime.utcnow()
    lon, lat = registry.require_point(lon, lat)

    with atomic(session):
        ride = _lock_ride(session, ride_id)
        if not can.can_view_ride(actor, ride):
            raise Forbidden("Not authorized to track this ride")
        if ride.status != RideStatus.ACTIVE:
            raise Conflict("Only an active ride can be tracked")
        booking = lock_booking(session, ride.booking_id)

        registry.update_location(session, ride.asset_id, lon, lat, timestamp)
        if booking.last_known_at is None or booking.last_known_at <= timestamp:
            station = registry.get_station(session, booking.end_station_id)
            booking.last_known_lon, booking.last_known_lat, booking.last_known_at = lon, lat, timestamp
            booking.was_within_geofence = registry.station_geofence(station, settings).contains(lon, lat)
            session.add(booking)
            session.flush()
        penalty = geofence.evaluate(session, ride, booking, lon, lat, timestamp, settings)

    if penalty is not None:
        session.refresh(penalty)
        if notifier:
            notifier.emit(NotificationRequest(
                recipient_id=ride.customer_id, type="warning",
                message=f"You left the service area; a penalty of {penalty.amount:.2f} was added",
                link=f"/rides/{ride.id}",
            ))
    return penalty


def report_issue(
    session: Session,
    ride_id: int,
    actor: Principal,
    issue: str,
    details: str = "",
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> RideIssue:
    if not issue:
        raise ValidationError("Issue description is required")
    ride = session.get(Ride, ride_id)
    if not ride:
        raise NotFound("Ride not found")
    if not can.can_report_issue(actor, ride):
        raise Forbidden("Not authorized to report issues for this ride")

    with atomic(session):
        record = RideIssue(ride_id=ride.id, issue=issue, details=details or "", reported_at=now or datetime.utcnow())
        session.add(record)
    session.refresh(record)

    if notifier:
        notifier.emit_many(for_staff(
            session, "warning", f"Issue reported on ride {ride.id}: {issue}",
            link=f"/admin/rides/{ride.id}", description=details or None,
        ))
    return record


def rate(session: Session, ride_id: int, actor: Principal, rating: int, feedback: str = "") -> Ride:
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")
    with atomic(session):
        ride = _lock_ride(session, ride_id)
        if not can.can_rate(actor, ride):
            raise Forbidden("Not authorized to rate this ride")
        if ride.status != RideStatus.COMPLETED:
            raise Conflict("Only completed rides can be rated")
        if ride.rating is not None:
            raise Conflict("This ride has already been rated")
        ride.rating = rating
        ride.feedback = feedback or ""
        session.add(ride)
        session.flush()

        avg, count = session.exec(
            select(func.avg(Ride.rating), func.count(Ride.id))
            .where(Ride.asset_id == ride.asset_id, Ride.rating.is_not(None))
        ).one()
        asset = session.get(Asset, ride.asset_id)
        asset.rating = round(float(avg), 2)
        asset.rating_count = count
        session.add(asset)
    session.refresh(ride)
    return ride


# ---------------- queries ----------------
def get_ride(session: Session, ride_id: int, actor: Principal) -> Ride:
    ride = session.get(Ride, ride_id)
    if not ride:
        raise NotFound("Ride not found")
    if not can.can_view_ride(actor, ride):
        raise Forbidden("Not authorized to view this ride")
    return ride


def active_ride(session: Session, actor: Principal) -> Optional[Ride]:
    return session.exec(
        select(Ride).where(Ride.customer_id == actor.principal_id, Ride.status == RideStatus.ACTIVE)
    ).first()


def customer_active_ride(session: Session, actor: Principal, customer_id: int) -> Optional[Ride]:
    if not actor.is_staff:
        raise Forbidden("Not authorized")
    return active_ride(session, Principal(principal_id=customer_id))


def ride_issues(session: Session, ride_id: int, actor: Principal) -> List[RideIssue]:
    ride = get_ride(session, ride_id, actor)
    return list(session.exec(
        select(RideIssue).where(RideIssue.ride_id == ride.id).order_by(RideIssue.reported_at)
    ).all())


def overrides_for_ride(session: Session, ride_id: int, actor: Principal) -> List[GeofenceOverride]:
    if not actor.is_staff:
        raise Forbidden("Not authorized")
    return list(session.exec(
        select(GeofenceOverride).where(GeofenceOverride.ride_id == ride_id).order_by(GeofenceOverride.created_at)
    ).all())


def list_rides(
    session: Session,
    actor: Principal,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict:
    if not actor.is_staff:
        raise Forbidden("Not authorized")
    page = max(1, page)
    limit = max(1, min(limit, 100))
    stmt = select(Ride)
    if status:
        stmt = stmt.where(Ride.status == status)
    rows = session.exec(stmt.order_by(Ride.start_time.desc())).all()
    total = len(rows)
    return {
        "rides": list(rows[(page - 1) * limit: page * limit]),
        "page": page,
        "pages": math.ceil(total / limit),
        "total": total,
    }


def ride_history(session: Session, actor: Principal) -> List[Ride]:
    return list(session.exec(
        select(Ride)
        .where(Ride.customer_id == actor.principal_id, Ride.status != RideStatus.ACTIVE)
        .order_by(Ride.start_time.desc())
    ).all())


def ride_statistics(session: Session, actor: Principal) -> Dict:
    """Totals over the caller's completed rides; staff get the whole fleet."""
    stmt = select(Ride).where(Ride.status == RideStatus.COMPLETED)
    if not actor.is_staff:
        stmt = stmt.where(Ride.customer_id == actor.principal_id)
    rides = session.exec(stmt).all()
    total_minutes = sum((r.end_time - r.start_time).total_seconds() / 60 for r in rides if r.end_time)
    ratings = [r.rating for r in rides if r.rating is not None]
    return {
        "total_rides": len(rides),
        "total_distance_km": round(sum(r.distance_km for r in rides), 2),
        "total_cost": round(sum(r.cost for r in rides), 2),
        "total_minutes": round(total_minutes, 1),
        "average_rating": round(sum(ratings) / len(ratings), 2) if ratings else None,
        "rating_breakdown": dict(sorted(Counter(ratings).items())),
    }
