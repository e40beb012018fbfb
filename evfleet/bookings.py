"""Booking lifecycle: the reservation state machine.

    pending  -> approved | declined | cancelled
    approved -> ongoing (ride start only) | cancelled
    ongoing  -> completed | penalized

Leaving an open state always reconciles the asset in the same
transaction; if that fails the booking transition is rolled back with it.
"""
from __future__ import annotations
import logging
import math
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import penalties, pricing, registry
from . import permissions as can
from .config import Settings, get_settings
from .database import atomic
from .errors import Conflict, Forbidden, NotFound, ValidationError
from .models import (
    Booking,
    BookingStatus,
    DamageReport,
    PaymentStatus,
    PenaltyReason,
    Ride,
    RideStatus,
    Station,
)
from .notifications import NotificationRequest, Notifier, for_staff
from .permissions import Principal

logger = logging.getLogger(__name__)

TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.APPROVED, BookingStatus.DECLINED, BookingStatus.CANCELLED},
    BookingStatus.APPROVED: {BookingStatus.ONGOING, BookingStatus.CANCELLED},
    BookingStatus.ONGOING: {BookingStatus.COMPLETED, BookingStatus.PENALIZED},
}


def _emit(notifier: Optional[Notifier], requests: Sequence[NotificationRequest]) -> None:
    if notifier:
        notifier.emit_many(requests)


def lock_booking(session: Session, booking_id: int) -> Booking:
    booking = session.exec(
        select(Booking).where(Booking.id == booking_id).with_for_update()
    ).one_or_none()
    if not booking:
        raise NotFound("Booking not found")
    return booking


def open_booking_of(session: Session, customer_id: int) -> Optional[Booking]:
    return session.exec(
        select(Booking).where(Booking.customer_id == customer_id, Booking.status.in_(BookingStatus.OPEN))
    ).first()


# ---------------- create ----------------
def create(
    session: Session,
    actor: Principal,
    asset_id: int,
    start_station_id: int,
    end_station_id: int,
    start_time: datetime,
    end_time: datetime,
    total_cost: Optional[float] = None,
    booking_type: str = "immediate",
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Booking:
    settings = settings or get_settings()
    now = now or datetime.utcnow()
    if not asset_id or not start_station_id or not end_station_id or not start_time or not end_time:
        raise ValidationError("Please provide all required fields")
    if end_time <= start_time:
        raise ValidationError("End time must be after start time")
    duration_hours = (end_time - start_time).total_seconds() / 3600
    if booking_type not in ("immediate", "scheduled"):
        raise ValidationError(f"Unknown booking type {booking_type!r}")
    if total_cost is not None and total_cost < 0:
        raise ValidationError("Total cost must be non-negative")

    with atomic(session):
        asset = registry.get_asset(session, asset_id)
        if not session.get(Station, start_station_id) or not session.get(Station, end_station_id):
            raise NotFound("One or both stations not found")
        if open_booking_of(session, actor.principal_id):
            raise Conflict("You already have an active booking")

        # check-and-set on the asset; loses cleanly to a concurrent booking
        registry.reserve(session, asset_id, now=now)

        cost = total_cost if total_cost is not None else pricing.booking_cost(
            asset.price_per_hour, duration_hours
        )
        booking = Booking(
            customer_id=actor.principal_id,
            asset_id=asset_id,
            start_station_id=start_station_id,
            end_station_id=end_station_id,
            start_time=start_time,
            end_time=end_time,
            duration_hours=round(duration_hours, 4),
            booking_type=booking_type,
            total_cost=cost,
            base_rate=cost,
            included_km=settings.included_km,
            extra_km_rate=settings.extra_km_rate,
            created_at=now,
            updated_at=now,
        )
        session.add(booking)
        try:
            session.flush()
        except IntegrityError as exc:
            # the partial unique indexes caught a concurrent insert
            if "customer" in str(exc.orig):
                raise Conflict("You already have an active booking") from None
            raise Conflict("This vehicle is not available for booking") from None

    session.refresh(booking)
    logger.info("booking %s created by %s for asset %s", booking.id, actor.principal_id, asset_id)
    _emit(notifier, [
        NotificationRequest(
            recipient_id=booking.customer_id, type="info",
            message="Your booking request has been received", link=f"/bookings/{booking.id}",
        ),
        *for_staff(session, "info", "New booking awaiting approval", link=f"/admin/bookings/{booking.id}"),
    ])
    return booking


# ---------------- transitions ----------------
def _close(
    session: Session,
    booking: Booking,
    new_status: str,
    now: datetime,
    return_station_id: Optional[int] = None,
) -> None:
    """Move an open booking into a terminal state and reconcile its asset."""
    was = booking.status
    booking.status = new_status
    booking.updated_at = now
    if was == BookingStatus.ONGOING:
        for ride in session.exec(
            select(Ride).where(Ride.booking_id == booking.id, Ride.status == RideStatus.ACTIVE)
        ).all():
            ride.status = RideStatus.CANCELLED
            ride.end_time = now
            session.add(ride)
        if booking.actual_end_time is None:
            booking.actual_end_time = now
    session.add(booking)
    session.flush()
    registry.release(session, booking.asset_id, return_station_id=return_station_id, now=now)


def _cancellation_charge(booking: Booking, actor: Principal, now: datetime, settings: Settings) -> float:
    # only a customer walking away from an approved booking pays
    if not can.owns(actor, booking.customer_id) or booking.status != BookingStatus.APPROVED:
        return 0.0
    minutes_before = (booking.start_time - now).total_seconds() / 60
    return pricing.cancellation_penalty(minutes_before, settings)


def set_status(
    session: Session,
    booking_id: int,
    new_status: str,
    actor: Principal,
    actual_end_time: Optional[datetime] = None,
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Booking:
    settings = settings or get_settings()
    now = now or datetime.utcnow()
    if new_status not in BookingStatus.ALL:
        raise ValidationError(f"Unknown booking status {new_status!r}")

    with atomic(session):
        booking = lock_booking(session, booking_id)
        if not can.can_view_booking(actor, booking):
            raise Forbidden("Not authorized to update this booking")
        current = booking.status
        if new_status == current:
            raise Conflict(f"Booking is already {current}")
        if new_status in (BookingStatus.APPROVED, BookingStatus.DECLINED):
            if not can.can_approve(actor, booking):
                raise Forbidden("Only staff can approve or decline bookings")
        elif not can.can_set_status(actor, booking, new_status):
            if new_status == BookingStatus.COMPLETED:
                raise Forbidden("End the ride to complete this booking")
            raise Forbidden(f"Not authorized to mark this booking {new_status}")
        if new_status not in TRANSITIONS.get(current, ()):
            raise Conflict(f"Cannot change booking status from {current} to {new_status}")
        if new_status == BookingStatus.ONGOING:
            raise Conflict("A booking becomes ongoing only when its ride starts")

        charge = 0.0
        if new_status in BookingStatus.TERMINAL:
            if actual_end_time is not None:
                booking.actual_end_time = actual_end_time
            if new_status == BookingStatus.CANCELLED:
                charge = _cancellation_charge(booking, actor, now, settings)
            _close(session, booking, new_status, now)
            if charge > 0:
                penalties.accrue(
                    session, booking.id, PenaltyReason.CANCELLATION, charge,
                    description="Late cancellation", now=now,
                )
        else:
            booking.status = new_status
            booking.updated_at = now
            session.add(booking)

    session.refresh(booking)
    logger.info("booking %s: %s -> %s by %s", booking.id, current, new_status, actor.principal_id)
    _emit(notifier, [_status_notice(booking, charge)])
    return booking


def _status_notice(booking: Booking, charge: float = 0.0) -> NotificationRequest:
    kind = {
        BookingStatus.APPROVED: "success",
        BookingStatus.DECLINED: "error",
        BookingStatus.CANCELLED: "warning" if charge else "info",
        BookingStatus.PENALIZED: "warning",
    }.get(booking.status, "info")
    message = f"Your booking is now {booking.status}"
    if charge:
        message += f"; a cancellation charge of {charge:.2f} applies"
    return NotificationRequest(
        recipient_id=booking.customer_id, type=kind, message=message, link=f"/bookings/{booking.id}",
    )


def cancel(
    session: Session,
    booking_id: int,
    actor: Principal,
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """Cancel a pending or approved booking; the asset is always released."""
    booking = session.get(Booking, booking_id)
    if not booking:
        raise NotFound("Booking not found")
    if not can.can_cancel(actor, booking):
        raise Forbidden("Not authorized to cancel this booking")
    if booking.status not in (BookingStatus.PENDING, BookingStatus.APPROVED):
        raise Conflict("This booking cannot be cancelled")
    return set_status(
        session, booking_id, BookingStatus.CANCELLED, actor,
        settings=settings, notifier=notifier, now=now,
    )


# ---------------- damage & payment ----------------
def report_damage(
    session: Session,
    booking_id: int,
    actor: Principal,
    description: str,
    images: Optional[Sequence[str]] = None,
    estimated_cost: float = 0.0,
    severity: Optional[str] = None,
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> DamageReport:
    """Attach a damage record; a severity also accrues a damage penalty."""
    settings = settings or get_settings()
    now = now or datetime.utcnow()
    if not can.can_report_damage(actor):
        raise Forbidden("Not authorized to report damage")
    if not description:
        raise ValidationError("Damage description is required")
    if estimated_cost is not None and estimated_cost < 0:
        raise ValidationError("Estimated repair cost must be non-negative")
    if severity is not None and severity not in pricing.SEVERITY_MULTIPLIERS:
        raise ValidationError(f"Severity must be one of {', '.join(pricing.SEVERITY_MULTIPLIERS)}")

    with atomic(session):
        booking = lock_booking(session, booking_id)
        report = DamageReport(
            booking_id=booking.id,
            description=description,
            images=list(images or []),
            estimated_repair_cost=estimated_cost or 0.0,
            severity=severity,
            reported_by=actor.principal_id,
            reported_at=now,
        )
        booking.has_damage = True
        booking.updated_at = now
        session.add(report)
        session.add(booking)
        session.flush()
        penalty = None
        if severity:
            penalty = penalties.accrue(
                session, booking.id, PenaltyReason.DAMAGE,
                pricing.damage_penalty(severity, settings),
                description=description, evidence=images, now=now,
            )

    session.refresh(report)
    if penalty is not None:
        _emit(notifier, [NotificationRequest(
            recipient_id=booking.customer_id, type="warning",
            message=f"Damage was reported on your booking; a penalty of {penalty.amount:.2f} applies",
            link=f"/bookings/{booking.id}",
        )])
    return report


def damage_reports(session: Session, booking_id: int, actor: Principal) -> List[DamageReport]:
    booking = get_booking(session, booking_id, actor)
    return list(session.exec(
        select(DamageReport).where(DamageReport.booking_id == booking.id).order_by(DamageReport.reported_at)
    ).all())


def record_payment(
    session: Session,
    booking_id: int,
    amount_confirmed: bool,
    actor: Principal,
    now: Optional[datetime] = None,
) -> Booking:
    """Consume the payment collaborator's yes/no signal."""
    with atomic(session):
        booking = lock_booking(session, booking_id)
        if not can.can_view_booking(actor, booking):
            raise Forbidden("Not authorized to pay for this booking")
        if booking.payment_status == PaymentStatus.COMPLETED:
            raise Conflict("This booking is already paid")
        booking.payment_status = PaymentStatus.COMPLETED if amount_confirmed else PaymentStatus.FAILED
        booking.paid_at = (now or datetime.utcnow()) if amount_confirmed else None
        session.add(booking)
    session.refresh(booking)
    return booking


# ---------------- queries ----------------
def get_booking(session: Session, booking_id: int, actor: Principal) -> Booking:
    booking = session.get(Booking, booking_id)
    if not booking:
        raise NotFound("Booking not found")
    if not can.can_view_booking(actor, booking):
        raise Forbidden("Not authorized to view this booking")
    return booking


def my_bookings(session: Session, actor: Principal) -> List[Booking]:
    return list(session.exec(
        select(Booking).where(Booking.customer_id == actor.principal_id).order_by(Booking.created_at.desc())
    ).all())


def list_bookings(
    session: Session,
    actor: Principal,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict:
    if not actor.is_staff:
        raise Forbidden("Not authorized")
    page = max(1, page)
    limit = max(1, min(limit, 100))

    stmt = select(Booking)
    if not actor.is_admin:
        # station masters only see traffic through their own stations
        mine = session.exec(select(Station.id).where(Station.station_master_id == actor.principal_id)).all()
        stmt = stmt.where(or_(Booking.start_station_id.in_(mine), Booking.end_station_id.in_(mine)))
    if status:
        stmt = stmt.where(Booking.status == status)
    if start_date and end_date:
        stmt = stmt.where(Booking.created_at >= start_date, Booking.created_at <= end_date)

    rows = session.exec(stmt.order_by(Booking.created_at.desc())).all()
    total = len(rows)
    return {
        "bookings": list(rows[(page - 1) * limit: page * limit]),
        "page": page,
        "pages": math.ceil(total / limit),
        "total": total,
    }


def booking_statistics(session: Session, actor: Principal, now: Optional[datetime] = None) -> Dict:
    if not can.can_view_statistics(actor):
        raise Forbidden("Not authorized")
    now = now or datetime.utcnow()
    rows = session.exec(select(Booking)).all()
    by_status = Counter(b.status for b in rows)
    settled = [b.final_cost if b.final_cost is not None else b.total_cost
               for b in rows if b.status in (BookingStatus.COMPLETED, BookingStatus.PENALIZED)]
    since = (now - timedelta(days=7)).date()
    daily = Counter(b.created_at.date().isoformat() for b in rows if b.created_at.date() >= since)
    return {
        "total_bookings": len(rows),
        "status_breakdown": {s: by_status.get(s, 0) for s in BookingStatus.ALL},
        "revenue": {
            "total_revenue": round(sum(settled), 2),
            "average_booking_value": round(sum(settled) / len(settled), 2) if settled else 0.0,
        },
        "daily_bookings": [{"date": d, "count": c} for d, c in sorted(daily.items())],
    }
