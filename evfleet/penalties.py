"""Penalty and settlement ledger.

The ``penalty`` table is the source of truth. ``Booking.penalty_amount``
and friends are a denormalized cache that every mutation here adjusts in
the same transaction as the row it touches. The ledger does not decide
amounts; see ``evfleet.pricing`` for that.
"""
from __future__ import annotations
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import case, func, update
from sqlmodel import Session, select

from . import permissions as can
from .database import atomic
from .errors import Conflict, Forbidden, NotFound, ValidationError
from .models import Asset, Booking, Penalty, PenaltyReason, PenaltyStatus, User
from .notifications import NotificationRequest, Notifier
from .permissions import Principal

logger = logging.getLogger(__name__)


def _booking(session: Session, booking_id: int) -> Booking:
    booking = session.get(Booking, booking_id)
    if not booking:
        raise NotFound("Booking not found")
    return booking


def _penalty(session: Session, penalty_id: int) -> Penalty:
    penalty = session.get(Penalty, penalty_id)
    if not penalty:
        raise NotFound("Penalty not found")
    return penalty


def _shift_total(session: Session, booking_id: int, delta: float, **extra) -> Booking:
    new_total = Booking.penalty_amount + delta
    if delta < 0:
        new_total = case((new_total >= 0, new_total), else_=0.0)
    session.exec(
        update(Booking)
        .where(Booking.id == booking_id)
        .values(penalty_amount=new_total, **extra)
        .execution_options(synchronize_session=False)
    )
    return session.get(Booking, booking_id, populate_existing=True)


def _sync_flags(session: Session, booking_id: int) -> Booking:
    live = session.exec(
        select(Penalty.status).where(Penalty.booking_id == booking_id, Penalty.status != PenaltyStatus.WAIVED)
    ).all()
    booking = _booking(session, booking_id)
    booking.has_penalty = bool(live) or booking.penalty_amount > 0
    booking.penalty_paid = bool(live) and all(s == PenaltyStatus.PAID for s in live)
    session.add(booking)
    session.flush()
    return booking


# ---------------- ledger primitives ----------------
def accrue(
    session: Session,
    booking_id: int,
    reason: str,
    amount: float,
    *,
    customer_id: Optional[int] = None,
    asset_id: Optional[int] = None,
    description: str = "",
    evidence: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
) -> Penalty:
    """Insert a penalty row and bump the booking's running total.

    Runs inside the caller's transaction; the row and the increment are
    committed together or not at all.
    """
    now = now or datetime.utcnow()
    if reason not in PenaltyReason.ALL:
        raise ValidationError(f"Unknown penalty reason {reason!r}")
    if amount is None or amount < 0:
        raise ValidationError("Penalty amount must be a non-negative number")
    booking = _booking(session, booking_id)
    if customer_id is not None and customer_id != booking.customer_id:
        raise ValidationError("Penalty customer does not match the booking")
    if asset_id is not None and asset_id != booking.asset_id:
        raise ValidationError("Penalty vehicle does not match the booking")

    penalty = Penalty(
        booking_id=booking.id,
        customer_id=booking.customer_id,
        asset_id=booking.asset_id,
        amount=round(float(amount), 2),
        reason=reason,
        description=description,
        evidence=list(evidence or []),
        created_at=now,
        updated_at=now,
    )
    session.add(penalty)
    session.flush()
    _shift_total(session, booking.id, penalty.amount, has_penalty=True, penalty_reason=reason, penalty_paid=False)
    logger.info("penalty %s accrued on booking %s: %s %.2f", penalty.id, booking.id, reason, penalty.amount)
    return penalty


def reconcile_booking_total(session: Session, booking_id: int) -> float:
    """Recompute the cached total from the ledger, repairing any drift.

    Bookings with no ledger rows at all keep their legacy figure.
    """
    booking = _booking(session, booking_id)
    rows = session.exec(select(Penalty).where(Penalty.booking_id == booking_id)).all()
    if not rows:
        return booking.penalty_amount
    total = round(sum(p.amount for p in rows if p.status != PenaltyStatus.WAIVED), 2)
    if abs(booking.penalty_amount - total) > 1e-9:
        logger.info("fixed penalty total for booking %s: %s -> %s", booking_id, booking.penalty_amount, total)
        booking.penalty_amount = total
        session.add(booking)
        session.flush()
    _sync_flags(session, booking_id)
    return total


# ---------------- operations ----------------
def _notify(notifier: Optional[Notifier], request: NotificationRequest) -> None:
    if notifier:
        notifier.emit(request)


def add_penalty(
    session: Session,
    actor: Principal,
    booking_id: int,
    reason: str,
    amount: float,
    description: str = "",
    evidence: Optional[Sequence[str]] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Penalty:
    if not can.can_accrue_penalty(actor):
        raise Forbidden("Not authorized to add penalties")
    with atomic(session):
        penalty = accrue(session, booking_id, reason, amount, description=description, evidence=evidence, now=now)
    session.refresh(penalty)
    _notify(notifier, NotificationRequest(
        recipient_id=penalty.customer_id,
        type="warning",
        message=f"A {reason.replace('_', ' ')} penalty of {penalty.amount:.2f} was added to your booking",
        link=f"/bookings/{booking_id}",
    ))
    return penalty


def waive(session: Session, penalty_id: int, actor: Principal, now: Optional[datetime] = None) -> Penalty:
    if not can.can_settle_penalty(actor):
        raise Forbidden("Only an admin can waive penalties")
    now = now or datetime.utcnow()
    with atomic(session):
        penalty = _penalty(session, penalty_id)
        if penalty.status == PenaltyStatus.WAIVED:
            raise Conflict("Penalty is already waived")
        if penalty.status == PenaltyStatus.PAID:
            raise Conflict("A paid penalty cannot be waived")
        penalty.status = PenaltyStatus.WAIVED
        penalty.updated_at = now
        session.add(penalty)
        session.flush()
        _shift_total(session, penalty.booking_id, -penalty.amount)
        _sync_flags(session, penalty.booking_id)
    session.refresh(penalty)
    logger.info("penalty %s waived by %s", penalty_id, actor.principal_id)
    return penalty


def mark_paid(
    session: Session,
    penalty_id: int,
    actor: Principal,
    paid_amount: Optional[float] = None,
    paid_at: Optional[datetime] = None,
) -> Penalty:
    if not can.can_settle_penalty(actor):
        raise Forbidden("Only an admin can settle penalties")
    with atomic(session):
        penalty = _penalty(session, penalty_id)
        if penalty.status == PenaltyStatus.WAIVED:
            raise Conflict("A waived penalty cannot be paid")
        if penalty.status == PenaltyStatus.PAID:
            raise Conflict("Penalty is already paid")
        if paid_amount is not None and paid_amount < 0:
            raise ValidationError("Paid amount must be non-negative")
        penalty.status = PenaltyStatus.PAID
        penalty.paid_amount = penalty.amount if paid_amount is None else paid_amount
        penalty.paid_at = paid_at or datetime.utcnow()
        penalty.updated_at = penalty.paid_at
        session.add(penalty)
        session.flush()
        _sync_flags(session, penalty.booking_id)
    session.refresh(penalty)
    return penalty


def dispute(session: Session, penalty_id: int, actor: Principal, now: Optional[datetime] = None) -> Penalty:
    with atomic(session):
        penalty = _penalty(session, penalty_id)
        if not can.owns(actor, penalty.customer_id):
            raise Forbidden("You can only dispute your own penalties")
        if not can.can_dispute(actor, penalty):
            raise Conflict(f"Only a pending penalty can be disputed (status: {penalty.status})")
        penalty.status = PenaltyStatus.DISPUTED
        penalty.updated_at = now or datetime.utcnow()
        session.add(penalty)
    session.refresh(penalty)
    return penalty


def remove(session: Session, penalty_id: int, actor: Principal) -> None:
    """Hard delete; a waived row was already taken off the total."""
    if not can.can_settle_penalty(actor):
        raise Forbidden("Only an admin can delete penalties")
    with atomic(session):
        penalty = _penalty(session, penalty_id)
        booking_id = penalty.booking_id
        if penalty.status != PenaltyStatus.WAIVED:
            _shift_total(session, booking_id, -penalty.amount)
        session.delete(penalty)
        session.flush()
        _sync_flags(session, booking_id)
    logger.info("penalty %s deleted by %s", penalty_id, actor.principal_id)


def penalties_for_booking(session: Session, booking_id: int, actor: Principal) -> List[Penalty]:
    booking = _booking(session, booking_id)
    if not can.can_view_booking(actor, booking):
        raise Forbidden("Not authorized to view this booking")
    return list(session.exec(
        select(Penalty).where(Penalty.booking_id == booking_id).order_by(Penalty.created_at)
    ).all())


def penalties_for_customer(session: Session, actor: Principal, customer_id: Optional[int] = None) -> List[Penalty]:
    customer_id = actor.principal_id if customer_id is None else customer_id
    if customer_id != actor.principal_id and not actor.is_staff:
        raise Forbidden("Not authorized to view these penalties")
    return list(session.exec(
        select(Penalty).where(Penalty.customer_id == customer_id).order_by(Penalty.created_at.desc())
    ).all())


def _vehicle_label(asset: Optional[Asset]) -> str:
    if not asset:
        return "Unknown vehicle"
    return f"{asset.manufacturer} {asset.model} ({asset.registration_number})"


def statistics(session: Session, actor: Optional[Principal] = None) -> Dict:
    """Totals and a per-customer rollup of outstanding (non-waived) penalties.

    Penalties whose customer no longer exists are left out. Bookings that
    carry a legacy flat penalty but no ledger rows are counted from the
    booking fields instead.
    """
    if actor is not None and not can.can_view_statistics(actor):
        raise Forbidden("Not authorized")

    entries = []
    for p in session.exec(select(Penalty).where(Penalty.status != PenaltyStatus.WAIVED)).all():
        entries.append({
            "penalty_id": p.id, "booking_id": p.booking_id, "customer_id": p.customer_id,
            "asset_id": p.asset_id, "amount": p.amount, "reason": p.reason, "status": p.status,
            "date": p.created_at,
        })

    ledgered = set(session.exec(select(Penalty.booking_id).distinct()).all())
    legacy = session.exec(
        select(Booking).where((Booking.has_penalty == True) | (Booking.penalty_amount > 0))  # noqa: E712
    ).all()
    for b in legacy:
        if b.id in ledgered:
            continue
        entries.append({
            "penalty_id": None, "booking_id": b.id, "customer_id": b.customer_id,
            "asset_id": b.asset_id, "amount": b.penalty_amount or 0.0,
            "reason": b.penalty_reason or "Unknown reason",
            "status": PenaltyStatus.PAID if b.penalty_paid else PenaltyStatus.PENDING,
            "date": b.updated_at,
        })

    users: Dict[int, Optional[User]] = {}
    customers: Dict[int, Dict] = {}
    by_reason: Dict[str, float] = defaultdict(float)
    total_amount = 0.0
    total_count = 0
    for e in entries:
        cid = e["customer_id"]
        if cid not in users:
            users[cid] = session.get(User, cid)
        user = users[cid]
        if user is None:
            logger.debug("skipping penalty on booking %s with missing customer %s", e["booking_id"], cid)
            continue
        row = customers.setdefault(cid, {
            "customer_id": cid,
            "customer_name": user.name or "Unknown",
            "customer_email": user.email or "No email",
            "total_amount": 0.0,
            "count": 0,
            "penalties": [],
        })
        row["total_amount"] = round(row["total_amount"] + e["amount"], 2)
        row["count"] += 1
        row["penalties"].append({
            "penalty_id": e["penalty_id"],
            "booking_id": e["booking_id"],
            "amount": e["amount"],
            "reason": e["reason"],
            "status": e["status"],
            "date": e["date"],
            "vehicle": _vehicle_label(session.get(Asset, e["asset_id"])),
        })
        by_reason[e["reason"]] += e["amount"]
        total_amount += e["amount"]
        total_count += 1

    return {
        "total_penalty_count": total_count,
        "total_penalty_amount": round(total_amount, 2),
        "by_reason": {k: round(v, 2) for k, v in by_reason.items()},
        "customer_penalties": sorted(customers.values(), key=lambda r: -r["total_amount"]),
    }


def booking_penalty_total(session: Session, booking_id: int) -> float:
    """Sum of non-waived ledger rows, straight from the table."""
    total = session.exec(
        select(func.coalesce(func.sum(Penalty.amount), 0.0)).where(
            Penalty.booking_id == booking_id, Penalty.status != PenaltyStatus.WAIVED
        )
    ).one()
    return round(float(total), 2)
