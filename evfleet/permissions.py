"""Capability predicates, one per guarded operation.

Each returns a plain bool so it can be tested without any HTTP machinery;
services turn a False into ``Forbidden``.
"""
from dataclasses import dataclass

from .models import Booking, BookingStatus, Penalty, PenaltyStatus, Ride, Role


@dataclass(frozen=True)
class Principal:
    principal_id: int
    role: str = Role.CUSTOMER

    @property
    def is_staff(self) -> bool:
        return self.role in Role.STAFF

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def owns(actor: Principal, customer_id: int) -> bool:
    return actor.principal_id == customer_id


def can_view_booking(actor: Principal, booking: Booking) -> bool:
    return actor.is_staff or owns(actor, booking.customer_id)


def can_approve(actor: Principal, booking: Booking) -> bool:
    return actor.is_staff


def can_cancel(actor: Principal, booking: Booking) -> bool:
    return actor.is_admin or owns(actor, booking.customer_id)


def can_set_status(actor: Principal, booking: Booking, new_status: str) -> bool:
    if actor.is_staff:
        return True
    # customers only ever cancel; completion goes through the ride
    return owns(actor, booking.customer_id) and new_status == BookingStatus.CANCELLED


def can_report_damage(actor: Principal) -> bool:
    return actor.is_staff


def can_start_ride(actor: Principal, booking: Booking) -> bool:
    return owns(actor, booking.customer_id)


def can_end_ride(actor: Principal, ride: Ride) -> bool:
    return actor.is_staff or owns(actor, ride.customer_id)


def can_override_geofence(actor: Principal) -> bool:
    return actor.is_staff


def can_view_ride(actor: Principal, ride: Ride) -> bool:
    return actor.is_staff or owns(actor, ride.customer_id)


def can_report_issue(actor: Principal, ride: Ride) -> bool:
    return owns(actor, ride.customer_id)


def can_rate(actor: Principal, ride: Ride) -> bool:
    return owns(actor, ride.customer_id)


def can_manage_fleet(actor: Principal) -> bool:
    return actor.is_staff


def can_manage_stations(actor: Principal) -> bool:
    return actor.is_admin


def can_accrue_penalty(actor: Principal) -> bool:
    return actor.is_staff


def can_settle_penalty(actor: Principal) -> bool:
    return actor.is_admin


def can_dispute(actor: Principal, penalty: Penalty) -> bool:
    return owns(actor, penalty.customer_id) and penalty.status == PenaltyStatus.PENDING


def can_view_statistics(actor: Principal) -> bool:
    return actor.is_staff
