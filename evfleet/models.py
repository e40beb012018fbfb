import math
from typing import List, Optional
from datetime import datetime
from sqlalchemy import JSON, Column, Index, text
from sqlmodel import SQLModel, Field, UniqueConstraint


class Role:
    CUSTOMER = "customer"
    STATION_MASTER = "stationMaster"
    ADMIN = "admin"

    ALL = (CUSTOMER, STATION_MASTER, ADMIN)
    STAFF = (STATION_MASTER, ADMIN)


class AssetStatus:
    AVAILABLE = "available"
    BOOKED = "booked"
    IN_USE = "in-use"
    CHARGING = "charging"
    MAINTENANCE = "maintenance"

    ALL = (AVAILABLE, BOOKED, IN_USE, CHARGING, MAINTENANCE)
    RESERVED = (BOOKED, IN_USE)


class BookingStatus:
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    PENALIZED = "penalized"

    ALL = (PENDING, APPROVED, DECLINED, CANCELLED, ONGOING, COMPLETED, PENALIZED)
    OPEN = (PENDING, APPROVED, ONGOING)
    TERMINAL = (DECLINED, CANCELLED, COMPLETED, PENALIZED)


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class RideStatus:
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PenaltyReason:
    DAMAGE = "damage"
    LATE_RETURN = "late_return"
    CANCELLATION = "cancellation"
    IMPROPER_PARKING = "improper_parking"
    GEOFENCE_VIOLATION = "geofence_violation"
    OTHER = "other"

    ALL = (DAMAGE, LATE_RETURN, CANCELLATION, IMPROPER_PARKING, GEOFENCE_VIOLATION, OTHER)


class PenaltyStatus:
    PENDING = "pending"
    PAID = "paid"
    DISPUTED = "disputed"
    WAIVED = "waived"

    ALL = (PENDING, PAID, DISPUTED, WAIVED)


_OPEN_BOOKING = text("status IN ('pending', 'approved', 'ongoing')")
_ACTIVE_RIDE = text("status = 'active'")


class User(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("email"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str
    role: str = Role.CUSTOMER
    phone: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Station(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    address: str
    center_lon: float
    center_lat: float
    radius_m: float = 100.0
    polygon: Optional[List[List[float]]] = Field(default=None, sa_column=Column(JSON))
    status: str = "active"
    opening: str = "09:00"
    closing: str = "18:00"
    station_master_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    # cache of roster members with status=available; see registry.reconcile_available_count
    available_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Asset(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("registration_number"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    registration_number: str
    model: str
    manufacturer: str
    station_id: int = Field(foreign_key="station.id", index=True)
    status: str = Field(default=AssetStatus.AVAILABLE, index=True)
    battery_level: int = 100
    condition: str = "good"
    location_lon: float = 0.0
    location_lat: float = 0.0
    location_at: datetime = Field(default_factory=datetime.utcnow)
    price_per_hour: float = 50.0
    rating: Optional[float] = None
    rating_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class MaintenanceRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    asset_id: int = Field(foreign_key="asset.id", index=True)
    date: datetime = Field(default_factory=datetime.utcnow)
    description: str
    cost: float = 0.0
    performed_by: str


class Booking(SQLModel, table=True):
    __table_args__ = (
        Index(
            "uq_booking_open_customer", "customer_id", unique=True,
            sqlite_where=_OPEN_BOOKING, postgresql_where=_OPEN_BOOKING,
        ),
        Index(
            "uq_booking_open_asset", "asset_id", unique=True,
            sqlite_where=_OPEN_BOOKING, postgresql_where=_OPEN_BOOKING,
        ),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: int = Field(index=True)
    asset_id: int = Field(foreign_key="asset.id", index=True)
    start_station_id: int = Field(foreign_key="station.id")
    end_station_id: int = Field(foreign_key="station.id")
    start_time: datetime
    end_time: datetime
    actual_end_time: Optional[datetime] = None
    duration_hours: float
    booking_type: str = "immediate"
    status: str = Field(default=BookingStatus.PENDING, index=True)

    total_cost: float
    # pricing snapshot frozen at creation
    base_rate: float
    included_km: float
    extra_km_rate: float
    final_cost: Optional[float] = None

    payment_status: str = PaymentStatus.PENDING
    paid_at: Optional[datetime] = None

    # denormalized cache of the penalty ledger
    has_penalty: bool = False
    penalty_amount: float = 0.0
    penalty_reason: Optional[str] = None
    penalty_paid: bool = False

    has_damage: bool = False

    last_known_lon: Optional[float] = None
    last_known_lat: Optional[float] = None
    last_known_at: Optional[datetime] = None
    was_within_geofence: Optional[bool] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_late_return(self) -> bool:
        if not self.actual_end_time or not self.end_time:
            return False
        return self.actual_end_time > self.end_time

    @property
    def late_minutes(self) -> int:
        if not self.is_late_return:
            return 0
        return math.ceil((self.actual_end_time - self.end_time).total_seconds() / 60)


class DamageReport(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    booking_id: int = Field(foreign_key="booking.id", index=True)
    description: str
    images: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    estimated_repair_cost: float = 0.0
    severity: Optional[str] = None
    reported_by: int
    reported_at: datetime = Field(default_factory=datetime.utcnow)
    status: str = "pending"


class Ride(SQLModel, table=True):
    __table_args__ = (
        Index(
            "uq_ride_active_booking", "booking_id", unique=True,
            sqlite_where=_ACTIVE_RIDE, postgresql_where=_ACTIVE_RIDE,
        ),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    booking_id: int = Field(foreign_key="booking.id", index=True)
    customer_id: int = Field(index=True)
    asset_id: int = Field(foreign_key="asset.id", index=True)
    start_time: datetime = Field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    start_lon: float
    start_lat: float
    end_lon: Optional[float] = None
    end_lat: Optional[float] = None
    distance_km: float = 0.0
    cost: float = 0.0
    status: str = Field(default=RideStatus.ACTIVE, index=True)
    rating: Optional[int] = None
    feedback: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)


class RideIssue(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    ride_id: int = Field(foreign_key="ride.id", index=True)
    issue: str
    details: str = ""
    reported_at: datetime = Field(default_factory=datetime.utcnow)
    resolved: bool = False


class GeofenceWatch(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    ride_id: int = Field(foreign_key="ride.id", unique=True)
    outside_since: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    last_inside: bool = True
    # the current excursion has already produced its penalty
    violation_accrued: bool = False
    violations: int = 0


class GeofenceOverride(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    ride_id: int = Field(foreign_key="ride.id", index=True)
    authorized_by: int
    reason: str
    distance_m: float
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ServiceZone(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    center_lon: float
    center_lat: float
    radius_m: float
    polygon: Optional[List[List[float]]] = Field(default=None, sa_column=Column(JSON))
    active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Penalty(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    booking_id: int = Field(foreign_key="booking.id", index=True)
    customer_id: int = Field(index=True)
    asset_id: int = Field(foreign_key="asset.id")
    amount: float
    reason: str
    description: str = ""
    evidence: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    status: str = Field(default=PenaltyStatus.PENDING, index=True)
    paid_amount: Optional[float] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    recipient_id: int = Field(index=True)
    type: str = "info"
    message: str
    description: Optional[str] = None
    link: Optional[str] = None
    read: bool = False
    read_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
