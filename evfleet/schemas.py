from typing import Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field


# ------------------------------------------------------------------
# Base class for reading straight off SQLModel rows
# ------------------------------------------------------------------
class ORMModel(BaseModel):
    model_config = {"from_attributes": True}


# [lon, lat]
Coordinates = List[float]


def _point(description: str = "[longitude, latitude]"):
    return Field(..., min_length=2, max_length=2, description=description)


# ------------------------------------------------------------------
# Users
# ------------------------------------------------------------------
class UserRead(ORMModel):
    id: int
    name: str
    email: str
    role: str
    phone: Optional[str] = None


# ------------------------------------------------------------------
# Stations
# ------------------------------------------------------------------
class StationCreate(ORMModel):
    name: str
    address: str
    location: Coordinates = _point()
    radius_m: float = 100.0
    polygon: Optional[List[Coordinates]] = None
    station_master_id: Optional[int] = None
    opening: str = "09:00"
    closing: str = "18:00"


class StationUpdate(ORMModel):
    name: Optional[str] = None
    address: Optional[str] = None
    location: Optional[Coordinates] = Field(None, min_length=2, max_length=2)
    radius_m: Optional[float] = None
    polygon: Optional[List[Coordinates]] = None
    status: Optional[str] = None
    station_master_id: Optional[int] = None
    opening: Optional[str] = None
    closing: Optional[str] = None


class StationRead(ORMModel):
    id: int
    name: str
    address: str
    center_lon: float
    center_lat: float
    radius_m: float
    polygon: Optional[List[Coordinates]] = None
    status: str
    opening: str
    closing: str
    station_master_id: Optional[int] = None
    available_count: int


class NearbyStationRead(StationRead):
    distance_m: float


# ------------------------------------------------------------------
# Assets
# ------------------------------------------------------------------
class AssetCreate(ORMModel):
    registration_number: str
    model: str
    manufacturer: str
    station_id: int
    price_per_hour: float = 50.0
    battery_level: int = 100
    status: str = "available"
    location: Optional[Coordinates] = Field(None, min_length=2, max_length=2)


class AssetRead(ORMModel):
    id: int
    registration_number: str
    model: str
    manufacturer: str
    station_id: int
    status: str
    battery_level: int
    condition: str
    location_lon: float
    location_lat: float
    location_at: datetime
    price_per_hour: float
    rating: Optional[float] = None
    rating_count: int


class StationAvailabilityRead(ORMModel):
    station_id: int
    total: int
    available: int
    assets: List[AssetRead]


class AssetTransfer(ORMModel):
    station_id: int


class BatteryUpdate(ORMModel):
    battery_level: int


class TelemetryIn(ORMModel):
    location: Coordinates = _point()
    timestamp: Optional[datetime] = None
    battery_level: Optional[int] = None


class MaintenanceCreate(ORMModel):
    description: str
    cost: float
    performed_by: str


class MaintenanceRead(ORMModel):
    id: int
    asset_id: int
    date: datetime
    description: str
    cost: float
    performed_by: str


# ------------------------------------------------------------------
# Bookings
# ------------------------------------------------------------------
class BookingCreate(ORMModel):
    asset_id: int
    start_station_id: int
    end_station_id: int
    start_time: datetime
    end_time: datetime
    total_cost: Optional[float] = None
    booking_type: str = "immediate"


class BookingStatusUpdate(ORMModel):
    status: str
    actual_end_time: Optional[datetime] = None


class BookingRead(ORMModel):
    id: int
    customer_id: int
    asset_id: int
    start_station_id: int
    end_station_id: int
    start_time: datetime
    end_time: datetime
    actual_end_time: Optional[datetime] = None
    duration_hours: float
    booking_type: str
    status: str
    total_cost: float
    base_rate: float
    included_km: float
    extra_km_rate: float
    final_cost: Optional[float] = None
    payment_status: str
    paid_at: Optional[datetime] = None
    has_penalty: bool
    penalty_amount: float
    penalty_paid: bool
    has_damage: bool
    last_known_lon: Optional[float] = None
    last_known_lat: Optional[float] = None
    last_known_at: Optional[datetime] = None
    was_within_geofence: Optional[bool] = None
    is_late_return: bool              # derived
    late_minutes: int                 # derived
    created_at: datetime


class BookingPage(ORMModel):
    bookings: List[BookingRead]
    page: int
    pages: int
    total: int


class DamageReportCreate(ORMModel):
    description: str
    images: List[str] = []
    estimated_cost: float = 0.0
    severity: Optional[str] = None


class DamageReportRead(ORMModel):
    id: int
    booking_id: int
    description: str
    images: List[str]
    estimated_repair_cost: float
    severity: Optional[str] = None
    reported_by: int
    reported_at: datetime
    status: str


class PaymentIn(ORMModel):
    amount_confirmed: bool


# ------------------------------------------------------------------
# Rides
# ------------------------------------------------------------------
class RideStart(ORMModel):
    booking_id: int
    location: Coordinates = _point()


class RideEnd(ORMModel):
    location: Coordinates = _point()
    override_reason: Optional[str] = None


class RideTrack(ORMModel):
    location: Coordinates = _point()
    timestamp: Optional[datetime] = None


class RideRead(ORMModel):
    id: int
    booking_id: int
    customer_id: int
    asset_id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    start_lon: float
    start_lat: float
    end_lon: Optional[float] = None
    end_lat: Optional[float] = None
    distance_km: float
    cost: float
    status: str
    rating: Optional[int] = None
    feedback: str


class RidePage(ORMModel):
    rides: List[RideRead]
    page: int
    pages: int
    total: int


class GeofenceOverrideRead(ORMModel):
    id: int
    ride_id: int
    authorized_by: int
    reason: str
    distance_m: float
    created_at: datetime


class PenaltyRead(ORMModel):
    id: int
    booking_id: int
    customer_id: int
    asset_id: int
    amount: float
    reason: str
    description: str
    evidence: List[str]
    status: str
    paid_amount: Optional[float] = None
    paid_at: Optional[datetime] = None
    created_at: datetime


class RideSettlementRead(ORMModel):
    ride: RideRead
    booking_status: str
    cost: float
    distance_km: float
    penalties: List[PenaltyRead] = []
    override: Optional[GeofenceOverrideRead] = None


class TrackResult(ORMModel):
    recorded: bool = True
    penalty: Optional[PenaltyRead] = None


class RideIssueCreate(ORMModel):
    issue: str
    details: str = ""


class RideIssueRead(ORMModel):
    id: int
    ride_id: int
    issue: str
    details: str
    reported_at: datetime
    resolved: bool


class RatingIn(ORMModel):
    rating: int = Field(..., ge=1, le=5)
    feedback: str = ""


class RideStatistics(ORMModel):
    total_rides: int
    total_distance_km: float
    total_cost: float
    total_minutes: float
    average_rating: Optional[float] = None
    rating_breakdown: Dict[int, int]


# ------------------------------------------------------------------
# Penalties
# ------------------------------------------------------------------
class PenaltyCreate(ORMModel):
    booking_id: int
    reason: str
    amount: float
    description: str = ""
    evidence: List[str] = []


class PenaltyPayment(ORMModel):
    paid_amount: Optional[float] = None
    paid_at: Optional[datetime] = None


# ------------------------------------------------------------------
# Notifications & zones
# ------------------------------------------------------------------
class NotificationRead(ORMModel):
    id: int
    recipient_id: int
    type: str
    message: str
    description: Optional[str] = None
    link: Optional[str] = None
    read: bool
    created_at: datetime


class ServiceZoneCreate(ORMModel):
    name: str
    location: Coordinates = _point()
    radius_m: float
    polygon: Optional[List[Coordinates]] = None


class ServiceZoneRead(ORMModel):
    id: int
    name: str
    center_lon: float
    center_lat: float
    radius_m: float
    polygon: Optional[List[Coordinates]] = None
    active: bool
