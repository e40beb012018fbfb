# evfleet/main.py
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sqlmodel import Session

from .config import Settings, get_settings
from .database import atomic, engine, get_session, init_db
from .auth import get_principal
from .errors import Forbidden, RentalError
from .notifications import Notifier, OutboxNotifier
from .permissions import Principal
from . import bookings, geofence, notifications, penalties, registry, rides
from . import permissions as can
from . import models as m
from . import schemas as s

APP_VERSION = "1.0.0"

logger = logging.getLogger(__name__)


# ---------------- dependencies ----------------
def get_notifier() -> Notifier:
    return OutboxNotifier(engine)


def get_clock() -> datetime:
    return datetime.utcnow()


def _require(allowed: bool, message: str = "Not authorized") -> None:
    if not allowed:
        raise Forbidden(message)


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title="EV Fleet Rental API", version=APP_VERSION)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def _startup():
        init_db()

    @app.exception_handler(RentalError)
    async def _rental_error(request: Request, exc: RentalError):
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.reason, exc.kind)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # ---------------- Health ----------------
    @app.get("/api/health")
    def health():
        return {"status": "ok", "version": APP_VERSION}

    # ---------------- Users -----------------
    @app.get("/api/users/me", response_model=s.UserRead)
    def me(
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        user = session.get(m.User, actor.principal_id)
        if not user:
            raise HTTPException(404, "User not found")
        return s.UserRead.model_validate(user)

    # --------------- Stations ---------------
    @app.get("/api/stations", response_model=List[s.StationRead])
    def list_stations(status: Optional[str] = None, session: Session = Depends(get_session)):
        return [s.StationRead.model_validate(st) for st in registry.list_stations(session, status)]

    @app.get("/api/stations/nearest", response_model=List[s.NearbyStationRead])
    def nearest_stations(
        lon: float,
        lat: float,
        max_distance_m: float = 10000,
        session: Session = Depends(get_session),
    ):
        found = registry.nearest_stations(session, lon, lat, max_distance_m)
        return [
            s.NearbyStationRead(**s.StationRead.model_validate(st).model_dump(), distance_m=round(d, 1))
            for st, d in found
        ]

    @app.post("/api/stations", response_model=s.StationRead, status_code=201)
    def create_station(
        payload: s.StationCreate,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        _require(can.can_manage_stations(actor), "Only an admin can create stations")
        data = payload.model_dump(exclude={"location"})
        with atomic(session):
            station = registry.create_station(
                session, center_lon=payload.location[0], center_lat=payload.location[1], **data,
            )
        session.refresh(station)
        return s.StationRead.model_validate(station)

    @app.patch("/api/stations/{station_id}", response_model=s.StationRead)
    def update_station(
        station_id: int,
        payload: s.StationUpdate,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        _require(can.can_manage_stations(actor), "Only an admin can update stations")
        changes = payload.model_dump(exclude_unset=True)
        location = changes.pop("location", None)
        if location:
            changes["center_lon"], changes["center_lat"] = location
        with atomic(session):
            station = registry.update_station(session, station_id, changes)
        session.refresh(station)
        return s.StationRead.model_validate(station)

    @app.get("/api/stations/{station_id}/availability", response_model=s.StationAvailabilityRead)
    def station_availability(station_id: int, session: Session = Depends(get_session)):
        return s.StationAvailabilityRead.model_validate(registry.station_availability(session, station_id))

    @app.post("/api/stations/{station_id}/reconcile")
    def reconcile_station(
        station_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        _require(can.can_manage_fleet(actor))
        with atomic(session):
            count = registry.reconcile_available_count(session, station_id)
        return {"station_id": station_id, "available_count": count}

    # ---------------- Assets ----------------
    @app.get("/api/assets", response_model=List[s.AssetRead])
    def list_assets(
        station_id: Optional[int] = None,
        status: Optional[str] = None,
        session: Session = Depends(get_session),
    ):
        return [s.AssetRead.model_validate(a) for a in registry.list_assets(session, station_id, status)]

    @app.post("/api/assets", response_model=s.AssetRead, status_code=201)
    def register_asset(
        payload: s.AssetCreate,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        now: datetime = Depends(get_clock),
    ):
        _require(can.can_manage_fleet(actor))
        data = payload.model_dump(exclude={"location"})
        lon, lat = payload.location if payload.location else (None, None)
        with atomic(session):
            asset = registry.register_asset(session, lon=lon, lat=lat, now=now, **data)
        session.refresh(asset)
        return s.AssetRead.model_validate(asset)

    @app.get("/api/assets/{asset_id}", response_model=s.AssetRead)
    def get_asset(asset_id: int, session: Session = Depends(get_session)):
        return s.AssetRead.model_validate(registry.get_asset(session, asset_id))

    @app.delete("/api/assets/{asset_id}", status_code=204)
    def remove_asset(
        asset_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        _require(actor.is_admin, "Only an admin can delete vehicles")
        with atomic(session):
            registry.remove_asset(session, asset_id)
        return Response(status_code=204)

    @app.post("/api/assets/{asset_id}/transfer", response_model=s.AssetRead)
    def transfer_asset(
        asset_id: int,
        payload: s.AssetTransfer,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        now: datetime = Depends(get_clock),
    ):
        _require(can.can_manage_fleet(actor))
        with atomic(session):
            asset = registry.transfer_asset(session, asset_id, payload.station_id, now=now)
        session.refresh(asset)
        return s.AssetRead.model_validate(asset)

    @app.get("/api/assets/{asset_id}/maintenance", response_model=List[s.MaintenanceRead])
    def maintenance_history(asset_id: int, session: Session = Depends(get_session)):
        return [s.MaintenanceRead.model_validate(r) for r in registry.maintenance_history(session, asset_id)]

    @app.post("/api/assets/{asset_id}/maintenance", response_model=s.MaintenanceRead, status_code=201)
    def add_maintenance(
        asset_id: int,
        payload: s.MaintenanceCreate,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        now: datetime = Depends(get_clock),
    ):
        _require(can.can_manage_fleet(actor))
        with atomic(session):
            record = registry.record_maintenance(
                session, asset_id, payload.description, payload.cost, payload.performed_by, now=now,
            )
        session.refresh(record)
        return s.MaintenanceRead.model_validate(record)

    @app.post("/api/assets/{asset_id}/maintenance/clear", response_model=s.AssetRead)
    def clear_maintenance(
        asset_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        now: datetime = Depends(get_clock),
    ):
        _require(can.can_manage_fleet(actor))
        with atomic(session):
            asset = registry.clear_maintenance(session, asset_id, now=now)
        session.refresh(asset)
        return s.AssetRead.model_validate(asset)

    @app.post("/api/assets/{asset_id}/charging", response_model=s.AssetRead)
    def start_charging(
        asset_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        now: datetime = Depends(get_clock),
    ):
        _require(can.can_manage_fleet(actor))
        with atomic(session):
            asset = registry.start_charging(session, asset_id, now=now)
        session.refresh(asset)
        return s.AssetRead.model_validate(asset)

    @app.patch("/api/assets/{asset_id}/battery", response_model=s.AssetRead)
    def update_battery(
        asset_id: int,
        payload: s.BatteryUpdate,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        now: datetime = Depends(get_clock),
    ):
        _require(can.can_manage_fleet(actor))
        with atomic(session):
            asset = registry.update_battery(session, asset_id, payload.battery_level, now=now)
        session.refresh(asset)
        return s.AssetRead.model_validate(asset)

    @app.post("/api/assets/{asset_id}/telemetry")
    def push_telemetry(
        asset_id: int,
        payload: s.TelemetryIn,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        now: datetime = Depends(get_clock),
    ):
        _require(can.can_manage_fleet(actor))
        lon, lat = payload.location
        kept = registry.record_telemetry(
            session, asset_id, lon, lat, payload.timestamp or now, payload.battery_level,
        )
        return {"recorded": kept}

    # --------------- Bookings ---------------
    @app.post("/api/bookings", response_model=s.BookingRead, status_code=201)
    def create_booking(
        payload: s.BookingCreate,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        settings: Settings = Depends(get_settings),
        notifier: Notifier = Depends(get_notifier),
        now: datetime = Depends(get_clock),
    ):
        booking = bookings.create(
            session, actor, payload.asset_id, payload.start_station_id, payload.end_station_id,
            payload.start_time, payload.end_time,
            total_cost=payload.total_cost, booking_type=payload.booking_type,
            settings=settings, notifier=notifier, now=now,
        )
        return s.BookingRead.model_validate(booking)

    @app.get("/api/bookings", response_model=s.BookingPage)
    def list_bookings(
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return s.BookingPage.model_validate(
            bookings.list_bookings(session, actor, status, start_date, end_date, page, limit)
        )

    @app.get("/api/bookings/mine", response_model=List[s.BookingRead])
    def my_bookings(
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return [s.BookingRead.model_validate(b) for b in bookings.my_bookings(session, actor)]

    @app.get("/api/bookings/statistics")
    def booking_statistics(
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        now: datetime = Depends(get_clock),
    ):
        return bookings.booking_statistics(session, actor, now=now)

    @app.get("/api/bookings/{booking_id}", response_model=s.BookingRead)
    def get_booking(
        booking_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return s.BookingRead.model_validate(bookings.get_booking(session, booking_id, actor))

    @app.patch("/api/bookings/{booking_id}/status", response_model=s.BookingRead)
    def set_booking_status(
        booking_id: int,
        payload: s.BookingStatusUpdate,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        settings: Settings = Depends(get_settings),
        notifier: Notifier = Depends(get_notifier),
        now: datetime = Depends(get_clock),
    ):
        booking = bookings.set_status(
            session, booking_id, payload.status, actor, actual_end_time=payload.actual_end_time,
            settings=settings, notifier=notifier, now=now,
        )
        return s.BookingRead.model_validate(booking)

    @app.post("/api/bookings/{booking_id}/cancel", response_model=s.BookingRead)
    def cancel_booking(
        booking_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        settings: Settings = Depends(get_settings),
        notifier: Notifier = Depends(get_notifier),
        now: datetime = Depends(get_clock),
    ):
        booking = bookings.cancel(session, booking_id, actor, settings=settings, notifier=notifier, now=now)
        return s.BookingRead.model_validate(booking)

    @app.get("/api/bookings/{booking_id}/damage", response_model=List[s.DamageReportRead])
    def damage_reports(
        booking_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return [s.DamageReportRead.model_validate(r) for r in bookings.damage_reports(session, booking_id, actor)]

    @app.post("/api/bookings/{booking_id}/damage", response_model=s.DamageReportRead, status_code=201)
    def report_damage(
        booking_id: int,
        payload: s.DamageReportCreate,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        settings: Settings = Depends(get_settings),
        notifier: Notifier = Depends(get_notifier),
        now: datetime = Depends(get_clock),
    ):
        report = bookings.report_damage(
            session, booking_id, actor, payload.description, payload.images, payload.estimated_cost,
            severity=payload.severity, settings=settings, notifier=notifier, now=now,
        )
        return s.DamageReportRead.model_validate(report)

    @app.post("/api/bookings/{booking_id}/payment", response_model=s.BookingRead)
    def record_payment(
        booking_id: int,
        payload: s.PaymentIn,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        now: datetime = Depends(get_clock),
    ):
        booking = bookings.record_payment(session, booking_id, payload.amount_confirmed, actor, now=now)
        return s.BookingRead.model_validate(booking)

    @app.get("/api/bookings/{booking_id}/penalties", response_model=List[s.PenaltyRead])
    def booking_penalties(
        booking_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return [s.PenaltyRead.model_validate(p) for p in penalties.penalties_for_booking(session, booking_id, actor)]

    # ---------------- Rides -----------------
    @app.post("/api/rides/start", response_model=s.RideRead, status_code=201)
    def start_ride(
        payload: s.RideStart,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        notifier: Notifier = Depends(get_notifier),
        now: datetime = Depends(get_clock),
    ):
        lon, lat = payload.location
        ride = rides.start(session, payload.booking_id, actor, lon, lat, notifier=notifier, now=now)
        return s.RideRead.model_validate(ride)

    @app.get("/api/rides", response_model=s.RidePage)
    def list_rides(
        status: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return s.RidePage.model_validate(rides.list_rides(session, actor, status, page, limit))

    @app.get("/api/rides/active", response_model=Optional[s.RideRead])
    def my_active_ride(
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        ride = rides.active_ride(session, actor)
        return s.RideRead.model_validate(ride) if ride else None

    @app.get("/api/rides/active/{customer_id}", response_model=Optional[s.RideRead])
    def customer_active_ride(
        customer_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        ride = rides.customer_active_ride(session, actor, customer_id)
        return s.RideRead.model_validate(ride) if ride else None

    @app.get("/api/rides/history", response_model=List[s.RideRead])
    def ride_history(
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return [s.RideRead.model_validate(r) for r in rides.ride_history(session, actor)]

    @app.get("/api/rides/statistics", response_model=s.RideStatistics)
    def ride_statistics(
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return s.RideStatistics.model_validate(rides.ride_statistics(session, actor))

    @app.get("/api/rides/{ride_id}", response_model=s.RideRead)
    def get_ride(
        ride_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return s.RideRead.model_validate(rides.get_ride(session, ride_id, actor))

    @app.post("/api/rides/{ride_id}/end", response_model=s.RideSettlementRead)
    def end_ride(
        ride_id: int,
        payload: s.RideEnd,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        settings: Settings = Depends(get_settings),
        notifier: Notifier = Depends(get_notifier),
        now: datetime = Depends(get_clock),
    ):
        lon, lat = payload.location
        settlement = rides.end(
            session, ride_id, actor, lon, lat, override_reason=payload.override_reason,
            settings=settings, notifier=notifier, now=now,
        )
        return s.RideSettlementRead.model_validate(settlement)

    @app.post("/api/rides/{ride_id}/track", response_model=s.TrackResult)
    def track_ride(
        ride_id: int,
        payload: s.RideTrack,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        settings: Settings = Depends(get_settings),
        notifier: Notifier = Depends(get_notifier),
        now: datetime = Depends(get_clock),
    ):
        lon, lat = payload.location
        penalty = rides.track(
            session, ride_id, actor, lon, lat, timestamp=payload.timestamp or now,
            settings=settings, notifier=notifier,
        )
        return s.TrackResult(penalty=s.PenaltyRead.model_validate(penalty) if penalty else None)

    @app.get("/api/rides/{ride_id}/issues", response_model=List[s.RideIssueRead])
    def ride_issues(
        ride_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return [s.RideIssueRead.model_validate(i) for i in rides.ride_issues(session, ride_id, actor)]

    @app.post("/api/rides/{ride_id}/issues", response_model=s.RideIssueRead, status_code=201)
    def report_issue(
        ride_id: int,
        payload: s.RideIssueCreate,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        notifier: Notifier = Depends(get_notifier),
        now: datetime = Depends(get_clock),
    ):
        issue = rides.report_issue(session, ride_id, actor, payload.issue, payload.details, notifier=notifier, now=now)
        return s.RideIssueRead.model_validate(issue)

    @app.post("/api/rides/{ride_id}/rate", response_model=s.RideRead)
    def rate_ride(
        ride_id: int,
        payload: s.RatingIn,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return s.RideRead.model_validate(rides.rate(session, ride_id, actor, payload.rating, payload.feedback))

    @app.get("/api/rides/{ride_id}/overrides", response_model=List[s.GeofenceOverrideRead])
    def ride_overrides(
        ride_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return [s.GeofenceOverrideRead.model_validate(o) for o in rides.overrides_for_ride(session, ride_id, actor)]

    # --------------- Penalties --------------
    @app.post("/api/penalties", response_model=s.PenaltyRead, status_code=201)
    def add_penalty(
        payload: s.PenaltyCreate,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        notifier: Notifier = Depends(get_notifier),
        now: datetime = Depends(get_clock),
    ):
        penalty = penalties.add_penalty(
            session, actor, payload.booking_id, payload.reason, payload.amount,
            description=payload.description, evidence=payload.evidence, notifier=notifier, now=now,
        )
        return s.PenaltyRead.model_validate(penalty)

    @app.get("/api/penalties/mine", response_model=List[s.PenaltyRead])
    def my_penalties(
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return [s.PenaltyRead.model_validate(p) for p in penalties.penalties_for_customer(session, actor)]

    @app.get("/api/penalties/statistics")
    def penalty_statistics(
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return penalties.statistics(session, actor)

    @app.get("/api/penalties/customer/{customer_id}", response_model=List[s.PenaltyRead])
    def customer_penalties(
        customer_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return [
            s.PenaltyRead.model_validate(p) for p in penalties.penalties_for_customer(session, actor, customer_id)
        ]

    @app.post("/api/penalties/{penalty_id}/waive", response_model=s.PenaltyRead)
    def waive_penalty(
        penalty_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        now: datetime = Depends(get_clock),
    ):
        return s.PenaltyRead.model_validate(penalties.waive(session, penalty_id, actor, now=now))

    @app.post("/api/penalties/{penalty_id}/pay", response_model=s.PenaltyRead)
    def pay_penalty(
        penalty_id: int,
        payload: s.PenaltyPayment,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        now: datetime = Depends(get_clock),
    ):
        penalty = penalties.mark_paid(session, penalty_id, actor, payload.paid_amount, payload.paid_at or now)
        return s.PenaltyRead.model_validate(penalty)

    @app.post("/api/penalties/{penalty_id}/dispute", response_model=s.PenaltyRead)
    def dispute_penalty(
        penalty_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        now: datetime = Depends(get_clock),
    ):
        return s.PenaltyRead.model_validate(penalties.dispute(session, penalty_id, actor, now=now))

    @app.delete("/api/penalties/{penalty_id}", status_code=204)
    def delete_penalty(
        penalty_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        penalties.remove(session, penalty_id, actor)
        return Response(status_code=204)

    @app.post("/api/bookings/{booking_id}/penalties/reconcile")
    def reconcile_penalty_total(
        booking_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        _require(can.can_settle_penalty(actor), "Only an admin can reconcile penalties")
        with atomic(session):
            total = penalties.reconcile_booking_total(session, booking_id)
        return {"booking_id": booking_id, "penalty_amount": total}

    # ------------- Notifications ------------
    @app.get("/api/notifications", response_model=List[s.NotificationRead])
    def my_notifications(
        unread: bool = False,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        rows = notifications.inbox(session, actor.principal_id, unread_only=unread)
        return [s.NotificationRead.model_validate(n) for n in rows]

    @app.post("/api/notifications/{notification_id}/read", response_model=s.NotificationRead)
    def read_notification(
        notification_id: int,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
        now: datetime = Depends(get_clock),
    ):
        note = notifications.mark_read(session, notification_id, actor.principal_id, now=now)
        return s.NotificationRead.model_validate(note)

    # ------------- Service zones ------------
    @app.get("/api/zones", response_model=List[s.ServiceZoneRead])
    def list_zones(active_only: bool = True, session: Session = Depends(get_session)):
        return [s.ServiceZoneRead.model_validate(z) for z in geofence.service_zones(session, active_only)]

    @app.post("/api/zones", response_model=s.ServiceZoneRead, status_code=201)
    def create_zone(
        payload: s.ServiceZoneCreate,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        zone = geofence.create_zone(
            session, actor, name=payload.name, center_lon=payload.location[0], center_lat=payload.location[1],
            radius_m=payload.radius_m, polygon=payload.polygon,
        )
        return s.ServiceZoneRead.model_validate(zone)

    @app.patch("/api/zones/{zone_id}", response_model=s.ServiceZoneRead)
    def set_zone_active(
        zone_id: int,
        active: bool,
        actor: Principal = Depends(get_principal),
        session: Session = Depends(get_session),
    ):
        return s.ServiceZoneRead.model_validate(geofence.set_zone_active(session, actor, zone_id, active))

    return app

app = create_app()
