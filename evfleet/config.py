# evfleet/config.py
from __future__ import annotations
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
load_dotenv()


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _database_url() -> str:
    url = os.getenv("DATABASE_URL", "").strip() or "sqlite:///./evfleet.db"
    # Neon/Heroku style URLs need the psycopg driver spelled out
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


@dataclass(frozen=True)
class Settings:
    database_url: str = field(default_factory=_database_url)
    allowed_origins: List[str] = field(default_factory=lambda: [
        o.strip()
        for o in os.getenv("ALLOWED_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173").split(",")
        if o.strip()
    ])
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    # geofencing
    geofence_polygon_vertices: int = field(default_factory=lambda: _int("GEOFENCE_POLYGON_VERTICES", 32))
    geofence_violation_threshold_minutes: float = field(
        default_factory=lambda: _float("GEOFENCE_VIOLATION_THRESHOLD_MINUTES", 10.0)
    )

    # ride pricing snapshot
    included_km: float = field(default_factory=lambda: _float("INCLUDED_KM", 10.0))
    extra_km_rate: float = field(default_factory=lambda: _float("EXTRA_KM_RATE", 5.0))

    # penalty policy
    damage_penalty_base: float = field(default_factory=lambda: _float("DAMAGE_PENALTY_BASE", 500.0))
    cancellation_penalty_base: float = field(default_factory=lambda: _float("CANCELLATION_PENALTY_BASE", 100.0))
    improper_parking_penalty_base: float = field(
        default_factory=lambda: _float("IMPROPER_PARKING_PENALTY_BASE", 200.0)
    )
    geofence_penalty_base: float = field(default_factory=lambda: _float("GEOFENCE_PENALTY_BASE", 150.0))
    late_penalty_type: str = field(default_factory=lambda: os.getenv("LATE_PENALTY_TYPE", "per_minute"))
    late_penalty_rate: float = field(default_factory=lambda: _float("LATE_PENALTY_RATE", 2.0))
    late_penalty_max_minutes: int = field(default_factory=lambda: _int("LATE_PENALTY_MAX_MINUTES", 7 * 24 * 60))
    cancellation_window_minutes: int = field(default_factory=lambda: _int("CANCELLATION_WINDOW_MINUTES", 30))


@lru_cache
def get_settings() -> Settings:
    return Settings()
