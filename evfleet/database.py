# evfleet/database.py
from __future__ import annotations
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from .config import get_settings


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every checkout sees an empty db
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    # Always require TLS on hosted Postgres
    if url.startswith("postgresql") and "sslmode=" not in url and "localhost" not in url:
        sep = "&" if "?" in url else "?"
        url = f"{url}{sep}sslmode=require"

    return create_engine(
        url,
        pool_pre_ping=True,   # auto-reconnect
        pool_size=5,
        max_overflow=10,
    )


# --- engine ------------------------------
engine = make_engine(get_settings().database_url)


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session


def init_db(bind: Engine = engine) -> None:
    # Creates tables that don't exist; does not drop/alter
    SQLModel.metadata.create_all(bind)


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Commit everything done in the block, or nothing at all."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
