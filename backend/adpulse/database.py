"""Database engine and session factories.

WHAT:
    Builds the SQLAlchemy engine and session factory from an explicit
    database URL. `create_app` stores both on `app.state`; workers and
    scripts call `build_engine` / `build_session_factory` themselves.

WHY:
    No engine is created at import time, so tests and tools can point the
    app at an in-memory SQLite database without touching the environment.

USAGE:
    engine = build_engine(settings.DATABASE_URL)
    SessionLocal = build_session_factory(engine)

    with get_sync_session(SessionLocal) as db:
        connections = db.query(Connection).all()
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Base is defined in adpulse.models to ensure a single registry across the app
from .models import Base


def build_engine(database_url: str) -> Engine:
    """Create an engine with pool settings suited to the backend.

    NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
    In-memory SQLite uses a StaticPool so every session sees the same DB.
    """
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set. Ensure backend/.env is loaded or env var is exported.")

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(
        database_url,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=engine)


@contextmanager
def get_sync_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI (workers, scripts, tests)."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
