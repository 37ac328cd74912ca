"""Database configuration and base setup for the Submission Engine."""

import os
from typing import Generator, Optional

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# Default to a local SQLite database when DATABASE_URL is not provided.
DEFAULT_DATABASE_URL = "sqlite:///./submission_engine.db"


def _ensure_sync_driver(url: URL) -> URL:
    """Force a synchronous driver for Alembic and the ORM engine."""

    if url.drivername.startswith("postgresql+"):
        # Normalize any async driver variants to psycopg (sync)
        if any(token in url.drivername for token in ("async", "aiopg")):
            url = url.set(drivername="postgresql+psycopg")
    elif url.drivername.startswith("sqlite+"):
        if "aiosqlite" in url.drivername:
            url = url.set(drivername="sqlite")

    return url


def get_database_url(raw_url: Optional[str] = None) -> str:
    """Return a database URL with a guaranteed synchronous driver."""

    url = make_url(raw_url or os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL)
    # str(url) would mask the password with ***
    return _ensure_sync_driver(url).render_as_string(hide_password=False)


def _is_memory_sqlite(url: URL) -> bool:
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def _use_immediate_transactions(engine: Engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    SQLite ignores SELECT ... FOR UPDATE, so BEGIN IMMEDIATE is what
    serializes two writers on the same run. pysqlite's own transaction
    handling is switched off so that SAVEPOINTs behave as well.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: Optional[str] = None) -> Engine:
    """Create an engine for ``database_url`` with per-backend settings."""

    url = make_url(get_database_url(database_url))

    if url.get_backend_name() == "sqlite":
        # SQLite configuration for development/testing
        if _is_memory_sqlite(url):
            new_engine = create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            new_engine = create_engine(
                url,
                connect_args={"check_same_thread": False, "timeout": 15},
            )
        _use_immediate_transactions(new_engine)
        return new_engine

    # PostgreSQL configuration for production
    return create_engine(
        url,
        pool_size=20,
        max_overflow=30,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """
    Create and cache the database engine.

    Lazy so that environment variables are read at runtime rather than at
    import time.
    """
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def get_session_local(bind: Optional[Engine] = None) -> sessionmaker:
    """Get a sessionmaker bound to ``bind`` (default: the cached engine).

    Objects stay usable after commit because services hand them back to
    callers once their own session is closed.
    """
    return sessionmaker(
        bind=bind or get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


def get_db() -> Generator[Session, None, None]:
    """Yield a database session and close it afterwards."""
    session_local = get_session_local()
    db = session_local()
    try:
        yield db
    finally:
        db.close()


def init_database(bind: Optional[Engine] = None) -> None:
    """Create all tables."""
    # Import all models to ensure they're registered with Base
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or get_engine())


def drop_database(bind: Optional[Engine] = None) -> None:
    """Drop all tables. Use with caution!"""
    from . import models  # noqa: F401

    Base.metadata.drop_all(bind=bind or get_engine())
