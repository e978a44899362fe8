"""
SQLAlchemy database setup and session management.
"""
import os
import logging
from typing import Optional
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()

# Session factory; bound to an engine by init_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False)

_engine: Optional[Engine] = None


def get_db_schema() -> str:
    """
    Read DB_SCHEMA from environment at connection time (avoids import-order freeze).
    Only 'public' and 'test' are honoured; anything else falls back to 'public'.
    """
    v = (os.getenv("DB_SCHEMA") or "public").strip().lower()
    return v if v in ("public", "test") else "public"


def normalize_database_url(database_url: Optional[str]) -> str:
    """
    Validate and normalize a database URL for SQLAlchemy.

    - postgres:// (Supabase and some providers) becomes postgresql://
    - postgresql:// gets the +psycopg dialect so psycopg 3 is used instead of psycopg2
    - sqlite:// is accepted unchanged for local runs and tests

    Raises:
        RuntimeError: If the URL is missing or is not PostgreSQL/SQLite
    """
    if not database_url:
        raise RuntimeError(
            "DATABASE_URL environment variable is required. "
            "Please set DATABASE_URL to a PostgreSQL connection string."
        )

    if database_url.startswith("sqlite"):
        return database_url

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    if database_url.startswith("postgresql+psycopg://"):
        return database_url
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+psycopg://", 1)

    raise RuntimeError(
        f"DATABASE_URL must be a PostgreSQL connection string (postgresql:// or postgres://). "
        f"Got: {database_url[:50]}..."
    )


def create_db_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    PostgreSQL engines get a bounded pool with pre-ping and hourly recycling so
    stale connections are replaced, plus a search_path listener driven by DB_SCHEMA.
    """
    url = normalize_database_url(database_url)

    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})

    engine = create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=3600,
        connect_args={
            "connect_timeout": 10,
        }
    )

    @event.listens_for(engine, "connect")
    def _set_search_path_connect(dbapi_connection, connection_record):
        """Set search_path on every new connection (pool-safe)."""
        cursor = dbapi_connection.cursor()
        try:
            if get_db_schema() == "test":
                cursor.execute("SET search_path TO test, public")
            else:
                cursor.execute("SET search_path TO public")
        finally:
            cursor.close()

    return engine


def init_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create the process-wide engine and bind SessionLocal to it.

    Called once from the app factory; tests build their own engines instead.
    """
    global _engine
    if database_url is None:
        from entitlement_sync.config import settings
        database_url = settings.database_url
    _engine = create_db_engine(database_url)
    SessionLocal.configure(bind=_engine)
    logger.info("Database engine initialized (dialect=%s)", _engine.dialect.name)
    return _engine


def get_engine() -> Engine:
    """Return the engine created by init_engine()."""
    if _engine is None:
        raise RuntimeError("Database engine not initialized. Call init_engine() first.")
    return _engine


def init_db(engine: Optional[Engine] = None) -> None:
    """
    Optionally create tables.

    Alembic migrations are the source of truth for the schema. Tables are only
    created here if DB_CREATE_ALL=true is explicitly set (local development).
    """
    from entitlement_sync import models  # noqa: F401

    if os.getenv("DB_CREATE_ALL", "").lower() == "true":
        Base.metadata.create_all(bind=engine or get_engine())
        logger.warning(
            "DB_CREATE_ALL=true: Tables created via create_all(). "
            "This should only be used for local development. "
            "Use 'flask db upgrade' for production schema management."
        )


__all__ = ['Base', 'SessionLocal', 'init_db', 'init_engine', 'get_engine',
           'create_db_engine', 'normalize_database_url', 'get_db_schema']
