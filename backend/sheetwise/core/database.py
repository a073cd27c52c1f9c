"""Database configuration and session management.

The worker talks to the database through a synchronous SQLAlchemy
engine and the ``SessionLocal`` session factory defined here.  The
connection string comes from ``DATABASE_URL``.  Postgres URLs are
normalised to the psycopg (v3) driver.  When no URL is configured a
local SQLite database may be used in development if
``DB_DEV_FALLBACK_SQLITE`` is enabled; otherwise import fails fast.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from sheetwise.core.config import settings

logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite:///./sheetwise.db"

# Declarative base
Base = declarative_base()


def resolve_database_url(raw_url: str | None = None) -> str:
    """Return the sync SQLAlchemy URL the worker should connect with.

    ``postgres://``, ``postgresql://`` and ``postgresql+psycopg2://`` all
    map to ``postgresql+psycopg://``; async driver suffixes are stripped.
    """
    db_url = raw_url or settings.DATABASE_URL or os.getenv("DATABASE_URL")
    if not db_url:
        if not settings.DB_DEV_FALLBACK_SQLITE:
            raise RuntimeError(
                "No database URL provided via DATABASE_URL; with "
                "DB_DEV_FALLBACK_SQLITE=false, a Postgres URL is required."
            )
        return SQLITE_FALLBACK_URL

    db_url = db_url.replace("+asyncpg", "").replace("+aiosqlite", "")
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql+psycopg://", 1)
    elif db_url.startswith("postgresql://"):
        db_url = db_url.replace("postgresql://", "postgresql+psycopg://", 1)
    elif db_url.startswith("postgresql+psycopg2://"):
        db_url = db_url.replace("postgresql+psycopg2://", "postgresql+psycopg://", 1)
    return db_url


def build_engine(db_url: str | None = None) -> Engine:
    """Create an engine with pooling suited to a threaded worker."""
    url = resolve_database_url(db_url)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,  # Test connections before using them
        pool_size=5,         # One per worker thread
        max_overflow=10,
        pool_recycle=3600,
    )


engine = build_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(bind: Engine | None = None) -> None:
    """Create all tables defined on the declarative ``Base``."""
    # Import all models to ensure metadata is populated
    from sheetwise.models import tables  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db_debug_info() -> Dict[str, Any]:
    """Return non-sensitive information about the current DB engine."""
    url_obj = make_url(str(engine.url))
    return {
        "environment": settings.ENVIRONMENT,
        "drivername": url_obj.drivername,
        "host": url_obj.host,
        "port": url_obj.port,
        "database": url_obj.database,
        "url": str(url_obj.set(password=None)),
    }
