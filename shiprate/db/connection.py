"""Database connection management for shiprate.

Provides synchronous database access using SQLAlchemy. Async callers
(the job pipeline) wrap session work in asyncio.to_thread().

Usage:
    from shiprate.db.connection import get_db, init_db

    init_db()  # Create tables
    db = next(get_db())
    # ... use db session
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from shiprate.db.models import Base

logger = logging.getLogger(__name__)


# Configuration
def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL
    2. sqlite:///<platform data dir>/shiprate.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    from shiprate.utils.paths import get_default_db_path
    return f"sqlite:///{get_default_db_path()}"


def create_db_engine(url: str, echo: bool = False):
    """Create an engine with the SQLite pragmas applied on every connection.

    Args:
        url: SQLAlchemy database URL.
        echo: Whether to log emitted SQL.

    Returns:
        Configured SQLAlchemy Engine.
    """
    is_sqlite = url.startswith("sqlite")
    db_engine = create_engine(
        url,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        echo=echo,
    )

    if is_sqlite:
        event.listen(db_engine, "connect", set_sqlite_pragma)
    return db_engine


def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: Referential integrity (disabled by default in SQLite).
    - journal_mode=WAL: Readers (status polling) do not block the single
      result writer of a running job.
    - synchronous=NORMAL: Commits are durable after WAL fsync.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.close()


# Engine creation
DATABASE_URL = get_database_url()

engine = create_db_engine(
    DATABASE_URL,
    echo=os.environ.get("SQL_ECHO", "").lower() == "true",
)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


# Dependency functions for FastAPI


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for synchronous operations.

    Intended for use with FastAPI's Depends() for request-scoped sessions.

    Yields:
        Session: SQLAlchemy session that will be closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions outside of FastAPI.

    Usage:
        with get_db_context() as db:
            job = db.query(AnalysisJob).first()
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """Create all database tables.

    Safe to call multiple times - will not recreate existing tables.
    """
    Base.metadata.create_all(bind=engine)
    logger.debug("Database initialized at %s", engine.url.render_as_string(hide_password=True))


def close_db() -> None:
    """Close the engine and dispose of connection pool."""
    engine.dispose()
