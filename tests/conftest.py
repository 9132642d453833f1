"""Root-level pytest fixtures for all tests.

Provides shared fixtures for:
- Database fixtures (file-based SQLite, safe for worker threads)
- Common pipeline inputs
"""

import os
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

# The module-level engine in shiprate.db.connection is created at import
# time, so point it at a throwaway file before anything imports shiprate.
_SESSION_DB_DIR = tempfile.mkdtemp(prefix="shiprate-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{Path(_SESSION_DB_DIR) / 'shiprate.db'}")
os.environ.setdefault("SHIPRATE_DATA_DIR", _SESSION_DB_DIR)

from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from shiprate.db.connection import create_db_engine  # noqa: E402
from shiprate.db.models import Base  # noqa: E402


# ============================================================================
# Pytest Markers
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests requiring external services"
    )


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def session_factory(tmp_path: Path) -> Generator[Callable[[], Session], None, None]:
    """Session factory bound to a fresh file-based SQLite database.

    File-based so sessions opened from asyncio.to_thread workers see the
    same data as the test.
    """
    engine = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture
def db(session_factory: Callable[[], Session]) -> Generator[Session, None, None]:
    """A session on the per-test database."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
