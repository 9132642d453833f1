"""Pytest fixtures for API tests.

Provides a TestClient whose database and orchestrator dependencies point
at the per-test SQLite database, with bearer tokens configured for two
owners.
"""

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from shiprate.api.dependencies import get_orchestrator
from shiprate.api.main import app
from shiprate.api.middleware.auth import reset_rate_limiter
from shiprate.config import ApiConfig, ShipRateConfig
from shiprate.db.connection import get_db
from shiprate.services.orchestrator import JobOrchestrator


@pytest.fixture(autouse=True)
def api_tokens(monkeypatch):
    """Configure two owners and start every test with a clean rate limiter."""
    monkeypatch.setenv("SHIPRATE_API_TOKENS", "tok-alice:alice,tok-bob:bob")
    reset_rate_limiter()
    yield
    reset_rate_limiter()


@pytest.fixture
def orchestrator(session_factory: Callable[[], Session]) -> JobOrchestrator:
    """Orchestrator bound to the per-test database, polling fast for SSE."""
    return JobOrchestrator(
        session_factory, ShipRateConfig(api=ApiConfig(progress_poll_seconds=0.05))
    )


@pytest.fixture
def client(
    session_factory: Callable[[], Session], orchestrator: JobOrchestrator
) -> Generator[TestClient, None, None]:
    """Create a TestClient with overridden database and orchestrator dependencies.

    Yields:
        TestClient configured for testing.
    """

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()

