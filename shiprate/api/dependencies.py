"""Shared FastAPI dependencies."""

from fastapi import HTTPException, Request

from shiprate.services.orchestrator import JobOrchestrator


def get_orchestrator(request: Request) -> JobOrchestrator:
    """Return the process-wide JobOrchestrator created at startup."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Analysis engine is not running")
    return orchestrator


def get_owner(request: Request) -> str:
    """Return the owner identified by the auth middleware."""
    owner = getattr(request.state, "owner", None)
    if not owner:
        raise HTTPException(status_code=401, detail="Invalid or missing bearer token")
    return owner
