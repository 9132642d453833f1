"""FastAPI application for the shiprate API.

Provides the main application instance with routers, middleware,
and exception handlers configured. Run with:

    uvicorn shiprate.api.main:app
"""

import logging
import sys
import time as _time
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logging.getLogger("shiprate").setLevel(logging.INFO)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shiprate.api.middleware.auth import get_api_tokens, require_bearer_token
from shiprate.api.routes import carrier_accounts, jobs, progress
from shiprate.config import load_config
from shiprate.db.connection import SessionLocal, init_db
from shiprate.errors import NotFoundError, RateShopError, ValidationError, format_error
from shiprate.services.orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)

_startup_time: float = 0.0

try:
    config = load_config()
except RateShopError as e:
    logger.error("%s", format_error(e))
    raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Async lifespan: startup recovery + shutdown cleanup."""
    global _startup_time

    # --- Startup ---
    _startup_time = _time.time()
    init_db()

    if not get_api_tokens():
        logger.warning(
            "SHIPRATE_API_TOKENS is not set; every authenticated request will be rejected."
        )

    orchestrator = JobOrchestrator(SessionLocal, config)
    app.state.orchestrator = orchestrator

    # Crash recovery is non-blocking: failures are logged, not propagated
    try:
        orchestrator.recover_interrupted_jobs()
    except Exception as e:
        logger.error("Startup recovery failed (non-blocking): %s", e)

    yield

    # --- Shutdown ---
    await orchestrator.shutdown()
    app.state.orchestrator = None


app = FastAPI(
    title="shiprate API",
    description="Bulk carrier rate shopping with progressive result persistence",
    version="0.1.0",
    lifespan=lifespan,
)

# Bearer auth for everything except /health and the docs.
app.middleware("http")(require_bearer_token)

# Added after auth so pre-flight requests are answered before auth runs.
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api.cors_allow_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed request bodies as 400 instead of FastAPI's 422."""
    return JSONResponse(
        status_code=400,
        content={
            "error_code": "E-2001",
            "message": "Request body is invalid",
            "details": {"errors": jsonable_encoder(exc.errors())},
        },
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle rejected submissions."""
    return JSONResponse(
        status_code=400,
        content={
            "error_code": exc.code,
            "message": str(exc),
            "details": jsonable_encoder(exc.details) if exc.details else None,
        },
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    """Handle unknown (or foreign) resources."""
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(RateShopError)
async def rateshop_error_handler(request: Request, exc: RateShopError) -> JSONResponse:
    """Handle RateShopError exceptions with consistent format.

    Args:
        request: The incoming request.
        exc: The RateShopError exception.

    Returns:
        JSONResponse with error details.
    """
    return JSONResponse(
        status_code=400,
        content={
            "error_code": exc.code,
            "message": exc.message,
            "remediation": exc.remediation,
            "details": exc.details if exc.details else None,
        },
    )


# Include routers
app.include_router(jobs.router)
app.include_router(progress.router)
app.include_router(carrier_accounts.router)


@app.get("/health")
def health_check(request: Request) -> dict:
    """Health check endpoint. Public.

    Returns:
        Dictionary with status, version, uptime and active job count.
    """
    uptime = int(_time.time() - _startup_time) if _startup_time else 0

    try:
        version = _pkg_version("shiprate")
    except PackageNotFoundError:
        version = "unknown"

    orchestrator = getattr(request.app.state, "orchestrator", None)
    return {
        "status": "healthy",
        "version": version,
        "uptime_seconds": uptime,
        "active_jobs": orchestrator.active_job_count if orchestrator else 0,
    }
