"""Bearer-token auth middleware.

Tokens are configured with SHIPRATE_API_TOKENS as comma-separated
``token:owner`` pairs. A valid token identifies the owner of the jobs and
carrier accounts the request may touch; the middleware stores it on
``request.state.owner``. With no tokens configured every protected
request is rejected.
"""

from __future__ import annotations

import hmac
import logging
import os
import threading
import time

from fastapi import Request
from fastapi.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

_TOKENS_ENV = "SHIPRATE_API_TOKENS"

_PUBLIC_PATH_PREFIXES = (
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
)

# --- Rate limiting for auth failures ---
_AUTH_FAIL_MAX = 10  # Max failures per IP in the time window
_AUTH_FAIL_WINDOW_SECONDS = 300
_auth_failures: dict[str, list[float]] = {}
_auth_lock = threading.Lock()

# X-Forwarded-For is only honored behind a trusted proxy
_TRUST_PROXY = os.environ.get("SHIPRATE_TRUST_PROXY", "").strip().lower() in ("1", "true")


def _get_client_ip(request: Request) -> str:
    """Extract client IP from request."""
    if _TRUST_PROXY:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _is_rate_limited(client_ip: str) -> bool:
    """Check if the client IP has exceeded the auth failure rate limit.

    Args:
        client_ip: Client IP address.

    Returns:
        True if the client should be blocked.
    """
    with _auth_lock:
        now = time.monotonic()
        timestamps = _auth_failures.get(client_ip, [])
        # Prune expired entries
        timestamps = [t for t in timestamps if now - t < _AUTH_FAIL_WINDOW_SECONDS]
        if not timestamps:
            _auth_failures.pop(client_ip, None)
            return False
        _auth_failures[client_ip] = timestamps
        return len(timestamps) >= _AUTH_FAIL_MAX


def _record_auth_failure(client_ip: str) -> None:
    with _auth_lock:
        _auth_failures.setdefault(client_ip, []).append(time.monotonic())


def reset_rate_limiter() -> None:
    """Reset the rate limiter state. Used by tests."""
    with _auth_lock:
        _auth_failures.clear()


def parse_api_tokens(raw: str) -> dict[str, str]:
    """Parse ``token:owner`` pairs into a token -> owner map.

    Malformed pairs (missing either side) are skipped.
    """
    tokens: dict[str, str] = {}
    for pair in raw.split(","):
        token, sep, owner = pair.strip().partition(":")
        if sep and token.strip() and owner.strip():
            tokens[token.strip()] = owner.strip()
    return tokens


def get_api_tokens() -> dict[str, str]:
    """Return configured tokens; read on every call so tests can patch the env."""
    return parse_api_tokens(os.environ.get(_TOKENS_ENV, ""))


def resolve_owner(provided: str, tokens: dict[str, str]) -> str | None:
    """Return the owner for a presented token, comparing in constant time."""
    owner = None
    for token, token_owner in tokens.items():
        if hmac.compare_digest(provided.encode(), token.encode()):
            owner = token_owner
    return owner


def _bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return value.strip()


def should_authenticate(path: str) -> bool:
    """Return True when this path requires a bearer token."""
    return not path.startswith(_PUBLIC_PATH_PREFIXES)


async def require_bearer_token(request: Request, call_next) -> Response:
    """FastAPI middleware entrypoint for bearer-token auth.

    Pre-flight requests always pass through so CORS can answer them.
    """
    if request.method.upper() == "OPTIONS":
        return await call_next(request)
    if not should_authenticate(request.url.path):
        return await call_next(request)

    client_ip = _get_client_ip(request)
    if _is_rate_limited(client_ip):
        logger.warning("Auth rate limit exceeded for IP %s", client_ip)
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many authentication failures. Try again later."},
        )

    provided = _bearer_token(request)
    owner = resolve_owner(provided, get_api_tokens()) if provided else None
    if owner is None:
        _record_auth_failure(client_ip)
        return JSONResponse(
            status_code=401,
            content={"detail": "Invalid or missing bearer token"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    request.state.owner = owner
    return await call_next(request)
