"""Async client for remote carrier rating APIs.

One RemoteRateClient is created per job. It caches OAuth tokens per
carrier account, retries transient failures with a bounded loop and a
fixed backoff, and remembers accounts whose credentials were rejected so
later shipments in the same job skip them without another HTTP call.

Example:
    async with RemoteRateClient(config) as client:
        candidates = await client.quote(shipment, account, ["03", "02"])
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from shiprate.config import CarrierConfig
from shiprate.services.carrier_adapters import CarrierAdapter, get_adapter
from shiprate.services.credentials import CarrierCredentials, resolve_credentials
from shiprate.services.errors import (
    AuthError,
    CarrierResponseError,
    RateNotFoundError,
    TransientError,
)
from shiprate.services.models import CarrierAccountConfig, RateCandidate, ShipmentInput

logger = logging.getLogger(__name__)

# Refresh tokens this many seconds before the carrier says they expire
TOKEN_EXPIRY_MARGIN_SECONDS = 60
DEFAULT_TOKEN_TTL_SECONDS = 3600
_ERROR_BODY_LIMIT = 300

_TRANSIENT_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})
_AUTH_STATUS = frozenset({401, 403})


@dataclass
class _CachedToken:
    access_token: str
    expires_at: float


def _body_excerpt(response: httpx.Response) -> str:
    return response.text[:_ERROR_BODY_LIMIT]


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class RemoteRateClient:
    """Authenticated rating calls against UPS and FedEx.

    Attributes:
        config: Endpoint and retry policy.
        retry_attempts_total: Number of retry sleeps performed.
    """

    def __init__(
        self,
        config: CarrierConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        credential_resolver: Callable[[CarrierAccountConfig], CarrierCredentials] = resolve_credentials,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the client.

        Args:
            config: Carrier endpoints, timeout and retry policy.
            http_client: Shared httpx client. Created (and owned) when None.
            credential_resolver: Returns OAuth credentials for an account.
            sleep: Awaitable used for retry backoff (injectable for tests).
            clock: Monotonic clock used for token expiry.
        """
        self.config = config or CarrierConfig()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.request_timeout_seconds)
        )
        self._resolve_credentials = credential_resolver
        self._sleep = sleep
        self._clock = clock
        self._tokens: dict[str, _CachedToken] = {}
        self._token_locks: dict[str, asyncio.Lock] = {}
        self._auth_failures: dict[str, AuthError] = {}
        self.retry_attempts_total = 0

    async def __aenter__(self) -> "RemoteRateClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def quote(
        self,
        shipment: ShipmentInput,
        account: CarrierAccountConfig,
        service_codes: Sequence[str],
    ) -> list[RateCandidate]:
        """Rate a shipment for each requested service of one account.

        A service that is not offered, keeps failing transiently or returns
        an unusable response is logged and skipped; the others still run.

        Args:
            shipment: Shipment to rate.
            account: API-based carrier account.
            service_codes: Carrier service codes to request.

        Returns:
            One candidate per service that produced a usable rate; empty
            when none did.

        Raises:
            AuthError: Credentials are missing or rejected. Raised again
                immediately for every later call on the same account.
        """
        if account.id in self._auth_failures:
            raise self._auth_failures[account.id]

        adapter = get_adapter(account.carrier_type)
        candidates: list[RateCandidate] = []
        for service_code in service_codes:
            if account.id in self._auth_failures:
                raise self._auth_failures[account.id]
            try:
                candidates.append(
                    await self._rate_service(shipment, account, adapter, service_code)
                )
            except RateNotFoundError as e:
                logger.info(
                    "No %s rate for shipment %s service %s: %s",
                    account.carrier_type, shipment.shipment_id, service_code, e.message,
                )
            except TransientError as e:
                logger.warning(
                    "Dropping %s service %s for shipment %s after %d attempt(s): %s",
                    account.carrier_type, service_code, shipment.shipment_id,
                    self.config.max_attempts, e.message,
                )
            except CarrierResponseError as e:
                logger.warning(
                    "Skipping %s service %s for shipment %s: %s",
                    account.carrier_type, service_code, shipment.shipment_id, e.message,
                )
        return candidates

    async def _rate_service(
        self,
        shipment: ShipmentInput,
        account: CarrierAccountConfig,
        adapter: CarrierAdapter,
        service_code: str,
    ) -> RateCandidate:
        """Rate one service, retrying TransientError up to max_attempts."""
        attempt = 1
        while True:
            try:
                token = await self._get_token(account, adapter)
                return await self._send_rate_request(
                    shipment, account, adapter, service_code, token
                )
            except AuthError as e:
                self._record_auth_failure(account, e)
                raise
            except TransientError as e:
                if attempt >= self.config.max_attempts:
                    raise
                logger.info(
                    "Transient %s error for account %s (attempt %d/%d), retrying in %.1fs: %s",
                    account.carrier_type, account.id, attempt,
                    self.config.max_attempts, self.config.retry_backoff_seconds, e.message,
                )
                self.retry_attempts_total += 1
                attempt += 1
                await self._sleep(self.config.retry_backoff_seconds)

    def _record_auth_failure(self, account: CarrierAccountConfig, error: AuthError) -> None:
        if account.id not in self._auth_failures:
            logger.warning(
                "Disabling %s account %s for this job: %s",
                account.carrier_type, account.id, error.message,
            )
        self._auth_failures[account.id] = error
        self._tokens.pop(account.id, None)

    async def _get_token(self, account: CarrierAccountConfig, adapter: CarrierAdapter) -> str:
        """Return a cached access token or fetch a new one."""
        cached = self._tokens.get(account.id)
        if cached and cached.expires_at > self._clock():
            return cached.access_token

        lock = self._token_locks.setdefault(account.id, asyncio.Lock())
        async with lock:
            # Another shipment may have had the credentials rejected while we waited
            if account.id in self._auth_failures:
                raise self._auth_failures[account.id]
            cached = self._tokens.get(account.id)
            if cached and cached.expires_at > self._clock():
                return cached.access_token

            credentials = self._resolve_credentials(account)
            base_url = adapter.base_url(account, self.config)
            token_request = adapter.token_request(base_url, credentials)

            try:
                response = await self._client.post(
                    token_request.url,
                    data=token_request.data,
                    auth=token_request.auth,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
            except httpx.TimeoutException as e:
                raise TransientError.from_code(
                    "E-3001", carrier=account.carrier_type, reason="token request timed out"
                ) from e
            except httpx.TransportError as e:
                raise TransientError.from_code(
                    "E-3001", carrier=account.carrier_type, reason=f"token request failed: {e}"
                ) from e

            if response.status_code in _TRANSIENT_STATUS:
                raise TransientError.from_code(
                    "E-3001",
                    carrier=account.carrier_type,
                    reason=f"token endpoint returned HTTP {response.status_code}",
                )
            if response.status_code != 200:
                raise AuthError.from_code(
                    "E-5001",
                    carrier=account.carrier_type,
                    account_id=account.id,
                    reason=f"HTTP {response.status_code}",
                    details={"body": _body_excerpt(response)},
                )

            body = _json_or_none(response) or {}
            access_token = body.get("access_token") if isinstance(body, dict) else None
            if not access_token:
                raise AuthError.from_code(
                    "E-5001",
                    carrier=account.carrier_type,
                    account_id=account.id,
                    reason="token response has no access_token",
                )

            try:
                ttl = int(body.get("expires_in", DEFAULT_TOKEN_TTL_SECONDS))
            except (TypeError, ValueError):
                ttl = DEFAULT_TOKEN_TTL_SECONDS
            self._tokens[account.id] = _CachedToken(
                access_token=access_token,
                expires_at=self._clock() + max(ttl - TOKEN_EXPIRY_MARGIN_SECONDS, 0),
            )
            logger.debug("Fetched %s token for account %s", account.carrier_type, account.id)
            return access_token

    async def _send_rate_request(
        self,
        shipment: ShipmentInput,
        account: CarrierAccountConfig,
        adapter: CarrierAdapter,
        service_code: str,
        token: str,
    ) -> RateCandidate:
        """Issue one rating request and map its outcome onto the error taxonomy."""
        url = adapter.base_url(account, self.config) + adapter.rating_path
        payload = adapter.build_rate_request(shipment, account, service_code)

        try:
            response = await self._client.post(
                url, json=payload, headers=adapter.rating_headers(token)
            )
        except httpx.TimeoutException as e:
            raise TransientError.from_code(
                "E-3001", carrier=account.carrier_type, reason="rating request timed out"
            ) from e
        except httpx.TransportError as e:
            raise TransientError.from_code(
                "E-3001", carrier=account.carrier_type, reason=f"rating request failed: {e}"
            ) from e

        status = response.status_code
        if 200 <= status < 300:
            body = _json_or_none(response)
            if body is None:
                raise CarrierResponseError.from_code(
                    "E-3003",
                    carrier=account.carrier_type,
                    service_code=service_code,
                    reason="response body is not JSON",
                )
            try:
                return adapter.parse_rate_response(body, account, service_code)
            except (AttributeError, TypeError, KeyError, ValueError, ArithmeticError) as e:
                raise CarrierResponseError.from_code(
                    "E-3003",
                    carrier=account.carrier_type,
                    service_code=service_code,
                    reason=f"unexpected response shape ({e.__class__.__name__}: {e})"[:200],
                ) from e

        if status in _AUTH_STATUS:
            self._tokens.pop(account.id, None)
            raise AuthError.from_code(
                "E-5001",
                carrier=account.carrier_type,
                account_id=account.id,
                reason=f"rating endpoint returned HTTP {status}",
                details={"body": _body_excerpt(response)},
            )
        if status in _TRANSIENT_STATUS:
            raise TransientError.from_code(
                "E-3001",
                carrier=account.carrier_type,
                reason=f"HTTP {status}",
            )
        if status == 404 or adapter.is_no_service(_json_or_none(response)):
            raise RateNotFoundError.from_code(
                "E-3002", carrier=account.carrier_type, service_code=service_code
            )
        raise CarrierResponseError.from_code(
            "E-3003",
            carrier=account.carrier_type,
            service_code=service_code,
            reason=f"HTTP {status}",
            details={"body": _body_excerpt(response)},
        )
