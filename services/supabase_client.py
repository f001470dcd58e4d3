"""HTTP client for the Supabase PostgREST API.

Wraps ``httpx.AsyncClient`` with:
- ``/rest/v1`` base URL construction
- service-key auth (``apikey`` + Bearer headers)
- retry with exponential backoff (network / 5xx errors)
- circuit breaker: fail fast after N consecutive failures
- exact row counts from ``Content-Range``
- request timing logs
- connection-pool lifecycle tied to FastAPI lifespan
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from errors.exceptions import DependencyFailureError

logger = logging.getLogger(__name__)

# Retry / circuit breaker defaults
MAX_RETRIES = 3
RETRY_BASE_DELAY = 0.5  # seconds, doubles each attempt
CIRCUIT_OPEN_THRESHOLD = 5  # consecutive failures before circuit opens
CIRCUIT_RESET_TIMEOUT = 60  # seconds before attempting to close circuit


class SupabaseClientError(DependencyFailureError):
    """Raised when PostgREST returns a non-2xx response."""

    def __init__(self, http_status: int, detail: str, url: str = ""):
        self.http_status = http_status
        self.detail = detail
        self.url = url
        super().__init__("supabase", f"HTTP {http_status}: {detail} ({url})")


class CircuitOpenError(DependencyFailureError):
    """Raised when the circuit breaker is open (backend deemed unavailable)."""

    def __init__(self):
        super().__init__("supabase", "circuit breaker open, backend unavailable")


def parse_content_range(value: str | None) -> int | None:
    """Total from a ``Content-Range`` header (``0-19/57`` or ``*/0``)."""
    if not value or "/" not in value:
        return None
    total = value.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


class SupabaseClient:
    """Async PostgREST client with retry and circuit breaker."""

    def __init__(self, url: str, service_key: str, timeout: float = 15) -> None:
        self._base_url = f"{url.rstrip('/')}/rest/v1"
        self._service_key = service_key
        self._timeout = timeout
        self._http: httpx.AsyncClient | None = None

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_opened_at: float | None = None

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Create the underlying ``httpx.AsyncClient`` connection pool."""
        if self._http is not None:
            return
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._timeout),
            headers=self._auth_headers(),
            limits=httpx.Limits(
                max_connections=30,
                max_keepalive_connections=15,
                keepalive_expiry=30,
            ),
        )
        logger.info("SupabaseClient started: base_url=%s", self._base_url)

    async def close(self) -> None:
        """Gracefully close the connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.info("SupabaseClient closed")

    # -- public API ----------------------------------------------------------

    async def select(
        self,
        table: str,
        params: Any = None,
        *,
        count: bool = False,
    ) -> tuple[list[dict[str, Any]], int | None]:
        """GET rows.  With ``count=True`` also returns the exact total."""
        headers = {"Prefer": "count=exact"} if count else None
        response = await self._request_with_retry(
            "GET", f"/{table}", params=params, headers=headers
        )
        rows = response.json() if response.text else []
        total = parse_content_range(response.headers.get("content-range")) if count else None
        return rows, total

    async def insert(
        self,
        table: str,
        rows: dict[str, Any] | list[dict[str, Any]],
        *,
        on_conflict: str | None = None,
    ) -> list[dict[str, Any]]:
        """POST rows and return the stored representation.

        With *on_conflict* the insert becomes an upsert that merges into the
        existing row for that unique key.
        """
        prefer = ["return=representation"]
        params = None
        if on_conflict:
            prefer.append("resolution=merge-duplicates")
            params = {"on_conflict": on_conflict}
        response = await self._request_with_retry(
            "POST", f"/{table}",
            params=params,
            json_body=rows,
            headers={"Prefer": ",".join(prefer)},
        )
        return response.json() if response.text else []

    async def update(
        self, table: str, params: Any, values: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """PATCH rows matching *params*; returns the updated rows (maybe none)."""
        response = await self._request_with_retry(
            "PATCH", f"/{table}",
            params=params,
            json_body=values,
            headers={"Prefer": "return=representation"},
        )
        return response.json() if response.text else []

    async def delete(self, table: str, params: Any) -> list[dict[str, Any]]:
        """DELETE rows matching *params*; returns the deleted rows."""
        response = await self._request_with_retry(
            "DELETE", f"/{table}",
            params=params,
            headers={"Prefer": "return=representation"},
        )
        return response.json() if response.text else []

    async def rpc(self, function: str, args: dict[str, Any] | None = None) -> Any:
        """Call a Postgres function exposed under ``/rpc``."""
        response = await self._request_with_retry(
            "POST", f"/rpc/{function}", json_body=args or {}
        )
        return response.json() if response.text else None

    # -- circuit breaker -----------------------------------------------------

    @property
    def circuit_open(self) -> bool:
        """True when the backend is deemed unavailable."""
        if self._consecutive_failures < CIRCUIT_OPEN_THRESHOLD:
            return False
        # Check if reset timeout elapsed (half-open → try one request)
        if self._circuit_opened_at is not None:
            elapsed = time.monotonic() - self._circuit_opened_at
            if elapsed >= CIRCUIT_RESET_TIMEOUT:
                logger.info("Circuit breaker half-open: attempting probe request")
                return False
        return True

    def _record_success(self) -> None:
        if self._consecutive_failures > 0:
            logger.info(
                "Supabase recovered after %d consecutive failures",
                self._consecutive_failures,
            )
        self._consecutive_failures = 0
        self._circuit_opened_at = None

    def _record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures >= CIRCUIT_OPEN_THRESHOLD and self._circuit_opened_at is None:
            self._circuit_opened_at = time.monotonic()
            logger.warning(
                "Circuit breaker OPEN: %d consecutive failures, "
                "will retry after %ds",
                self._consecutive_failures,
                CIRCUIT_RESET_TIMEOUT,
            )

    # -- retry logic ---------------------------------------------------------

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: Any = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on network errors and 5xx.  Does NOT retry on 4xx.
        Raises :class:`CircuitOpenError` when circuit is open.
        """
        if self.circuit_open:
            raise CircuitOpenError()

        client = self._ensure_started()
        last_exc: Exception | None = None

        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.monotonic()
            try:
                response = await client.request(
                    method, path, params=params, json=json_body, headers=headers
                )

                elapsed_ms = (time.monotonic() - t0) * 1000
                logger.info(
                    "%s %s → %d (%.0fms)",
                    method, path, response.status_code, elapsed_ms,
                )

                # 4xx: non-retryable client error
                if 400 <= response.status_code < 500:
                    self._record_success()  # server is alive
                    detail = response.text[:500] if response.text else f"HTTP {response.status_code}"
                    raise SupabaseClientError(
                        http_status=response.status_code,
                        detail=detail,
                        url=str(response.url),
                    )

                # 5xx: retryable server error
                if response.status_code >= 500:
                    self._record_failure()
                    last_exc = SupabaseClientError(
                        http_status=response.status_code,
                        detail=response.text[:200] if response.text else "",
                        url=str(response.url),
                    )
                    if attempt < MAX_RETRIES:
                        delay = RETRY_BASE_DELAY * (2 ** (attempt - 1))
                        logger.warning(
                            "%s %s → 5xx, retry %d/%d in %.1fs",
                            method, path, attempt, MAX_RETRIES, delay,
                        )
                        await asyncio.sleep(delay)
                        continue
                    raise last_exc

                self._record_success()
                return response

            except httpx.TransportError as exc:
                elapsed_ms = (time.monotonic() - t0) * 1000
                self._record_failure()
                last_exc = exc
                logger.warning(
                    "%s %s → network error (%.0fms): %s [attempt %d/%d]",
                    method, path, elapsed_ms, exc, attempt, MAX_RETRIES,
                )
                if attempt < MAX_RETRIES:
                    delay = RETRY_BASE_DELAY * (2 ** (attempt - 1))
                    await asyncio.sleep(delay)
                    continue

        # Exhausted all retries on transport errors
        raise DependencyFailureError("supabase", str(last_exc)) from last_exc

    # -- internals -----------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._service_key:
            headers["apikey"] = self._service_key
            headers["Authorization"] = f"Bearer {self._service_key}"
        return headers

    def _ensure_started(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("SupabaseClient not started: call await client.start() first")
        return self._http
