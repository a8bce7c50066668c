"""HTTP client for the lesson document API.

Wraps ``httpx.AsyncClient`` with:
- base URL + API prefix construction
- bearer token from a :class:`TokenProvider`, read on every request
- retry with a fixed delay (network / 5xx errors), no backoff escalation
- mapping of 401/403/404/409/429 onto the ``errors`` hierarchy
- request timing logs
- connection-pool lifecycle tied to FastAPI lifespan
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from config.settings import get_settings
from errors import (
    AuthError,
    DocumentAccessError,
    DocumentStillProcessingError,
    ForbiddenError,
    NotFoundError,
    RateLimitError,
    TransientNetworkError,
)
from models.document import ProcessingState
from services.auth import TokenProvider, settings_token_provider

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------
_client: DocumentApiClient | None = None

DEFAULT_RATE_LIMIT = 5  # accesses per hour when a 429 omits maxRequests

_datetime_adapter = TypeAdapter(datetime)


def _parse_datetime(value: Any, default: datetime) -> datetime:
    if value in (None, ""):
        return default
    try:
        return _datetime_adapter.validate_python(value)
    except ValidationError:
        return default


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def error_for_response(response: httpx.Response) -> DocumentAccessError:
    """Map a non-2xx, non-5xx response onto a typed exception."""
    status = response.status_code
    if status == 401:
        return AuthError()
    if status == 403:
        return ForbiddenError()
    if status == 404:
        return NotFoundError()
    if status == 409:
        body = _json_or_empty(response)
        try:
            state = ProcessingState(body.get("processingStatus") or "PROCESSING")
        except ValueError:
            state = ProcessingState.PROCESSING
        return DocumentStillProcessingError(state)
    if status == 429:
        body = _json_or_empty(response)
        fallback = datetime.now(timezone.utc) + timedelta(hours=1)
        return RateLimitError(
            limit=int(body.get("maxRequests") or body.get("limit") or DEFAULT_RATE_LIMIT),
            remaining=int(body.get("remaining") or 0),
            reset_at=_parse_datetime(body.get("resetAt"), fallback),
        )
    return DocumentAccessError(
        "Error while contacting the document service. Try again.",
        status_code=status,
    )


class DocumentApiClient:
    """Async HTTP client for the document API with fixed-delay retry."""

    def __init__(
        self,
        token_provider: TokenProvider | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        if base_url is None:
            base_url = (
                f"{settings.documents_api_base_url.rstrip('/')}"
                f"{settings.documents_api_prefix}"
            )
        self._base_url = base_url
        self._timeout = settings.documents_api_timeout if timeout is None else timeout
        self._max_attempts = (
            settings.transport_max_attempts if max_attempts is None else max_attempts
        )
        self._retry_delay = (
            settings.transport_retry_delay if retry_delay is None else retry_delay
        )
        self._token_provider = token_provider or settings_token_provider()
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Create the underlying ``httpx.AsyncClient`` connection pool."""
        if self._http is not None:
            return
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._timeout),
            transport=self._transport,
            limits=httpx.Limits(
                max_connections=30,
                max_keepalive_connections=15,
                keepalive_expiry=30,
            ),
        )
        logger.info("DocumentApiClient started, base_url=%s", self._base_url)

    async def close(self) -> None:
        """Gracefully close the connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.info("DocumentApiClient closed")

    @property
    def base_url(self) -> str:
        return self._base_url

    # -- public API ----------------------------------------------------------

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Send a GET request with retry logic.

        Raises a :class:`DocumentAccessError` subclass on failure.
        """
        return await self._request_with_retry("GET", path, params=params)

    async def post(self, path: str, json_body: dict[str, Any] | None = None) -> Any:
        """Send a POST request with retry logic."""
        return await self._request_with_retry("POST", path, json_body=json_body)

    # -- retry logic ---------------------------------------------------------

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        """Execute an HTTP request, retrying transient failures.

        Retries on:
        - Network errors (``httpx.TransportError``)
        - Server errors (5xx)

        Every attempt waits the same ``retry_delay``.  4xx responses are
        mapped by :func:`error_for_response` and raised without retry.
        """
        client = self._ensure_started()
        headers = self._auth_headers()
        last_exc: DocumentAccessError | None = None

        for attempt in range(1, self._max_attempts + 1):
            t0 = time.monotonic()
            try:
                response = await client.request(
                    method, path, params=params, json=json_body, headers=headers,
                )
            except httpx.TransportError as exc:
                elapsed_ms = (time.monotonic() - t0) * 1000
                logger.warning(
                    "%s %s → network error (%.0fms): %s [attempt %d/%d]",
                    method, path, elapsed_ms, exc, attempt, self._max_attempts,
                )
                last_exc = TransientNetworkError()
            else:
                elapsed_ms = (time.monotonic() - t0) * 1000
                logger.info(
                    "%s %s → %d (%.0fms)",
                    method, path, response.status_code, elapsed_ms,
                )

                if response.status_code >= 500:
                    last_exc = TransientNetworkError(status_code=response.status_code)
                    logger.warning(
                        "%s %s → %d, attempt %d/%d",
                        method, path, response.status_code, attempt, self._max_attempts,
                    )
                elif response.status_code >= 400:
                    raise error_for_response(response)
                else:
                    if not response.content:
                        return {}
                    return response.json()

            if attempt < self._max_attempts:
                await asyncio.sleep(self._retry_delay)

        # Exhausted all attempts
        assert last_exc is not None
        raise last_exc

    # -- internals -----------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        token = self._token_provider.get_token()
        if not token:
            raise AuthError(status_code=None)
        return {"Authorization": f"Bearer {token}"}

    def _ensure_started(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("DocumentApiClient not started; call await client.start() first")
        return self._http


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------

def get_document_client() -> DocumentApiClient:
    """Return the module-level DocumentApiClient singleton (create if needed)."""
    global _client
    if _client is None:
        _client = DocumentApiClient()
    return _client
