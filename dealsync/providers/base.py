from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import logging
from typing import Any

import httpx

from dealsync.core.config import get_settings
from dealsync.core.errors import AuthError, RateLimitError, RemoteApiError
from dealsync.services.rate_governor import RateGovernor
from dealsync.services.resilience import TransientException, retry_async


logger = logging.getLogger(__name__)


def _transport_retryable(exc: Exception) -> bool:
    # Only connection-level failures are retried here; HTTP statuses are mapped below.
    return isinstance(exc, TransientException)


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Seconds to wait from a Retry-After header given as seconds or an HTTP-date."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - (now or datetime.now(timezone.utc))).total_seconds(), 0.0)


def _error_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]


class PlatformGateway:
    """Thin call layer in front of one platform.

    Each attempt waits on the governor first, then feeds the response's
    quota headers back into it. Non-success statuses become typed errors.
    """

    platform = "platform"

    def __init__(
        self,
        governor: RateGovernor,
        *,
        base_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._governor = governor
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=settings.ext_call_timeout_ms / 1000,
            transport=transport,
        )

    async def __aenter__(self) -> "PlatformGateway":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _auth_headers(self) -> dict[str, str]:
        return {}

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        allow_not_found: bool = False,
    ) -> httpx.Response | None:
        # Credential lookup may refresh a token; keep it out of the timed attempt.
        headers = {"Accept": "application/json", **(await self._auth_headers())}

        async def _send() -> httpx.Response:
            return await self._client.request(method, path, params=params, json=json, headers=headers)

        try:
            response = await retry_async(_send, retryable=_transport_retryable, before_attempt=self._governor.admit)
        except (httpx.HTTPError, TimeoutError) as exc:
            raise RemoteApiError(self.platform, None, f"{self.platform} request failed: {type(exc).__name__}") from exc
        await self._governor.update_from_headers(response.headers)

        if response.status_code == 404 and allow_not_found:
            return None
        if response.status_code == 401:
            raise AuthError(f"{self.platform} rejected the credential")
        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            logger.warning("platform_rate_limited platform=%s path=%s retry_after=%s", self.platform, path, retry_after)
            raise RateLimitError(self.platform, retry_after)
        if response.status_code >= 400:
            logger.warning("platform_call_failed platform=%s method=%s path=%s status=%s", self.platform, method, path, response.status_code)
            raise RemoteApiError(
                self.platform,
                response.status_code,
                f"{self.platform} {method} {path} failed with status {response.status_code}",
                body=_error_body(response),
            )
        return response
