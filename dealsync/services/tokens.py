from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable

import httpx

from dealsync.core.config import get_settings
from dealsync.core.errors import AuthError, RemoteApiError
from dealsync.domain.records import Credential
from dealsync.services.credentials import CredentialStore
from dealsync.services.resilience import retry_async


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenLifecycleManager:
    """Hands out Xero credentials that are valid for the next call.

    Refreshes for one (user, tenant) pair are single-flight: the first caller
    that finds the credential near expiry starts a refresh task and every
    concurrent caller awaits that same task, sharing its credential or its
    error. A refresh token is therefore exchanged at most once per flight.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
        refresh_buffer_s: int | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._transport = transport
        self._clock = clock or _utc_now
        self._refresh_buffer_s = (
            refresh_buffer_s if refresh_buffer_s is not None else settings.xero_refresh_buffer_s
        )
        self._inflight: dict[tuple[str, str], asyncio.Task[Credential]] = {}

    def _is_fresh(self, credential: Credential) -> bool:
        return credential.seconds_remaining(self._clock()) > self._refresh_buffer_s

    def _client(self) -> httpx.AsyncClient:
        timeout = get_settings().ext_call_timeout_ms / 1000
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def get_valid_credential(self, user_id: str, tenant_id: str) -> Credential:
        tenants = await self._store.get_tenants(user_id)
        if tenant_id not in tenants:
            raise AuthError(f"User has no access to tenant {tenant_id}")
        credential = await self._store.get_credential(user_id, tenant_id)
        if credential is None:
            raise AuthError("No Xero credential found; reconnect to Xero")
        if self._is_fresh(credential):
            return credential

        key = (user_id, tenant_id)
        flight = self._inflight.get(key)
        if flight is None:
            flight = asyncio.create_task(self._refresh_and_store(user_id, tenant_id))
            self._inflight[key] = flight
            flight.add_done_callback(lambda done: self._forget(key, done))
        # Shielded so one cancelled caller does not cancel the refresh for the rest.
        return await asyncio.shield(flight)

    def _forget(self, key: tuple[str, str], done: asyncio.Task[Credential]) -> None:
        if self._inflight.get(key) is done:
            del self._inflight[key]
        if not done.cancelled():
            # Mark the outcome as seen even if every waiter was cancelled.
            done.exception()

    async def _refresh_and_store(self, user_id: str, tenant_id: str) -> Credential:
        # A flight that just finished may already have replaced the credential.
        credential = await self._store.get_credential(user_id, tenant_id)
        if credential is None:
            raise AuthError("No Xero credential found; reconnect to Xero")
        if self._is_fresh(credential):
            return credential
        refreshed = await self._refresh(credential)
        await self._store.save_credential(user_id, refreshed)
        logger.info(
            "token_refreshed user_id=%s tenant_id=%s expires_at=%s",
            user_id,
            tenant_id,
            refreshed.expires_at.isoformat(),
        )
        return refreshed

    async def _refresh(self, credential: Credential) -> Credential:
        # Exchange the refresh token; the old credential is never handed back on failure.
        settings = get_settings()
        if not credential.refresh_token:
            raise AuthError("Stored credential has no refresh token")
        data = {"grant_type": "refresh_token", "refresh_token": credential.refresh_token}

        async def _post() -> httpx.Response:
            async with self._client() as client:
                return await client.post(
                    settings.xero_token_url,
                    data=data,
                    auth=(settings.xero_client_id, settings.xero_client_secret),
                    headers={"Accept": "application/json"},
                )

        try:
            response = await retry_async(_post)
        except (httpx.HTTPError, TimeoutError) as exc:
            raise RemoteApiError("xero", None, "Token refresh request failed") from exc
        if response.status_code in (400, 401):
            logger.warning("token_refresh_rejected tenant_id=%s status=%s", credential.tenant_id, response.status_code)
            raise AuthError("Xero refresh token is invalid or revoked; reconnect to Xero")
        if response.status_code >= 400:
            logger.warning("token_refresh_failed tenant_id=%s status=%s", credential.tenant_id, response.status_code)
            raise RemoteApiError("xero", response.status_code, "Token refresh failed")
        body = response.json()
        access_token = body.get("access_token")
        if not access_token:
            raise AuthError("Token refresh response missing access_token")
        expires_in = int(body.get("expires_in") or 1800)
        return Credential(
            access_token=access_token,
            # Xero rotates refresh tokens, but keep the old one if none was returned.
            refresh_token=body.get("refresh_token") or credential.refresh_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
            tenant_id=credential.tenant_id,
        )

    async def list_connections(self, access_token: str) -> list[str]:
        # Tenants reachable with this access token, per the Xero connections API.
        settings = get_settings()
        async with self._client() as client:
            response = await client.get(
                settings.xero_connections_url,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        if response.status_code == 401:
            raise AuthError("Xero rejected the access token")
        if response.status_code >= 400:
            raise RemoteApiError("xero", response.status_code, "Failed to list Xero connections")
        return [str(item["tenantId"]) for item in response.json() if item.get("tenantId")]

    async def sync_connections(self, user_id: str, tenant_id: str) -> list[str]:
        # Refresh the user's reachable-tenant list from Xero.
        credential = await self.get_valid_credential(user_id, tenant_id)
        tenants = await self.list_connections(credential.access_token)
        await self._store.save_tenants(user_id, tenants)
        return tenants
