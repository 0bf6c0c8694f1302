from __future__ import annotations

import asyncio
from datetime import datetime
import json
import logging
from typing import Any

from redis.asyncio import Redis

from dealsync.core.config import get_settings
from dealsync.domain.records import Credential
from dealsync.services.resilience import get_resilience_redis


logger = logging.getLogger(__name__)

_TOKEN_PREFIX = "xero:token:"
_TENANTS_KEY = "user:{user_id}:xero:tenants"


def _token_key(user_id: str, tenant_id: str) -> str:
    return f"{_TOKEN_PREFIX}{user_id}:{tenant_id}"


def _tenants_key(user_id: str) -> str:
    return _TENANTS_KEY.format(user_id=user_id)


def _encode(credential: Credential) -> str:
    return json.dumps(
        {
            "access_token": credential.access_token,
            "refresh_token": credential.refresh_token,
            "expires_at": credential.expires_at.isoformat(),
            "tenant_id": credential.tenant_id,
        }
    )


def _decode(raw: str) -> Credential | None:
    try:
        payload: dict[str, Any] = json.loads(raw)
        return Credential(
            access_token=str(payload["access_token"]),
            refresh_token=str(payload["refresh_token"]),
            expires_at=datetime.fromisoformat(payload["expires_at"]),
            tenant_id=str(payload["tenant_id"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("credential_decode_failed error=%s", type(exc).__name__)
        return None


class CredentialStore:
    """Per (user, tenant) credential pairs plus each user's reachable tenants.

    Uses Redis when available, otherwise an in-process map guarded by a lock.
    """

    def __init__(self, redis: Redis | None = None, *, ttl_s: int | None = None) -> None:
        self._redis = redis
        self._ttl_s = ttl_s if ttl_s is not None else get_settings().xero_token_ttl_s
        self._credentials: dict[tuple[str, str], Credential] = {}
        self._tenants: dict[str, list[str]] = {}
        self._lock = asyncio.Lock()

    async def _client(self) -> Redis | None:
        if self._redis is not None:
            return self._redis
        return await get_resilience_redis()

    async def get_credential(self, user_id: str, tenant_id: str) -> Credential | None:
        redis = await self._client()
        if redis is None:
            async with self._lock:
                return self._credentials.get((user_id, tenant_id))
        raw = await redis.get(_token_key(user_id, tenant_id))
        if raw is None:
            return None
        return _decode(raw)

    async def save_credential(self, user_id: str, credential: Credential) -> None:
        redis = await self._client()
        if redis is None:
            async with self._lock:
                self._credentials[(user_id, credential.tenant_id)] = credential
            return
        await redis.setex(_token_key(user_id, credential.tenant_id), self._ttl_s, _encode(credential))

    async def delete_credential(self, user_id: str, tenant_id: str) -> None:
        redis = await self._client()
        if redis is None:
            async with self._lock:
                self._credentials.pop((user_id, tenant_id), None)
            return
        await redis.delete(_token_key(user_id, tenant_id))

    async def get_tenants(self, user_id: str) -> list[str]:
        redis = await self._client()
        if redis is None:
            async with self._lock:
                return list(self._tenants.get(user_id, []))
        raw = await redis.get(_tenants_key(user_id))
        if not raw:
            return []
        try:
            tenants = json.loads(raw)
        except ValueError:
            return []
        return [str(item) for item in tenants] if isinstance(tenants, list) else []

    async def save_tenants(self, user_id: str, tenant_ids: list[str]) -> None:
        redis = await self._client()
        if redis is None:
            async with self._lock:
                self._tenants[user_id] = list(tenant_ids)
            return
        await redis.setex(_tenants_key(user_id), self._ttl_s, json.dumps(list(tenant_ids)))
