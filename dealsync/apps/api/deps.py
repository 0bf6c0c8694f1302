from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator

import httpx
from fastapi import Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from dealsync.persistence.db import get_session
from dealsync.services.audit import record_event
from dealsync.services.credentials import CredentialStore
from dealsync.services.fixes.dispatcher import FixDispatcher
from dealsync.services.rate_governor import RateGovernorRegistry
from dealsync.services.tenant_config import StaticTenantConfigProvider, TenantConfigProvider
from dealsync.services.tokens import TokenLifecycleManager
from dealsync.services.validation import ValidationEngine


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Caller identity resolved upstream; the tenant is the caller's active Xero org.
    user_id: str
    tenant_id: str | None = None


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_principal(
    x_user_id: str | None = Header(default=None),
    x_tenant_id: str | None = Header(default=None),
) -> Principal:
    if not x_user_id:
        raise _auth_error("Missing caller identity")
    return Principal(user_id=x_user_id, tenant_id=x_tenant_id or None)


@dataclass
class Services:
    """Long-lived collaborators shared by every request of one app instance."""

    config_provider: TenantConfigProvider
    credential_store: CredentialStore
    tokens: TokenLifecycleManager
    governors: RateGovernorRegistry
    engine: ValidationEngine
    dispatcher: FixDispatcher
    # Transport overrides for platform HTTP clients (None in production).
    xero_transport: httpx.AsyncBaseTransport | None = None
    pipedrive_transport: httpx.AsyncBaseTransport | None = None


def build_services() -> Services:
    config_provider = StaticTenantConfigProvider()
    store = CredentialStore()
    tokens = TokenLifecycleManager(store)
    governors = RateGovernorRegistry()
    return Services(
        config_provider=config_provider,
        credential_store=store,
        tokens=tokens,
        governors=governors,
        engine=ValidationEngine(config_provider, tokens, governors),
        dispatcher=FixDispatcher(audit=record_event),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
