from __future__ import annotations

import logging
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from dealsync.apps.api.deps import Principal, Services, get_principal, get_services
from dealsync.apps.api.errors import map_domain_error
from dealsync.apps.api.response import error_response
from dealsync.apps.api.routes.sse import detached_stream, wrap_payload
from dealsync.core.errors import DealSyncError
from dealsync.domain.records import Credential, FixSession, IssueRecord
from dealsync.providers.pipedrive import PipedriveGateway
from dealsync.providers.xero import XeroGateway
from dealsync.services.fixes.dispatcher import FixDispatcher
from dealsync.services.fixes.handlers import FixContext
from dealsync.services.rate_governor import PIPEDRIVE, XERO
from dealsync.services.tenant_config import TenantConfig


logger = logging.getLogger(__name__)
router = APIRouter(tags=["fixes"])


class FixRequest(BaseModel):
    # Loosely typed so malformed input gets the documented 400, not a 422.
    tenantId: str | None = None
    issues: Any = None
    config: dict[str, Any] | None = None


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"code": "BAD_REQUEST", "message": message})


def _map_error(exc: Exception) -> tuple[str, str]:
    # Stable client-facing codes without leaking stack traces.
    if isinstance(exc, DealSyncError):
        _status, code, message = map_domain_error(exc)
        return code, message
    return "UNKNOWN_ERROR", "Internal error during fix workflow."


def _parse_issues(raw: list[Any]) -> list[IssueRecord]:
    issues = []
    for item in raw:
        if not isinstance(item, dict):
            raise _bad_request("Each issue must be an object")
        issues.append(IssueRecord.from_dict(item))
    return issues


def _dispatcher_for(services: Services, overrides: dict[str, Any] | None) -> FixDispatcher:
    # Only the batch size may be tuned per request, and only downwards.
    batch_size = (overrides or {}).get("batchSize")
    if isinstance(batch_size, int) and batch_size > 0:
        return services.dispatcher.with_batch_size(batch_size)
    return services.dispatcher


async def _workflow_events(
    *,
    request_id: str,
    services: Services,
    dispatcher: FixDispatcher,
    session: FixSession,
    config: TenantConfig,
    principal: Principal,
) -> AsyncIterator[dict[str, Any]]:
    tenant_id = config.tenant_id

    async def credentials() -> Credential:
        return await services.tokens.get_valid_credential(principal.user_id, tenant_id)

    xero = XeroGateway(services.governors.get(XERO, tenant_id), credentials, transport=services.xero_transport)
    pipedrive = PipedriveGateway(
        services.governors.get(PIPEDRIVE, tenant_id),
        api_key=config.pipedrive_api_key,
        company_domain=config.pipedrive_company_domain,
        transport=services.pipedrive_transport,
    )
    ctx = FixContext(tenant=config.context(), config=config, xero=xero, pipedrive=pipedrive)
    try:
        async with xero, pipedrive:
            async for event in dispatcher.execute_workflow(session, ctx):
                yield wrap_payload(event.type, request_id, session.id, event.payload)
    except Exception as exc:  # noqa: BLE001 - surfaced to the client as one error event
        logger.warning("fix_workflow_failed session_id=%s error=%s", session.id, type(exc).__name__, exc_info=exc)
        code, message = _map_error(exc)
        yield wrap_payload("error", request_id, session.id, {"message": message, "details": {"code": code}})
    yield wrap_payload("done", request_id, session.id, {})


@router.post("/fixes/stream")
async def stream_fixes(
    payload: FixRequest,
    http_request: Request,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> StreamingResponse:
    if not payload.tenantId:
        raise _bad_request("tenantId is required")
    if not isinstance(payload.issues, list):
        raise _bad_request("issues must be a list")
    # Configuration and credential problems fail the request before any stream opens.
    config = services.config_provider.get_tenant_config(payload.tenantId)
    await services.tokens.get_valid_credential(principal.user_id, config.tenant_id)

    dispatcher = _dispatcher_for(services, payload.config)
    session = dispatcher.initialize_session(config.tenant_id, config.tenant_name, _parse_issues(payload.issues))
    request_id = str(uuid4())
    events = _workflow_events(
        request_id=request_id,
        services=services,
        dispatcher=dispatcher,
        session=session,
        config=config,
        principal=principal,
    )
    return detached_stream(http_request, events)


@router.delete("/fixes")
async def rollback_fixes(
    request: Request,
    tenantId: str | None = Query(default=None),
    sessionId: str | None = Query(default=None),
    _principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    if not tenantId or not sessionId:
        raise _bad_request("tenantId and sessionId are required")
    services.config_provider.get_tenant_config(tenantId)
    try:
        await services.dispatcher.rollback_session(sessionId)
    except NotImplementedError as exc:
        payload = error_response(request=request, code="NOT_IMPLEMENTED", message=str(exc))
        return JSONResponse(content=payload, status_code=status.HTTP_501_NOT_IMPLEMENTED)
