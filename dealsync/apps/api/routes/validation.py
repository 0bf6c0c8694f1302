from __future__ import annotations

import logging
import traceback
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from dealsync.apps.api.deps import Principal, Services, get_principal, get_services
from dealsync.apps.api.errors import map_domain_error
from dealsync.apps.api.routes.sse import detached_stream, wrap_payload
from dealsync.core.config import get_settings
from dealsync.core.errors import DealSyncError
from dealsync.services.validation import ValidationReport


logger = logging.getLogger(__name__)
router = APIRouter(tags=["validation"])


class ValidationRequest(BaseModel):
    tenantId: str | None = None


async def _validation_events(
    *, request_id: str, services: Services, tenant_id: str, user_id: str
) -> AsyncIterator[dict[str, Any]]:
    session_id: str | None = None
    try:
        async for event in services.engine.stream(tenant_id, user_id=user_id):
            event_type = str(event.get("type"))
            if event_type == "complete":
                report: ValidationReport = event["data"]["report"]
                session_id = report.session["id"]
                yield wrap_payload("complete", request_id, session_id, report.to_dict())
                continue
            data = {key: value for key, value in event.items() if key != "type"}
            yield wrap_payload(event_type, request_id, session_id, data)
    except Exception as exc:  # noqa: BLE001 - surfaced to the client as one error event
        logger.warning("validation_failed tenant_id=%s error=%s", tenant_id, type(exc).__name__, exc_info=exc)
        if isinstance(exc, DealSyncError):
            _status, code, message = map_domain_error(exc)
        else:
            code, message = "UNKNOWN_ERROR", "Internal error during validation."
        data: dict[str, Any] = {"code": code, "message": f"Validation failed: {message}"}
        if get_settings().debug_events:
            data["stack"] = "".join(traceback.format_exception(exc))
        yield wrap_payload("error", request_id, session_id, data)


@router.post("/validation/stream")
async def stream_validation(
    payload: ValidationRequest,
    http_request: Request,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> StreamingResponse:
    tenant_id = payload.tenantId or principal.tenant_id
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "tenantId is required"},
        )
    # Unknown or disabled tenants are rejected before streaming starts.
    services.config_provider.get_tenant_config(tenant_id)
    events = _validation_events(
        request_id=str(uuid4()),
        services=services,
        tenant_id=tenant_id,
        user_id=principal.user_id,
    )
    return detached_stream(http_request, events)
