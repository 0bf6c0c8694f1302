from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from dealsync.apps.api.response import error_response
from dealsync.core.errors import (
    AuthError,
    ConfigurationError,
    DealSyncError,
    IntegrationUnavailableError,
    RateLimitError,
    RemoteApiError,
    SequenceValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    501: "NOT_IMPLEMENTED",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def map_domain_error(exc: DealSyncError) -> tuple[int, str, str]:
    """HTTP status, stable code and client-safe message for a domain error."""
    if isinstance(exc, AuthError):
        return 401, "AUTH_UNAUTHORIZED", str(exc)
    if isinstance(exc, ConfigurationError):
        if exc.reason == "not_found":
            return 404, "TENANT_NOT_CONFIGURED", str(exc)
        return 400, "TENANT_INTEGRATION_DISABLED", str(exc)
    if isinstance(exc, SequenceValidationError):
        return 400, "SEQUENCE_VALIDATION_ERROR", str(exc)
    if isinstance(exc, RateLimitError):
        return 429, "RATE_LIMITED", str(exc)
    if isinstance(exc, IntegrationUnavailableError):
        return 503, "INTEGRATION_UNAVAILABLE", str(exc)
    if isinstance(exc, RemoteApiError):
        return 502, "UPSTREAM_ERROR", str(exc)
    return 500, "INTERNAL_ERROR", "Internal server error"


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: DealSyncError) -> JSONResponse:
    status_code, code, message = map_domain_error(exc)
    if status_code >= 500:
        logger.warning("domain_error path=%s code=%s", request.url.path, code, exc_info=exc)
    payload = error_response(request=request, code=code, message=message)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
