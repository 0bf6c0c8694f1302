from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from dealsync.apps.api.deps import Services, build_services
from dealsync.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from dealsync.apps.api.response import API_VERSION
from dealsync.apps.api.routes.fixes import router as fixes_router
from dealsync.apps.api.routes.health import router as health_router
from dealsync.apps.api.routes.sequences import router as sequences_router
from dealsync.apps.api.routes.validation import router as validation_router
from dealsync.core.errors import DealSyncError
from dealsync.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="DealSync API")
    app.state.services = services or build_services()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(DealSyncError)
    async def _domain_exception_handler(request: Request, exc: DealSyncError):
        return await domain_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Streaming validation and remediation workflows.
    app.include_router(validation_router, prefix=f"/{API_VERSION}")
    app.include_router(fixes_router, prefix=f"/{API_VERSION}")
    app.include_router(sequences_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
