from __future__ import annotations

from fastapi import APIRouter, Request

from dealsync.apps.api.response import success_response


router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict:
    return success_response(request=request, data={"status": "ok"})
