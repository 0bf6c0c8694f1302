from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from dealsync.apps.api.deps import Principal, get_db, get_principal
from dealsync.apps.api.response import success_response
from dealsync.services import sequences as sequences_service


router = APIRouter(tags=["sequences"])


class SequenceUpdateRequest(BaseModel):
    departmentCode: str = Field(min_length=2, max_length=2)
    year: int = Field(ge=2000, le=2100)
    newSequence: int


@router.get("/sequences")
async def list_sequences(
    request: Request,
    year: int | None = Query(default=None, ge=2000, le=2100),
    _principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    resolved_year = year or datetime.now(timezone.utc).year
    data = await sequences_service.list_sequences(db, resolved_year)
    return success_response(request=request, data={"year": resolved_year, "sequences": data})


@router.post("/sequences/update")
async def update_sequence(
    payload: SequenceUpdateRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await sequences_service.update_sequence(
        db,
        department_code=payload.departmentCode,
        year=payload.year,
        new_sequence=payload.newSequence,
        actor_id=principal.user_id,
    )
    return success_response(request=request, data=result.to_dict())
