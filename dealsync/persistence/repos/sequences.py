from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dealsync.domain.models import SequenceCounter


async def get_counter(session: AsyncSession, department_code: str, year: int) -> SequenceCounter | None:
    result = await session.execute(
        select(SequenceCounter).where(
            SequenceCounter.department_code == department_code,
            SequenceCounter.year == year,
        )
    )
    return result.scalar_one_or_none()


async def list_counters(session: AsyncSession, year: int) -> list[SequenceCounter]:
    result = await session.execute(
        select(SequenceCounter)
        .where(SequenceCounter.year == year)
        .order_by(SequenceCounter.department_code)
    )
    return list(result.scalars().all())


async def upsert_counter(
    session: AsyncSession, department_code: str, year: int, last_sequence_number: int
) -> SequenceCounter:
    # Select-then-write keeps the upsert portable across Postgres and sqlite.
    counter = await get_counter(session, department_code, year)
    if counter is None:
        counter = SequenceCounter(
            department_code=department_code,
            year=year,
            last_sequence_number=last_sequence_number,
        )
        session.add(counter)
    else:
        counter.last_sequence_number = last_sequence_number
    await session.flush()
    return counter
