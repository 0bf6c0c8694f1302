from __future__ import annotations

import pytest
from sqlalchemy import select

from dealsync.core.errors import SequenceValidationError
from dealsync.domain.models import AuditEvent
from dealsync.persistence.db import SessionLocal
from dealsync.persistence.repos import sequences as sequences_repo
from dealsync.services.sequences import check_sequence_update, list_sequences, update_sequence


def test_forward_move_is_accepted() -> None:
    assert check_sequence_update(10, 10, gap_warning=100) is None
    assert check_sequence_update(10, 11, gap_warning=100) is None


def test_backward_or_negative_move_is_rejected() -> None:
    with pytest.raises(SequenceValidationError):
        check_sequence_update(10, 9, gap_warning=100)
    with pytest.raises(SequenceValidationError):
        check_sequence_update(0, -1, gap_warning=100)


def test_large_gap_warns() -> None:
    warning = check_sequence_update(10, 200, gap_warning=100)

    assert warning is not None
    assert "will skip 189 numbers" in warning
    assert check_sequence_update(10, 110, gap_warning=100) is None


@pytest.mark.asyncio
async def test_update_persists_and_audits(db_tables) -> None:
    async with SessionLocal() as session:
        result = await update_sequence(session, department_code="ny", year=2026, new_sequence=5, actor_id="user-1")

    assert result.previous_sequence == 0
    assert result.to_dict()["departmentName"] == "Navy"
    async with SessionLocal() as session:
        counter = await sequences_repo.get_counter(session, "NY", 2026)
        audit = (await session.execute(select(AuditEvent))).scalars().all()
    assert counter is not None
    assert counter.last_sequence_number == 5
    assert [event.event_type for event in audit] == ["sequence.updated"]


@pytest.mark.asyncio
async def test_rejected_update_leaves_counter_unchanged(db_tables) -> None:
    async with SessionLocal() as session:
        await update_sequence(session, department_code="EL", year=2026, new_sequence=40)

    async with SessionLocal() as session:
        with pytest.raises(SequenceValidationError):
            await update_sequence(session, department_code="EL", year=2026, new_sequence=39)

    async with SessionLocal() as session:
        counter = await sequences_repo.get_counter(session, "EL", 2026)
    assert counter is not None
    assert counter.last_sequence_number == 40


@pytest.mark.asyncio
async def test_unknown_department_is_rejected(db_tables) -> None:
    async with SessionLocal() as session:
        with pytest.raises(SequenceValidationError):
            await update_sequence(session, department_code="ZZ", year=2026, new_sequence=1)


@pytest.mark.asyncio
async def test_list_fills_missing_departments(db_tables) -> None:
    async with SessionLocal() as session:
        await update_sequence(session, department_code="MC", year=2026, new_sequence=7)
        rows = await list_sequences(session, 2026)

    by_code = {row["departmentCode"]: row["lastSequenceNumber"] for row in rows}
    assert by_code == {"NY": 0, "EL": 0, "MC": 7, "AF": 0, "ED": 0, "LC": 0}
