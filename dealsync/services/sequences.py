from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from dealsync.core.config import get_settings
from dealsync.core.errors import SequenceValidationError
from dealsync.persistence.repos import sequences as sequences_repo
from dealsync.services.audit import record_event


logger = logging.getLogger(__name__)

DEPARTMENTS: dict[str, str] = {
    "NY": "Navy",
    "EL": "Electrical",
    "MC": "Machining",
    "AF": "Afloat",
    "ED": "Engine Recon",
    "LC": "Laser Cladding",
}


@dataclass(frozen=True)
class SequenceUpdate:
    department_code: str
    year: int
    previous_sequence: int
    new_sequence: int
    warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "departmentCode": self.department_code,
            "departmentName": DEPARTMENTS[self.department_code],
            "year": self.year,
            "previousSequence": self.previous_sequence,
            "lastSequenceNumber": self.new_sequence,
        }
        if self.warning:
            payload["warning"] = self.warning
        return payload


def check_sequence_update(current: int, new_sequence: int, *, gap_warning: int | None = None) -> str | None:
    """Apply the update rule; returns a warning for large forward jumps.

    Moving backwards would hand out job numbers twice, so it is rejected.
    """
    threshold = gap_warning if gap_warning is not None else get_settings().sequence_gap_warning
    if new_sequence < 0:
        raise SequenceValidationError("Sequence number must not be negative")
    if new_sequence < current:
        raise SequenceValidationError(
            f"New sequence {new_sequence} is lower than the current highest sequence {current}"
        )
    if new_sequence > current + threshold:
        skipped = new_sequence - current - 1
        return f"Large gap detected: sequence jumps from {current} to {new_sequence} and will skip {skipped} numbers"
    return None


async def list_sequences(session: AsyncSession, year: int) -> list[dict[str, Any]]:
    counters = {counter.department_code: counter for counter in await sequences_repo.list_counters(session, year)}
    return [
        {
            "departmentCode": code,
            "departmentName": name,
            "year": year,
            "lastSequenceNumber": counters[code].last_sequence_number if code in counters else 0,
        }
        for code, name in DEPARTMENTS.items()
    ]


async def update_sequence(
    session: AsyncSession,
    *,
    department_code: str,
    year: int,
    new_sequence: int,
    actor_id: str | None = None,
) -> SequenceUpdate:
    code = department_code.upper()
    if code not in DEPARTMENTS:
        raise SequenceValidationError(f"Unknown department code {department_code}")
    counter = await sequences_repo.get_counter(session, code, year)
    current = counter.last_sequence_number if counter is not None else 0
    # Validation happens before any write so a rejected update leaves state untouched.
    warning = check_sequence_update(current, new_sequence)
    await sequences_repo.upsert_counter(session, code, year, new_sequence)
    await record_event(
        session=session,
        tenant_id=None,
        actor_type="user",
        actor_id=actor_id,
        event_type="sequence.updated",
        outcome="success",
        resource_type="sequence_counter",
        resource_id=f"{code}:{year}",
        metadata={"previous": current, "new": new_sequence, "warning": warning},
    )
    await session.commit()
    if warning:
        logger.warning("sequence_gap department=%s year=%s from=%s to=%s", code, year, current, new_sequence)
    return SequenceUpdate(code, year, current, new_sequence, warning)
