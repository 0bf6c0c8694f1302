from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dealsync.domain.models import AuditEvent
from dealsync.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Xero refresh/access tokens, Pipedrive x-api-token and OAuth client secrets.
_SENSITIVE_KEY_PATTERNS = ("api_key", "apikey", "api-token", "authorization", "token", "secret", "password")
_BEARER_VALUE = re.compile(r"^(bearer|basic)\s+\S+", re.IGNORECASE)
_REDACTED_VALUE = "[REDACTED]"


class AuditSink(Protocol):
    async def __call__(
        self,
        *,
        tenant_id: str | None,
        actor_type: str,
        actor_id: str | None,
        event_type: str,
        outcome: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    """Scrub credential-looking keys and Authorization-style values, keeping the shape."""
    if isinstance(value, dict):
        return {
            str(key): _REDACTED_VALUE if _is_sensitive_key(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, str) and _BEARER_VALUE.match(value):
        return _REDACTED_VALUE
    return value


def _build_event(
    *,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None,
    resource_id: str | None,
    metadata: dict[str, Any] | None,
) -> AuditEvent:
    return AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata_json=sanitize_metadata(metadata or {}),
    )


async def record_event(
    *,
    session: AsyncSession | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append one audit row.

    Without a session the row is written and committed on its own connection and
    failures are only logged. With a session the row joins the caller's
    transaction (sequence updates commit counter and audit row together), so
    flush errors propagate to the caller.
    """
    event = _build_event(
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata=metadata,
    )
    if session is not None:
        session.add(event)
        return

    async with SessionLocal() as audit_session:
        try:
            audit_session.add(event)
            await audit_session.commit()
        except SQLAlchemyError as exc:
            await audit_session.rollback()
            logger.warning(
                "audit_event_write_failed event_type=%s tenant_id=%s resource_id=%s",
                event_type,
                tenant_id,
                resource_id,
                exc_info=exc,
            )
