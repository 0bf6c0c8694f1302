from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict


ProgressEventType = Literal["session_started", "progress", "session_completed", "error", "done"]


@dataclass(frozen=True)
class ProgressEvent:
    # Transient fix-workflow event; the transport decides the wire format.
    type: ProgressEventType
    payload: dict[str, Any] = field(default_factory=dict)


class ValidationSummary(TypedDict):
    totalQuotes: int
    quotesProcessed: int
    issuesFound: int
    errorCount: int
    warningCount: int


class ValidationEvent(TypedDict, total=False):
    # Validation stream events share one loose shape keyed by "type".
    type: str
    message: str
    step: str
    status: str
    detail: str
    pipelineId: int
    current: int
    total: int
    data: dict[str, Any]
