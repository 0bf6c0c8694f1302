from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class IssueCode(str, Enum):
    TITLE_MISSING = "TITLE_MISSING"
    TITLE_FORMAT_INVALID = "TITLE_FORMAT_INVALID"
    TITLE_INCOMPLETE = "TITLE_INCOMPLETE"
    VESSEL_NAME_INVALID = "VESSEL_NAME_INVALID"
    DEAL_ORG_MISSING = "DEAL_ORG_MISSING"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"
    NO_PRODUCTS = "NO_PRODUCTS"
    CUSTOMER_NAME_MISMATCH = "CUSTOMER_NAME_MISMATCH"
    DEAL_VALUE_ZERO = "DEAL_VALUE_ZERO"
    XERO_QUOTE_MISSING = "XERO_QUOTE_MISSING"
    XERO_QUOTE_NOT_FOUND = "XERO_QUOTE_NOT_FOUND"
    XERO_QUOTE_INVOICED = "XERO_QUOTE_INVOICED"
    XERO_QUOTE_NOT_ACCEPTED = "XERO_QUOTE_NOT_ACCEPTED"
    XERO_QUOTE_NUMBER_NO_PROJECT = "XERO_QUOTE_NUMBER_NO_PROJECT"
    DEAL_PRODUCTS_VALUE_MISMATCH = "DEAL_PRODUCTS_VALUE_MISMATCH"
    XERO_QUOTE_VALUE_MISMATCH = "XERO_QUOTE_VALUE_MISMATCH"
    PRODUCT_COUNT_MISMATCH = "PRODUCT_COUNT_MISMATCH"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


# Data-quality codes that only a person can resolve.
MANUAL_ONLY_CODES = frozenset(
    {
        IssueCode.TITLE_MISSING,
        IssueCode.TITLE_FORMAT_INVALID,
        IssueCode.TITLE_INCOMPLETE,
        IssueCode.VESSEL_NAME_INVALID,
        IssueCode.DEAL_ORG_MISSING,
        IssueCode.CURRENCY_MISMATCH,
        IssueCode.NO_PRODUCTS,
        IssueCode.CUSTOMER_NAME_MISMATCH,
        IssueCode.DEAL_VALUE_ZERO,
        IssueCode.XERO_QUOTE_MISSING,
        IssueCode.XERO_QUOTE_NOT_FOUND,
        IssueCode.XERO_QUOTE_INVOICED,
    }
)


class FixOutcome(str, Enum):
    FIXED = "fixed"
    FAILED = "failed"
    SKIPPED_MANUAL = "skipped-manual"


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.COMPLETED_WITH_ERRORS})


@dataclass(frozen=True)
class TenantContext:
    # Explicit tenant scope passed through every call; never stored globally.
    tenant_id: str
    display_name: str
    platform_credentials_ref: str


@dataclass(frozen=True)
class Credential:
    access_token: str
    refresh_token: str
    expires_at: datetime
    tenant_id: str

    def seconds_remaining(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()


@dataclass(frozen=True)
class ExternalRecord:
    """Platform-native record plus the key used to join it across platforms."""

    platform: str
    record_id: str
    title: str
    canonical_key: str
    payload: dict[str, Any] = field(compare=False, repr=False)


@dataclass(frozen=True)
class IssueRecord:
    issue_code: str
    severity: str
    deal_ref: str | None
    quote_ref: str | None
    details: dict[str, Any] = field(default_factory=dict, compare=False)
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "issueCode": self.issue_code,
            "severity": self.severity,
            "dealRef": self.deal_ref,
            "quoteRef": self.quote_ref,
            "message": self.message,
            "details": copy.deepcopy(self.details),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "IssueRecord":
        deal_ref = raw.get("dealRef")
        quote_ref = raw.get("quoteRef")
        return cls(
            issue_code=str(raw.get("issueCode") or ""),
            severity=str(raw.get("severity") or Severity.ERROR.value),
            deal_ref=str(deal_ref) if deal_ref is not None else None,
            quote_ref=str(quote_ref) if quote_ref is not None else None,
            details=copy.deepcopy(dict(raw.get("details") or {})),
            message=str(raw.get("message") or ""),
        )


@dataclass(frozen=True)
class FixResult:
    issue_code: str
    deal_ref: str | None
    outcome: FixOutcome
    error: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "issueCode": self.issue_code,
            "dealRef": self.deal_ref,
            "outcome": self.outcome.value,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.message is not None:
            payload["message"] = self.message
        return payload


@dataclass
class FixSession:
    id: str
    tenant_id: str
    tenant_name: str
    issues: tuple[IssueRecord, ...]
    fix_results: list[FixResult] = field(default_factory=list)
    status: SessionStatus = SessionStatus.PENDING
    summary: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class RateBudget:
    window_seconds: float
    limit: int
    used: int = 0
    window_reset_at: float = 0.0

    def remaining(self) -> int:
        return max(self.limit - self.used, 0)
