from __future__ import annotations

from typing import Any


class DealSyncError(Exception):
    """Base error for DealSync."""


class AuthError(DealSyncError):
    """Missing, revoked or unrefreshable platform credential."""


class RateLimitError(DealSyncError):
    """Platform rejected a call with 429 despite admission."""

    def __init__(self, platform: str, retry_after: float | None = None) -> None:
        super().__init__(f"{platform} rate limit exceeded")
        self.platform = platform
        self.retry_after = retry_after


class ConfigurationError(DealSyncError):
    """Tenant configuration missing or integration disabled."""

    def __init__(self, message: str, *, tenant_id: str | None = None, reason: str = "not_found") -> None:
        super().__init__(message)
        self.tenant_id = tenant_id
        self.reason = reason


class RemoteApiError(DealSyncError):
    """Non-success response from an external platform."""

    def __init__(self, platform: str, status_code: int | None, message: str, body: Any = None) -> None:
        super().__init__(message)
        self.platform = platform
        self.status_code = status_code
        self.body = body


class ManualInterventionRequired(DealSyncError):
    """Issue cannot be remediated automatically."""


class IntegrationUnavailableError(DealSyncError):
    """Circuit open for a failing integration."""


class SequenceValidationError(DealSyncError):
    """Rejected sequence counter update."""
