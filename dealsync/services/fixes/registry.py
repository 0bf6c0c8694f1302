from __future__ import annotations

from dealsync.domain.records import MANUAL_ONLY_CODES, IssueCode
from dealsync.services.fixes.handlers import (
    AcceptQuoteHandler,
    DealValueHandler,
    FixHandler,
    QuoteNumberHandler,
    SyncQuoteLineItemsHandler,
)


class FixHandlerRegistry:
    """Maps each auto-fixable issue code to exactly one handler."""

    def __init__(self) -> None:
        self._handlers: dict[str, FixHandler] = {}

    def register(self, handler: FixHandler) -> None:
        for code in handler.issue_codes:
            if code in MANUAL_ONLY_CODES:
                raise ValueError(f"{code.value} is manual-only and cannot have a handler")
            if code.value in self._handlers:
                raise ValueError(f"{code.value} already has a handler")
            self._handlers[code.value] = handler

    def resolve(self, issue_code: str) -> FixHandler | None:
        # Unknown and manual-only codes resolve to None (manual intervention).
        return self._handlers.get(issue_code)

    def supported_codes(self) -> list[str]:
        return sorted(self._handlers)


def default_registry() -> FixHandlerRegistry:
    registry = FixHandlerRegistry()
    registry.register(AcceptQuoteHandler())
    registry.register(QuoteNumberHandler())
    registry.register(SyncQuoteLineItemsHandler())
    registry.register(DealValueHandler())
    return registry
