from __future__ import annotations

import asyncio
import copy
import logging
import math
import time
from typing import Any, AsyncIterator, Awaitable, Callable, NoReturn, Sequence

from dealsync.core.config import get_settings
from dealsync.core.errors import AuthError, ConfigurationError, ManualInterventionRequired, RateLimitError
from dealsync.domain.events import ProgressEvent
from dealsync.domain.records import (
    FixOutcome,
    FixResult,
    FixSession,
    IssueRecord,
    SessionStatus,
)
from dealsync.services.audit import AuditSink
from dealsync.services.fixes.handlers import FixContext, FixHandler
from dealsync.services.fixes.registry import FixHandlerRegistry, default_registry
from dealsync.services.resilience import CircuitBreaker


logger = logging.getLogger(__name__)

# Errors that end the whole request instead of a single item.
_FATAL_ERRORS = (AuthError, ConfigurationError)

_RECOMMENDATIONS: dict[str, str] = {
    "TITLE_MISSING": "Give untitled deals a 'CODE123 - Description' title in Pipedrive.",
    "TITLE_FORMAT_INVALID": "Rename deals to the 'CODE123 - Description' convention.",
    "TITLE_INCOMPLETE": "Complete deal titles that end with a dangling '-'.",
    "VESSEL_NAME_INVALID": "Fill in the vessel name on affected deals.",
    "DEAL_ORG_MISSING": "Link affected deals to an organization.",
    "CURRENCY_MISMATCH": "Align deal and quote currencies by hand.",
    "NO_PRODUCTS": "Add products to deals that have none.",
    "CUSTOMER_NAME_MISMATCH": "Check that the quote contact matches the deal organization.",
    "DEAL_VALUE_ZERO": "Set a value on zero-value won deals.",
    "XERO_QUOTE_MISSING": "Create or link a Xero quote for won deals without one.",
    "XERO_QUOTE_NOT_FOUND": "Fix the Xero quote id on deals whose linked quote no longer exists.",
    "XERO_QUOTE_INVOICED": "Review invoiced quotes; they cannot be edited automatically.",
}


def _new_session_id() -> str:
    return f"fix_{int(time.time() * 1000)}"


async def _drain(tasks: list[asyncio.Task], results: list[FixResult | None]) -> None:
    # Cancel unfinished siblings, wait for them, and keep any result that landed meanwhile.
    for task in tasks:
        if not task.done():
            task.cancel()
    for outcome in await asyncio.gather(*tasks, return_exceptions=True):
        if isinstance(outcome, tuple):
            index, result = outcome
            if results[index] is None:
                results[index] = result


class FixDispatcher:
    """Runs a frozen list of issues through their remediation handlers.

    Issues go out in fixed-size batches: batches run one after another with a
    fixed pause between them, items inside a batch run concurrently. A failing
    item becomes a ``failed`` result and never stops its siblings; only auth
    and configuration errors end the session early.
    """

    def __init__(
        self,
        registry: FixHandlerRegistry | None = None,
        *,
        batch_size: int | None = None,
        inter_batch_delay_s: float | None = None,
        rate_limit_retry_delay_s: float | None = None,
        audit: AuditSink | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        breaker_factory: Callable[[str], CircuitBreaker] | None = None,
    ) -> None:
        settings = get_settings()
        self._registry = registry or default_registry()
        self._batch_size = max(1, batch_size or settings.fix_batch_size)
        self._inter_batch_delay_s = (
            inter_batch_delay_s if inter_batch_delay_s is not None else settings.fix_inter_batch_delay_s
        )
        self._retry_delay_s = (
            rate_limit_retry_delay_s
            if rate_limit_retry_delay_s is not None
            else settings.fix_rate_limit_retry_delay_s
        )
        self._audit = audit
        self._sleep = sleep or asyncio.sleep
        self._breaker_factory = breaker_factory or (lambda name: CircuitBreaker(name))

    def with_batch_size(self, batch_size: int) -> "FixDispatcher":
        # Per-request override; never larger than the configured batch.
        return FixDispatcher(
            self._registry,
            batch_size=min(batch_size, self._batch_size),
            inter_batch_delay_s=self._inter_batch_delay_s,
            rate_limit_retry_delay_s=self._retry_delay_s,
            audit=self._audit,
            sleep=self._sleep,
            breaker_factory=self._breaker_factory,
        )

    def initialize_session(self, tenant_id: str, tenant_name: str, issues: Sequence[IssueRecord]) -> FixSession:
        # Copy the input so later mutation by the caller cannot reach the session.
        return FixSession(
            id=_new_session_id(),
            tenant_id=tenant_id,
            tenant_name=tenant_name,
            issues=tuple(copy.deepcopy(list(issues))),
        )

    def is_fixable(self, issue: IssueRecord) -> bool:
        return self._registry.resolve(issue.issue_code) is not None

    async def run_workflow(self, session: FixSession, ctx: FixContext) -> FixSession:
        async for _event in self.execute_workflow(session, ctx):
            pass
        return session

    async def execute_workflow(self, session: FixSession, ctx: FixContext) -> AsyncIterator[ProgressEvent]:
        """Drive ``session`` from pending to a terminal status, yielding progress."""
        if session.status is not SessionStatus.PENDING:
            raise ValueError(f"Session {session.id} is {session.status.value}, expected pending")
        started = time.monotonic()
        session.status = SessionStatus.RUNNING
        total = len(session.issues)
        logger.info("fix_session_started session_id=%s tenant_id=%s issues=%s", session.id, session.tenant_id, total)
        yield ProgressEvent(
            "session_started",
            {"sessionId": session.id, "tenantName": session.tenant_name, "totalIssues": total},
        )

        fixable = sum(1 for issue in session.issues if self.is_fixable(issue))
        yield ProgressEvent(
            "progress",
            {"step": "analyze_issues", "fixableIssues": fixable, "manualIssues": total - fixable},
        )

        breaker = self._breaker_factory(f"fix.{session.tenant_id}")
        results: list[FixResult | None] = [None] * total
        batch_count = math.ceil(total / self._batch_size) if total else 0
        completed = 0
        try:
            for batch_index in range(batch_count):
                if batch_index > 0:
                    # Fixed pause to stay under the CRM's short-window quota.
                    await self._sleep(self._inter_batch_delay_s)
                start = batch_index * self._batch_size
                indices = list(range(start, min(start + self._batch_size, total)))
                yield ProgressEvent(
                    "progress",
                    {
                        "step": "apply_fixes",
                        "status": "batch_started",
                        "batch": batch_index + 1,
                        "totalBatches": batch_count,
                        "batchSize": len(indices),
                    },
                )
                tasks = [
                    asyncio.create_task(self._process(index, session.issues[index], ctx, breaker))
                    for index in indices
                ]
                try:
                    for next_done in asyncio.as_completed(tasks):
                        index, result = await next_done
                        results[index] = result
                        completed += 1
                        yield ProgressEvent(
                            "progress",
                            {
                                "step": "apply_fixes",
                                "status": "item_completed",
                                "issueCode": result.issue_code,
                                "dealRef": result.deal_ref,
                                "outcome": result.outcome.value,
                                "completed": completed,
                                "total": total,
                            },
                        )
                finally:
                    await _drain(tasks, results)
                yield ProgressEvent(
                    "progress",
                    {
                        "step": "apply_fixes",
                        "status": "batch_completed",
                        "batch": batch_index + 1,
                        "totalBatches": batch_count,
                        "completed": completed,
                        "total": total,
                    },
                )
        except _FATAL_ERRORS as exc:
            await self._abort(session, results, exc, fixable, time.monotonic() - started)
            raise

        yield ProgressEvent("progress", {"step": "generate_summary"})
        session.fix_results = [result for result in results if result is not None]
        failed = any(result.outcome is FixOutcome.FAILED for result in session.fix_results)
        session.summary = self._summarize(session, fixable, time.monotonic() - started)
        session.status = SessionStatus.COMPLETED_WITH_ERRORS if failed else SessionStatus.COMPLETED
        logger.info(
            "fix_session_completed session_id=%s status=%s fixed=%s failed=%s skipped=%s",
            session.id,
            session.status.value,
            session.summary["fixedCount"],
            session.summary["failedCount"],
            session.summary["skippedCount"],
        )
        await self._record_audit(session)
        yield ProgressEvent(
            "session_completed",
            {
                "sessionId": session.id,
                "status": session.status.value,
                "summary": session.summary,
                "fixResults": [result.to_dict() for result in session.fix_results],
            },
        )

    async def _abort(
        self, session: FixSession, results: list[FixResult | None], exc: Exception, fixable: int, elapsed_s: float
    ) -> None:
        # A fatal error still ends in a terminal state with one result per issue.
        reason = f"Session aborted: {exc}"
        session.fix_results = [
            result
            if result is not None
            else FixResult(issue.issue_code, issue.deal_ref, FixOutcome.FAILED, error=reason)
            for issue, result in zip(session.issues, results)
        ]
        session.summary = self._summarize(session, fixable, elapsed_s)
        session.summary["abortedBy"] = type(exc).__name__
        session.status = SessionStatus.COMPLETED_WITH_ERRORS
        logger.warning(
            "fix_session_aborted session_id=%s tenant_id=%s error=%s", session.id, session.tenant_id, type(exc).__name__
        )
        await self._record_audit(session)

    async def _process(
        self, index: int, issue: IssueRecord, ctx: FixContext, breaker: CircuitBreaker
    ) -> tuple[int, FixResult]:
        handler = self._registry.resolve(issue.issue_code)
        if handler is None:
            return index, FixResult(
                issue.issue_code, issue.deal_ref, FixOutcome.SKIPPED_MANUAL, message="Manual intervention required"
            )
        try:
            await breaker.before_call()
            problems = await handler.validate(issue, ctx)
            if problems:
                return index, FixResult(
                    issue.issue_code,
                    issue.deal_ref,
                    FixOutcome.FAILED,
                    error=f"Fix validation failed: {'; '.join(problems)}",
                )
            message = await self._apply_with_retry(handler, issue, ctx)
        except ManualInterventionRequired as exc:
            return index, FixResult(issue.issue_code, issue.deal_ref, FixOutcome.SKIPPED_MANUAL, message=str(exc))
        except _FATAL_ERRORS:
            raise
        except Exception as exc:  # noqa: BLE001 - one item's failure must not abort the batch
            await breaker.record_failure()
            logger.warning(
                "fix_item_failed issue_code=%s deal_ref=%s error=%s",
                issue.issue_code,
                issue.deal_ref,
                type(exc).__name__,
            )
            return index, FixResult(issue.issue_code, issue.deal_ref, FixOutcome.FAILED, error=str(exc))
        await breaker.record_success()
        return index, FixResult(issue.issue_code, issue.deal_ref, FixOutcome.FIXED, message=message)

    async def _apply_with_retry(self, handler: FixHandler, issue: IssueRecord, ctx: FixContext) -> str:
        # A 429 despite admission gets exactly one retry after the fixed delay.
        try:
            return await handler.apply(issue, ctx)
        except RateLimitError:
            logger.info("fix_item_rate_limited issue_code=%s deal_ref=%s", issue.issue_code, issue.deal_ref)
            await self._sleep(self._retry_delay_s)
            return await handler.apply(issue, ctx)

    def _summarize(self, session: FixSession, fixable: int, elapsed_s: float) -> dict[str, Any]:
        counts = {outcome: 0 for outcome in FixOutcome}
        for result in session.fix_results:
            counts[result.outcome] += 1
        manual_codes = sorted(
            {result.issue_code for result in session.fix_results if result.outcome is FixOutcome.SKIPPED_MANUAL}
        )
        recommendations = [_RECOMMENDATIONS[code] for code in manual_codes if code in _RECOMMENDATIONS]
        if counts[FixOutcome.FAILED]:
            recommendations.append("Re-run validation and retry the failed fixes.")
        return {
            "totalIssues": len(session.issues),
            "fixableIssues": fixable,
            "fixedCount": counts[FixOutcome.FIXED],
            "failedCount": counts[FixOutcome.FAILED],
            "skippedCount": counts[FixOutcome.SKIPPED_MANUAL],
            "durationMs": int(elapsed_s * 1000),
            "recommendations": recommendations,
        }

    async def _record_audit(self, session: FixSession) -> None:
        if self._audit is None:
            return
        try:
            await self._audit(
                tenant_id=session.tenant_id,
                actor_type="system",
                actor_id=None,
                event_type="fix.session.completed",
                outcome="success" if session.status is SessionStatus.COMPLETED else "partial",
                resource_type="fix_session",
                resource_id=session.id,
                metadata={"summary": session.summary},
            )
        except Exception as exc:  # noqa: BLE001 - audit is best-effort
            logger.warning("fix_session_audit_failed session_id=%s", session.id, exc_info=exc)

    async def rollback_session(self, session_id: str) -> NoReturn:
        # Sessions are not persisted, so there is nothing to reverse.
        raise NotImplementedError("Session rollback not yet implemented")
