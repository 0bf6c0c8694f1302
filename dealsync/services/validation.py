from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, AsyncIterator

import httpx

from dealsync.domain.events import ValidationEvent, ValidationSummary
from dealsync.domain.records import Credential, ExternalRecord, IssueRecord, Severity
from dealsync.providers.pipedrive import PipedriveGateway, custom_field
from dealsync.providers.xero import XeroGateway
from dealsync.services.matching import CrossReference, canonical_key, cross_reference
from dealsync.services.rate_governor import PIPEDRIVE, XERO, RateGovernorRegistry
from dealsync.services.tenant_config import TenantConfig, TenantConfigProvider
from dealsync.services.tokens import TokenLifecycleManager
from dealsync.services.validation_rules import DealSnapshot, evaluate_deal


logger = logging.getLogger(__name__)

_PROGRESS_EVERY = 10
# Deleted quotes stay in Xero's listing but are not business documents.
_IGNORED_QUOTE_STATES = {"DELETED"}


@dataclass
class ValidationReport:
    session: dict[str, Any]
    issues: list[IssueRecord] = field(default_factory=list)
    summary: ValidationSummary | None = None
    matched: int = 0
    deals_only: int = 0
    quotes_only: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "session": self.session,
            "summary": self.summary,
            "issues": [issue.to_dict() for issue in self.issues],
            "crossReference": {
                "matched": self.matched,
                "dealsOnly": self.deals_only,
                "quotesOnly": self.quotes_only,
            },
        }


def deal_record(deal: dict[str, Any]) -> ExternalRecord:
    title = str(deal.get("title") or "")
    return ExternalRecord(
        platform=PIPEDRIVE,
        record_id=str(deal.get("id")),
        title=title,
        canonical_key=canonical_key(title),
        payload=deal,
    )


def quote_record(quote: dict[str, Any]) -> ExternalRecord:
    title = str(quote.get("Title") or quote.get("Reference") or "")
    return ExternalRecord(
        platform=XERO,
        record_id=str(quote.get("QuoteID")),
        title=title,
        canonical_key=canonical_key(title),
        payload=quote,
    )


def _inline_org_name(deal: dict[str, Any]) -> str | None:
    if deal.get("org_name"):
        return str(deal["org_name"])
    org = deal.get("org_id")
    if isinstance(org, dict) and org.get("name"):
        return str(org["name"])
    return None


class ValidationEngine:
    """Cross-checks a tenant's won Pipedrive deals against its Xero quotes."""

    def __init__(
        self,
        config_provider: TenantConfigProvider,
        token_manager: TokenLifecycleManager,
        governors: RateGovernorRegistry,
        *,
        xero_transport: httpx.AsyncBaseTransport | None = None,
        pipedrive_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config_provider = config_provider
        self._tokens = token_manager
        self._governors = governors
        self._xero_transport = xero_transport
        self._pipedrive_transport = pipedrive_transport

    async def evaluate(self, tenant_id: str, *, user_id: str) -> list[IssueRecord]:
        report = await self.run(tenant_id, user_id=user_id)
        return report.issues

    async def run(self, tenant_id: str, *, user_id: str) -> ValidationReport:
        report: ValidationReport | None = None
        async for event in self.stream(tenant_id, user_id=user_id):
            if event.get("type") == "complete":
                report = event["data"]["report"]
        assert report is not None
        return report

    async def stream(self, tenant_id: str, *, user_id: str) -> AsyncIterator[ValidationEvent]:
        """Yield progress events; the last one is ``complete`` carrying the report.

        Any platform failure propagates: a partial cross-reference is never
        reported as clean.
        """
        config = self._config_provider.get_tenant_config(tenant_id)
        # Fail fast on auth before touching either platform.
        await self._tokens.get_valid_credential(user_id, tenant_id)

        async def credentials() -> Credential:
            return await self._tokens.get_valid_credential(user_id, tenant_id)

        started = time.monotonic()
        session = {
            "id": f"validation_{int(time.time() * 1000)}",
            "tenantId": tenant_id,
            "tenantName": config.tenant_name,
            "status": "running",
        }
        yield {"type": "log", "message": f"Starting validation for {config.tenant_name}"}

        xero = XeroGateway(self._governors.get(XERO, tenant_id), credentials, transport=self._xero_transport)
        pipedrive = PipedriveGateway(
            self._governors.get(PIPEDRIVE, tenant_id),
            api_key=config.pipedrive_api_key,
            company_domain=config.pipedrive_company_domain,
            transport=self._pipedrive_transport,
        )
        async with xero, pipedrive:
            yield {"type": "progress", "step": "fetch_quotes", "status": "running", "detail": "Fetching Xero quotes"}
            quotes = [
                quote
                for quote in await xero.fetch_all_quotes()
                if str(quote.get("Status") or "").upper() not in _IGNORED_QUOTE_STATES
            ]
            yield {
                "type": "progress",
                "step": "fetch_quotes",
                "status": "completed",
                "detail": f"Fetched {len(quotes)} quotes",
            }

            deals: list[dict[str, Any]] = []
            for pipeline_id in config.pipeline_ids:
                yield {"type": "pipeline_progress", "pipelineId": pipeline_id, "status": "running"}
                pipeline_deals = await pipedrive.list_won_deals(pipeline_id)
                deals.extend(pipeline_deals)
                yield {
                    "type": "pipeline_progress",
                    "pipelineId": pipeline_id,
                    "status": "completed",
                    "detail": f"Found {len(pipeline_deals)} won deals",
                }

            xref = cross_reference([deal_record(deal) for deal in deals], [quote_record(quote) for quote in quotes])
            quotes_by_id = {str(quote.get("QuoteID")): quote for quote in quotes}
            quotes_by_number = {str(quote.get("QuoteNumber")): quote for quote in quotes if quote.get("QuoteNumber")}
            yield {
                "type": "progress",
                "step": "validate",
                "status": "running",
                "detail": f"Validating {len(deals)} deals",
            }

            issues: list[IssueRecord] = []
            quotes_processed = 0
            org_names: dict[int, str | None] = {}
            for index, deal in enumerate(deals, start=1):
                snapshot = await self._snapshot(
                    deal, config, xref, quotes_by_id, quotes_by_number, xero, pipedrive, org_names
                )
                if snapshot.quote is not None:
                    quotes_processed += 1
                issues.extend(evaluate_deal(snapshot, config))
                if index % _PROGRESS_EVERY == 0 or index == len(deals):
                    yield {"type": "validation_progress", "current": index, "total": len(deals)}

        summary: ValidationSummary = {
            "totalQuotes": len(quotes),
            "quotesProcessed": quotes_processed,
            "issuesFound": len(issues),
            "errorCount": sum(1 for issue in issues if issue.severity == Severity.ERROR.value),
            "warningCount": sum(1 for issue in issues if issue.severity == Severity.WARNING.value),
        }
        session["status"] = "completed"
        report = ValidationReport(
            session=session,
            issues=issues,
            summary=summary,
            matched=len(xref.matched),
            deals_only=len(xref.a_only),
            quotes_only=len(xref.b_only),
        )
        logger.info(
            "validation_completed tenant_id=%s deals=%s quotes=%s issues=%s duration_ms=%s",
            tenant_id,
            len(deals),
            len(quotes),
            len(issues),
            int((time.monotonic() - started) * 1000),
        )
        yield {"type": "progress", "step": "validate", "status": "completed", "detail": "Validation completed"}
        yield {"type": "complete", "data": {"report": report}}

    async def _snapshot(
        self,
        deal: dict[str, Any],
        config: TenantConfig,
        xref: CrossReference,
        quotes_by_id: dict[str, dict[str, Any]],
        quotes_by_number: dict[str, dict[str, Any]],
        xero: XeroGateway,
        pipedrive: PipedriveGateway,
        org_names: dict[int, str | None],
    ) -> DealSnapshot:
        deal_id = str(deal.get("id"))
        products = await pipedrive.list_deal_products(deal_id)

        org_name = _inline_org_name(deal)
        org_id = deal.get("org_id")
        if org_name is None and isinstance(org_id, int):
            if org_id not in org_names:
                org = await pipedrive.get_organization(org_id)
                org_names[org_id] = str(org.get("name")) if org and org.get("name") else None
            org_name = org_names[org_id]

        # The deal's quote-id field is authoritative; the title key is the fallback link.
        linked_quote_id = custom_field(deal, config.quote_id_field_key)
        linked_quote_id = str(linked_quote_id).strip() if linked_quote_id else None
        quote: dict[str, Any] | None = None
        if linked_quote_id:
            quote = quotes_by_id.get(linked_quote_id)
            if quote is None:
                quote = await xero.get_quote(linked_quote_id)
        else:
            quote_number = custom_field(deal, config.quote_number_field_key)
            if quote_number:
                quote = quotes_by_number.get(str(quote_number).strip())
            if quote is None:
                matched = xref.match_for(deal_id)
                quote = matched.payload if matched is not None else None
        return DealSnapshot(
            deal=deal,
            products=products,
            org_name=org_name,
            quote=quote,
            linked_quote_id=linked_quote_id,
        )
