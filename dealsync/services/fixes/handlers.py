from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Protocol

from dealsync.core.errors import ManualInterventionRequired, RateLimitError, RemoteApiError
from dealsync.domain.records import IssueCode, IssueRecord, TenantContext
from dealsync.providers.pipedrive import PipedriveGateway, product_discount_percent, product_line_total
from dealsync.providers.xero import XeroGateway
from dealsync.services.fixes.quote_status import transition_path
from dealsync.services.tenant_config import TenantConfig


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FixContext:
    tenant: TenantContext
    config: TenantConfig
    xero: XeroGateway
    pipedrive: PipedriveGateway


class FixHandler(Protocol):
    issue_codes: tuple[IssueCode, ...]

    async def validate(self, issue: IssueRecord, ctx: FixContext) -> list[str]: ...

    async def apply(self, issue: IssueRecord, ctx: FixContext) -> str: ...


def _quote_id(issue: IssueRecord) -> str | None:
    return issue.quote_ref or issue.details.get("quoteId")


def _require_quote_id(issue: IssueRecord) -> list[str]:
    return [] if _quote_id(issue) else ["issue has no Xero quote id"]


async def _load_quote(issue: IssueRecord, ctx: FixContext) -> dict[str, Any]:
    quote_id = _quote_id(issue)
    quote = await ctx.xero.get_quote(str(quote_id))
    if quote is None:
        raise RemoteApiError("xero", 404, f"Xero quote {quote_id} not found")
    return quote


async def _edit_quote(
    ctx: FixContext, issue: IssueRecord, quote: dict[str, Any], changes: dict[str, Any]
) -> str | None:
    """Apply field changes, stepping an ACCEPTED quote through SENT and back.

    The status seen at validation time travels in ``quoteStatus``, so a retry
    that finds the quote parked in SENT by an earlier attempt still restores
    ACCEPTED. Returns a warning when the edit landed but ACCEPTED could not be
    restored.
    """
    status = str(quote.get("Status") or "").upper()
    if status == "INVOICED":
        raise ManualInterventionRequired("Invoiced quotes cannot be edited")
    was_accepted = str(issue.details.get("quoteStatus") or "").upper() == "ACCEPTED"
    if status != "ACCEPTED" and not (status == "SENT" and was_accepted):
        await ctx.xero.update_quote({**quote, **changes})
        return None

    sent = await ctx.xero.set_quote_status(quote, "SENT") if status == "ACCEPTED" else quote
    try:
        updated = await ctx.xero.update_quote({**sent, **changes, "Status": "SENT"})
    except (RemoteApiError, RateLimitError):
        # Put the quote back before the error reaches the caller.
        try:
            await ctx.xero.set_quote_status(sent, "ACCEPTED")
        except (RemoteApiError, RateLimitError) as exc:
            logger.warning("quote_accept_restore_failed quote_id=%s error=%s", quote.get("QuoteID"), type(exc).__name__)
        raise
    try:
        await ctx.xero.set_quote_status(updated, "ACCEPTED")
    except RemoteApiError as exc:
        logger.warning("quote_accept_restore_failed quote_id=%s status=%s", quote.get("QuoteID"), exc.status_code)
        return "quote updated but could not be restored to ACCEPTED"
    return None


def line_items_from_products(products: list[dict[str, Any]]) -> list[dict[str, Any]]:
    items = []
    for product in products:
        quantity = float(product.get("quantity") or 0)
        unit_amount = float(product.get("item_price") or 0)
        items.append(
            {
                "Description": product.get("name") or "Product",
                "Quantity": quantity,
                "UnitAmount": unit_amount,
                "LineAmount": round(quantity * unit_amount, 2),
                "AccountCode": "200",
                "TaxType": "NONE",
                "DiscountRate": product_discount_percent(product),
            }
        )
    return items


class AcceptQuoteHandler:
    issue_codes = (IssueCode.XERO_QUOTE_NOT_ACCEPTED,)

    async def validate(self, issue: IssueRecord, ctx: FixContext) -> list[str]:
        return _require_quote_id(issue)

    async def apply(self, issue: IssueRecord, ctx: FixContext) -> str:
        quote = await _load_quote(issue, ctx)
        current = str(quote.get("Status") or "").upper()
        path = transition_path(current, "ACCEPTED")
        if path is None:
            raise ManualInterventionRequired(f"No status path from {current} to ACCEPTED")
        if not path:
            return "quote already accepted"
        for status in path:
            quote = await ctx.xero.set_quote_status(quote, status)
        return f"quote moved {current} -> {' -> '.join(path)}"


class QuoteNumberHandler:
    issue_codes = (IssueCode.XERO_QUOTE_NUMBER_NO_PROJECT,)

    async def validate(self, issue: IssueRecord, ctx: FixContext) -> list[str]:
        problems = _require_quote_id(issue)
        if not issue.details.get("expectedQuoteNumber"):
            problems.append("issue has no expected quote number")
        return problems

    async def apply(self, issue: IssueRecord, ctx: FixContext) -> str:
        expected = str(issue.details["expectedQuoteNumber"])
        quote = await _load_quote(issue, ctx)
        if quote.get("QuoteNumber") == expected:
            return "quote number already correct"
        warning = await _edit_quote(ctx, issue, quote, {"QuoteNumber": expected})
        return warning or f"quote number set to {expected}"


class SyncQuoteLineItemsHandler:
    """Replaces a quote's line items with the deal's Pipedrive products."""

    issue_codes = (IssueCode.XERO_QUOTE_VALUE_MISMATCH, IssueCode.PRODUCT_COUNT_MISMATCH)

    async def validate(self, issue: IssueRecord, ctx: FixContext) -> list[str]:
        problems = _require_quote_id(issue)
        if not issue.deal_ref:
            problems.append("issue has no deal reference")
        return problems

    async def apply(self, issue: IssueRecord, ctx: FixContext) -> str:
        products = await ctx.pipedrive.list_deal_products(str(issue.deal_ref))
        if not products:
            raise ManualInterventionRequired("Deal has no products to sync to the quote")
        quote = await _load_quote(issue, ctx)
        warning = await _edit_quote(ctx, issue, quote, {"LineItems": line_items_from_products(products)})
        return warning or f"synced {len(products)} products to quote"


class DealValueHandler:
    issue_codes = (IssueCode.DEAL_PRODUCTS_VALUE_MISMATCH,)

    async def validate(self, issue: IssueRecord, ctx: FixContext) -> list[str]:
        return [] if issue.deal_ref else ["issue has no deal reference"]

    async def apply(self, issue: IssueRecord, ctx: FixContext) -> str:
        products = await ctx.pipedrive.list_deal_products(str(issue.deal_ref))
        if not products:
            raise ManualInterventionRequired("Deal has no products; add products in Pipedrive")
        total = round(sum(product_line_total(product) for product in products), 2)
        await ctx.pipedrive.update_deal(str(issue.deal_ref), {"value": total})
        return f"deal value set to {total:.2f}"
