from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Any

from dealsync.domain.records import IssueCode, IssueRecord, Severity
from dealsync.providers.pipedrive import custom_field, product_line_total
from dealsync.services.tenant_config import TenantConfig


TITLE_PATTERN = re.compile(r"^([A-Z]+\d+)\s*-\s*(.+)$")
# Xero's default numbering ("QU-0042") carries no project code.
BARE_QUOTE_NUMBER = re.compile(r"^QU-?\d+$", re.IGNORECASE)
_VESSEL_PLACEHOLDERS = {"", "-", "tbc", "tba", "n/a", "na", "unknown", "none"}
ACCEPTED_STATES = ("ACCEPTED", "INVOICED")

_SEVERITY: dict[IssueCode, Severity] = {
    IssueCode.NO_PRODUCTS: Severity.WARNING,
    IssueCode.CUSTOMER_NAME_MISMATCH: Severity.WARNING,
    IssueCode.DEAL_VALUE_ZERO: Severity.WARNING,
    IssueCode.XERO_QUOTE_INVOICED: Severity.INFO,
}


def severity_for(code: IssueCode) -> Severity:
    return _SEVERITY.get(code, Severity.ERROR)


def to_cents(amount: Any) -> int:
    return int(round(float(amount or 0) * 100))


@dataclass(frozen=True)
class DealSnapshot:
    """Everything the rules need about one won deal and its linked quote."""

    deal: dict[str, Any]
    products: list[dict[str, Any]]
    org_name: str | None
    quote: dict[str, Any] | None
    # Quote id from the deal's custom field, if one was entered.
    linked_quote_id: str | None


def project_code(title: str | None, config: TenantConfig) -> str:
    match = TITLE_PATTERN.match((title or "").strip())
    if match:
        return match.group(1)
    return config.project_code or "PROJECT"


def expected_quote_number(quote_number: str, title: str | None, config: TenantConfig) -> str:
    return f"{project_code(title, config)}-{quote_number}-1"


class _IssueBuilder:
    def __init__(self, snapshot: DealSnapshot) -> None:
        deal = snapshot.deal
        quote = snapshot.quote or {}
        self.deal_ref = str(deal.get("id")) if deal.get("id") is not None else None
        self.quote_ref = quote.get("QuoteID") or snapshot.linked_quote_id
        self.base = {
            "dealId": self.deal_ref,
            "dealTitle": deal.get("title"),
            "quoteId": self.quote_ref,
            "quoteNumber": quote.get("QuoteNumber"),
        }
        self.issues: list[IssueRecord] = []

    def add(self, code: IssueCode, message: str, **details: Any) -> None:
        self.issues.append(
            IssueRecord(
                issue_code=code.value,
                severity=severity_for(code).value,
                deal_ref=self.deal_ref,
                quote_ref=self.quote_ref,
                details={**self.base, **details},
                message=message,
            )
        )


def _check_title(builder: _IssueBuilder, title: str) -> None:
    if not title:
        builder.add(IssueCode.TITLE_MISSING, "Deal has no title")
        return
    if title.endswith("-"):
        builder.add(IssueCode.TITLE_INCOMPLETE, "Deal title ends with a dangling separator", currentTitle=title)
        return
    if not TITLE_PATTERN.match(title):
        builder.add(
            IssueCode.TITLE_FORMAT_INVALID,
            "Deal title does not follow 'CODE123 - Description'",
            currentTitle=title,
        )


def evaluate_deal(snapshot: DealSnapshot, config: TenantConfig) -> list[IssueRecord]:
    """Apply the fixed issue taxonomy to one won deal."""
    deal = snapshot.deal
    builder = _IssueBuilder(snapshot)
    title = str(deal.get("title") or "").strip()
    _check_title(builder, title)

    if config.vessel_name_field_key:
        vessel = str(custom_field(deal, config.vessel_name_field_key) or "").strip()
        if vessel.lower() in _VESSEL_PLACEHOLDERS:
            builder.add(IssueCode.VESSEL_NAME_INVALID, "Vessel name is missing or a placeholder", vesselName=vessel)

    if not snapshot.org_name:
        builder.add(IssueCode.DEAL_ORG_MISSING, "Deal is not linked to an organization")

    deal_value_cents = to_cents(deal.get("value"))
    products_total_cents = sum(to_cents(product_line_total(product)) for product in snapshot.products)
    if deal_value_cents == 0:
        builder.add(IssueCode.DEAL_VALUE_ZERO, "Deal value is zero")
    if not snapshot.products:
        builder.add(IssueCode.NO_PRODUCTS, "Deal has no products")
    elif deal_value_cents != products_total_cents:
        builder.add(
            IssueCode.DEAL_PRODUCTS_VALUE_MISMATCH,
            "Deal value does not equal the sum of its products",
            dealValue=deal_value_cents / 100,
            productsTotal=products_total_cents / 100,
            difference=(deal_value_cents - products_total_cents) / 100,
        )

    quote = snapshot.quote
    if quote is None:
        if snapshot.linked_quote_id:
            builder.add(
                IssueCode.XERO_QUOTE_NOT_FOUND,
                "Linked Xero quote does not exist",
                linkedQuoteId=snapshot.linked_quote_id,
            )
        else:
            builder.add(IssueCode.XERO_QUOTE_MISSING, "Won deal has no Xero quote")
        return builder.issues

    status = str(quote.get("Status") or "").upper()
    if status == "INVOICED":
        builder.add(IssueCode.XERO_QUOTE_INVOICED, "Xero quote is already invoiced", currentStatus=status)
    elif status not in ACCEPTED_STATES:
        builder.add(
            IssueCode.XERO_QUOTE_NOT_ACCEPTED,
            "Deal is won but the Xero quote is not accepted",
            currentStatus=status,
            targetStatus="ACCEPTED",
        )

    quote_number = str(quote.get("QuoteNumber") or "")
    if BARE_QUOTE_NUMBER.match(quote_number):
        builder.add(
            IssueCode.XERO_QUOTE_NUMBER_NO_PROJECT,
            "Xero quote number has no project code",
            currentQuoteNumber=quote_number,
            expectedQuoteNumber=expected_quote_number(quote_number, title, config),
            quoteStatus=status,
        )

    deal_currency = str(deal.get("currency") or "").upper()
    quote_currency = str(quote.get("CurrencyCode") or "").upper()
    if deal_currency and quote_currency and deal_currency != quote_currency:
        builder.add(
            IssueCode.CURRENCY_MISMATCH,
            "Deal and quote currencies differ",
            dealCurrency=deal_currency,
            quoteCurrency=quote_currency,
        )

    contact_name = str((quote.get("Contact") or {}).get("Name") or "").strip().lower()
    org_name = (snapshot.org_name or "").strip().lower()
    if contact_name and org_name and contact_name not in org_name and org_name not in contact_name:
        builder.add(
            IssueCode.CUSTOMER_NAME_MISMATCH,
            "Deal organization and quote contact differ",
            organizationName=snapshot.org_name,
            contactName=(quote.get("Contact") or {}).get("Name"),
        )

    if snapshot.products:
        line_items = quote.get("LineItems") or []
        # Line items are synced tax-free, so compare against the pre-tax subtotal.
        quote_total_cents = to_cents(quote.get("SubTotal", quote.get("Total")))
        if quote_total_cents != products_total_cents:
            builder.add(
                IssueCode.XERO_QUOTE_VALUE_MISMATCH,
                "Xero quote total does not equal the deal's products",
                productsTotal=products_total_cents / 100,
                quoteTotal=quote_total_cents / 100,
                difference=(products_total_cents - quote_total_cents) / 100,
                quoteStatus=status,
            )
        if len(line_items) != len(snapshot.products):
            builder.add(
                IssueCode.PRODUCT_COUNT_MISMATCH,
                "Deal product count differs from quote line items",
                pipedriveCount=len(snapshot.products),
                xeroCount=len(line_items),
                quoteStatus=status,
            )
    return builder.issues
