from __future__ import annotations

import pytest

from dealsync.services.tenant_config import TenantConfig
from dealsync.services.validation_rules import DealSnapshot, evaluate_deal, expected_quote_number, to_cents
from dealsync.tests.utils.platforms import TENANT_ID, make_deal, make_product, make_quote, tenant_config


def _config(**overrides) -> TenantConfig:
    return TenantConfig(tenant_id=TENANT_ID, **tenant_config(**overrides))


def _snapshot(
    *,
    deal: dict | None = None,
    products: list | None = None,
    org_name: str | None = "Harbor Marine",
    quote: dict | None = None,
    linked_quote_id: str | None = None,
    no_quote: bool = False,
) -> DealSnapshot:
    return DealSnapshot(
        deal=deal or make_deal(42),
        products=[make_product()] if products is None else products,
        org_name=org_name,
        quote=None if no_quote else (quote or make_quote("q1")),
        linked_quote_id=linked_quote_id,
    )


def _codes(snapshot: DealSnapshot, **config_overrides) -> list[str]:
    return [issue.issue_code for issue in evaluate_deal(snapshot, _config(**config_overrides))]


def test_consistent_deal_and_quote_have_no_issues() -> None:
    assert _codes(_snapshot()) == []


@pytest.mark.parametrize(
    ("title", "code"),
    [
        ("", "TITLE_MISSING"),
        ("NY25202 -", "TITLE_INCOMPLETE"),
        ("Refit job", "TITLE_FORMAT_INVALID"),
        ("ny25202 - lower case code", "TITLE_FORMAT_INVALID"),
    ],
)
def test_title_checks(title: str, code: str) -> None:
    assert _codes(_snapshot(deal=make_deal(42, title=title))) == [code]


def test_placeholder_vessel_name() -> None:
    deal = make_deal(42, custom_fields={"vessel": "TBC"})

    assert _codes(_snapshot(deal=deal), vessel_name_field_key="vessel") == ["VESSEL_NAME_INVALID"]


def test_missing_org() -> None:
    assert _codes(_snapshot(org_name=None)) == ["DEAL_ORG_MISSING"]


def test_deal_value_compared_in_cents() -> None:
    issues = evaluate_deal(_snapshot(deal=make_deal(42, value=999.99)), _config())

    assert [issue.issue_code for issue in issues] == ["DEAL_PRODUCTS_VALUE_MISMATCH"]
    assert issues[0].details["difference"] == pytest.approx(-0.01)
    assert _codes(_snapshot(deal=make_deal(42, value=1000.004))) == []


def test_zero_value_deal_without_products() -> None:
    codes = _codes(_snapshot(deal=make_deal(42, value=0), products=[]))

    assert codes == ["DEAL_VALUE_ZERO", "NO_PRODUCTS"]


def test_missing_quote_stops_quote_checks() -> None:
    assert _codes(_snapshot(no_quote=True)) == ["XERO_QUOTE_MISSING"]
    assert _codes(_snapshot(no_quote=True, linked_quote_id="gone")) == ["XERO_QUOTE_NOT_FOUND"]


def test_quote_status_checks() -> None:
    issues = evaluate_deal(_snapshot(quote=make_quote("q1", Status="DRAFT")), _config())
    assert [issue.issue_code for issue in issues] == ["XERO_QUOTE_NOT_ACCEPTED"]
    assert issues[0].details["targetStatus"] == "ACCEPTED"
    assert issues[0].quote_ref == "q1"

    invoiced = evaluate_deal(_snapshot(quote=make_quote("q1", Status="INVOICED")), _config())
    assert [(issue.issue_code, issue.severity) for issue in invoiced] == [("XERO_QUOTE_INVOICED", "info")]


def test_bare_quote_number_gets_project_prefix() -> None:
    issues = evaluate_deal(_snapshot(quote=make_quote("q1", QuoteNumber="QU-0042")), _config())

    assert [issue.issue_code for issue in issues] == ["XERO_QUOTE_NUMBER_NO_PROJECT"]
    assert issues[0].details["expectedQuoteNumber"] == "NY25202-QU-0042-1"


def test_expected_quote_number_falls_back_to_configured_code() -> None:
    assert expected_quote_number("QU-7", "Untitled", _config(project_code="EL")) == "EL-QU-7-1"
    assert expected_quote_number("QU-7", None, _config()) == "PROJECT-QU-7-1"


def test_currency_and_customer_checks() -> None:
    quote = make_quote("q1", CurrencyCode="EUR", Contact={"Name": "Acme Shipping"})

    issues = evaluate_deal(_snapshot(quote=quote), _config())

    assert [(issue.issue_code, issue.severity) for issue in issues] == [
        ("CURRENCY_MISMATCH", "error"),
        ("CUSTOMER_NAME_MISMATCH", "warning"),
    ]


def test_customer_name_substring_is_accepted() -> None:
    quote = make_quote("q1", Contact={"Name": "Harbor Marine LLC"})

    assert _codes(_snapshot(quote=quote)) == []


def test_quote_value_and_line_item_count() -> None:
    quote = make_quote(
        "q1",
        SubTotal=1200,
        Total=1320,
        LineItems=[{"LineAmount": 600}, {"LineAmount": 600}],
    )

    issues = evaluate_deal(_snapshot(quote=quote), _config())

    assert [issue.issue_code for issue in issues] == ["XERO_QUOTE_VALUE_MISMATCH", "PRODUCT_COUNT_MISMATCH"]
    assert issues[0].details["difference"] == pytest.approx(-200)
    assert issues[1].details["pipedriveCount"] == 1
    assert issues[1].details["xeroCount"] == 2


def test_quote_value_falls_back_to_total() -> None:
    quote = make_quote("q1", Total=1000)
    del quote["SubTotal"]

    assert _codes(_snapshot(quote=quote)) == []


def test_issue_details_carry_references() -> None:
    (issue,) = evaluate_deal(_snapshot(org_name=None), _config())

    assert issue.deal_ref == "42"
    assert issue.details["dealTitle"] == "NY25202 - LST 207 RSS ENDURANCE"
    assert issue.to_dict()["issueCode"] == "DEAL_ORG_MISSING"


def test_to_cents_rounds() -> None:
    assert to_cents("10.50") == 1050
    assert to_cents(None) == 0
    assert to_cents(12.34) == 1234
