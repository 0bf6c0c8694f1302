from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from dealsync.core.errors import AuthError, RateLimitError, RemoteApiError
from dealsync.core.config import get_settings
from dealsync.providers.base import parse_retry_after
from dealsync.providers.pipedrive import PipedriveGateway, custom_field, product_line_total
from dealsync.providers.xero import XeroGateway, strip_read_only
from dealsync.services.credentials import CredentialStore
from dealsync.services.rate_governor import RateGovernor, build_xero_governor
from dealsync.tests.utils.platforms import (
    FakePipedriveApi,
    FakeXeroApi,
    credential,
    make_deal,
    make_quote,
    open_governor,
)


async def _credentials():
    return credential()


def _xero(transport: httpx.AsyncBaseTransport, governor=None) -> XeroGateway:
    return XeroGateway(governor or open_governor("xero"), _credentials, transport=transport)


@pytest.mark.asyncio
async def test_fetch_all_quotes_pages_until_short_page() -> None:
    xero = FakeXeroApi([make_quote(f"q{i}") for i in range(150)])

    async with _xero(xero.transport) as gateway:
        quotes = await gateway.fetch_all_quotes()

    assert len(quotes) == 150
    assert [request.url.params["page"] for request in xero.requests] == ["1", "2"]
    assert xero.requests[0].headers["Authorization"] == "Bearer access-1"
    assert xero.requests[0].headers["Xero-tenant-id"] == credential().tenant_id


@pytest.mark.asyncio
async def test_quota_headers_feed_the_governor() -> None:
    xero = FakeXeroApi([make_quote("q1")])
    governor = build_xero_governor()

    async with _xero(xero.transport, governor) as gateway:
        await gateway.get_quote("q1")

    assert governor.budget("minute").used == 5
    assert governor.budget("day").used == 100


@pytest.mark.asyncio
async def test_missing_quote_is_none() -> None:
    async with _xero(FakeXeroApi().transport) as gateway:
        assert await gateway.get_quote("nope") is None


@pytest.mark.asyncio
async def test_update_quote_strips_read_only_fields() -> None:
    xero = FakeXeroApi([make_quote("q1")])
    quote = {**make_quote("q1"), "UpdatedDateUTC": "/Date(1)/", "HasAttachments": False}

    async with _xero(xero.transport) as gateway:
        await gateway.update_quote(quote)

    body = xero.requests[-1].content.decode()
    assert "UpdatedDateUTC" not in body
    assert "HasAttachments" not in body
    assert '"QuoteID":"q1"' in body.replace(" ", "")
    assert strip_read_only({"QuoteID": "q1", "Title": "x"}) == {"Title": "x"}


@pytest.mark.asyncio
async def test_update_quote_validation_errors_raise() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"Quotes": [{"QuoteID": "q1", "ValidationErrors": [{"Message": "Quote number is in use"}]}]},
        )

    async with _xero(httpx.MockTransport(handler)) as gateway:
        with pytest.raises(RemoteApiError) as excinfo:
            await gateway.update_quote(make_quote("q1"))

    assert "Quote number is in use" in str(excinfo.value)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "error"),
    [(401, AuthError), (429, RateLimitError), (500, RemoteApiError)],
)
async def test_status_codes_map_to_typed_errors(status_code: int, error: type[Exception]) -> None:
    xero = FakeXeroApi([make_quote("q1")])
    xero.fail_with = [status_code]

    async with _xero(xero.transport) as gateway:
        with pytest.raises(error):
            await gateway.get_quote("q1")


@pytest.mark.asyncio
async def test_retry_after_is_carried_on_rate_limit() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "7"})

    async with _xero(httpx.MockTransport(handler)) as gateway:
        with pytest.raises(RateLimitError) as excinfo:
            await gateway.list_quotes()

    assert excinfo.value.retry_after == 7.0


@pytest.mark.asyncio
async def test_transport_errors_are_retried(monkeypatch) -> None:
    monkeypatch.setenv("EXT_RETRY_BACKOFF_MS", "1")
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"Quotes": []})

    async with _xero(httpx.MockTransport(handler)) as gateway:
        assert await gateway.list_quotes() == []

    assert attempts["count"] == 2


@pytest.mark.asyncio
async def test_pipedrive_deal_lookup_and_update() -> None:
    pipedrive = FakePipedriveApi(deals_by_pipeline={6: [make_deal(42)]})
    gateway = PipedriveGateway(open_governor("pipedrive"), api_key="pd-key", transport=pipedrive.transport)

    async with gateway:
        deal = await gateway.get_deal("42")
        missing = await gateway.get_deal("99")
        updated = await gateway.update_deal("42", {"value": 10})

    assert deal is not None and deal["id"] == 42
    assert missing is None
    assert updated == {"id": 42, "value": 10}
    assert pipedrive.requests[0].headers["x-api-token"] == "pd-key"
    assert str(pipedrive.requests[0].url).startswith("https://api.pipedrive.com/api/v1/deals/42")


@pytest.mark.asyncio
async def test_pipedrive_unsuccessful_body_is_remote_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "error": "Deal not editable"})

    gateway = PipedriveGateway(open_governor("pipedrive"), api_key="pd-key", transport=httpx.MockTransport(handler))
    async with gateway:
        with pytest.raises(RemoteApiError):
            await gateway.update_deal("42", {"value": 1})


def test_custom_field_reads_v1_and_v2_shapes() -> None:
    assert custom_field({"custom_fields": {"abc": "q1"}}, "abc") == "q1"
    assert custom_field({"custom_fields": {"abc": {"value": "q2"}}}, "abc") == "q2"
    assert custom_field({"abc": "q3"}, "abc") == "q3"
    assert custom_field({"abc": "q3"}, None) is None


def test_product_line_total_prefers_sum_and_applies_discount() -> None:
    assert product_line_total({"sum": 123.45, "quantity": 1, "item_price": 1}) == 123.45
    assert product_line_total({"quantity": 2, "item_price": 100, "discount": 10}) == pytest.approx(180)
    assert product_line_total({"quantity": 2, "item_price": 100, "discount": 5, "discount_type": "amount"}) == 200


@pytest.mark.asyncio
async def test_credential_store_round_trip() -> None:
    store = CredentialStore()
    cred = credential()

    await store.save_credential("user-2", cred)
    assert await store.get_credential("user-2", cred.tenant_id) == cred

    await store.delete_credential("user-2", cred.tenant_id)
    assert await store.get_credential("user-2", cred.tenant_id) is None


@pytest.mark.asyncio
async def test_admission_wait_is_not_cut_short_by_call_timeout(monkeypatch) -> None:
    monkeypatch.setenv("EXT_CALL_TIMEOUT_MS", "50")
    get_settings.cache_clear()
    clock = {"now": 0.0}

    async def slow_sleep(seconds: float) -> None:
        # Really wait longer than one call is allowed to take.
        await asyncio.sleep(0.2)
        clock["now"] += seconds

    governor = RateGovernor("xero", {"window": (1, 1.0)}, clock=lambda: clock["now"], sleep=slow_sleep)
    xero = FakeXeroApi([make_quote("q1")])

    async with _xero(xero.transport, governor) as gateway:
        assert await gateway.get_quote("q1") is not None
        assert await gateway.get_quote("q1") is not None

    assert len(xero.requests) == 2
    assert clock["now"] >= 1.0


@pytest.mark.asyncio
async def test_http_date_retry_after_is_parsed() -> None:
    xero = FakeXeroApi([make_quote("q1")])
    xero.fail_with = [429]
    xero.headers = {"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}

    async with _xero(xero.transport) as gateway:
        with pytest.raises(RateLimitError) as excinfo:
            await gateway.get_quote("q1")

    assert excinfo.value.retry_after == 0.0


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, None),
        ("12", 12.0),
        ("Wed, 21 Oct 2015 07:28:30 GMT", 30.0),
        ("soon", None),
    ],
)
def test_parse_retry_after(value: str | None, expected: float | None) -> None:
    now = datetime(2015, 10, 21, 7, 28, 0, tzinfo=timezone.utc)
    assert parse_retry_after(value, now=now) == expected
