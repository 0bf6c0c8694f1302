from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from dealsync.apps.api.main import create_app
from dealsync.tests.utils.api import HEADERS, build_test_services, read_sse
from dealsync.tests.utils.platforms import (
    TENANT_ID,
    FakePipedriveApi,
    FakeXeroApi,
    make_quote,
    tenant_config,
)


def _issue(code: str, deal_ref: str = "42", quote_ref: str | None = "q1") -> dict:
    return {"issueCode": code, "severity": "error", "dealRef": deal_ref, "quoteRef": quote_ref, "details": {}}


async def _client(xero: FakeXeroApi, pipedrive: FakePipedriveApi, **kwargs) -> AsyncClient:
    app = create_app(services=await build_test_services(xero, pipedrive, **kwargs))
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_fix_stream_runs_workflow_and_ends_with_done() -> None:
    xero = FakeXeroApi([make_quote("q1", Status="DRAFT")])
    payload = {
        "tenantId": TENANT_ID,
        "issues": [_issue("XERO_QUOTE_NOT_ACCEPTED"), _issue("TITLE_MISSING", quote_ref=None)],
    }
    async with await _client(xero, FakePipedriveApi()) as client:
        status, headers, events = await read_sse(client, "/v1/fixes/stream", payload)

    assert status == 200
    assert headers["content-type"].startswith("text/event-stream")
    assert headers["x-accel-buffering"] == "no"
    assert [event["type"] for event in events] == [
        "session_started",
        "progress",
        "progress",
        "progress",
        "progress",
        "progress",
        "progress",
        "session_completed",
        "done",
    ]
    assert len({event["request_id"] for event in events}) == 1
    assert all(event["session_id"].startswith("fix_") for event in events)
    summary = events[-2]["data"]["summary"]
    assert summary["fixedCount"] == 1
    assert summary["skippedCount"] == 1
    assert xero.status_updates == [("q1", "SENT"), ("q1", "ACCEPTED")]


@pytest.mark.asyncio
async def test_fix_stream_auth_failure_mid_workflow_emits_error_then_done() -> None:
    xero = FakeXeroApi([make_quote("q1", Status="DRAFT")])
    xero.fail_with = [401]
    payload = {"tenantId": TENANT_ID, "issues": [_issue("XERO_QUOTE_NOT_ACCEPTED")]}
    async with await _client(xero, FakePipedriveApi()) as client:
        status, _headers, events = await read_sse(client, "/v1/fixes/stream", payload)

    assert status == 200
    types = [event["type"] for event in events]
    assert types[-2:] == ["error", "done"]
    assert "session_completed" not in types
    assert events[-2]["data"]["details"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"issues": []},
        {"tenantId": TENANT_ID, "issues": "not-a-list"},
        {"tenantId": TENANT_ID},
        {"tenantId": TENANT_ID, "issues": ["not-an-object"]},
    ],
)
async def test_fix_stream_rejects_malformed_requests(payload: dict) -> None:
    async with await _client(FakeXeroApi(), FakePipedriveApi()) as client:
        status, _headers, body = await read_sse(client, "/v1/fixes/stream", payload)

    assert status == 400
    assert body[0]["error"]["code"] == "BAD_REQUEST"


@pytest.mark.asyncio
async def test_fix_stream_unknown_tenant_is_404() -> None:
    async with await _client(FakeXeroApi(), FakePipedriveApi(), configs={}) as client:
        status, _headers, body = await read_sse(client, "/v1/fixes/stream", {"tenantId": TENANT_ID, "issues": []})

    assert status == 404
    assert body[0]["error"]["code"] == "TENANT_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_fix_stream_disabled_tenant_is_400() -> None:
    configs = {TENANT_ID: tenant_config(enabled=False)}
    async with await _client(FakeXeroApi(), FakePipedriveApi(), configs=configs) as client:
        status, _headers, body = await read_sse(client, "/v1/fixes/stream", {"tenantId": TENANT_ID, "issues": []})

    assert status == 400
    assert body[0]["error"]["code"] == "TENANT_INTEGRATION_DISABLED"


@pytest.mark.asyncio
async def test_fix_stream_without_credential_is_401() -> None:
    xero = FakeXeroApi()
    async with await _client(xero, FakePipedriveApi(), with_credential=False) as client:
        status, _headers, body = await read_sse(client, "/v1/fixes/stream", {"tenantId": TENANT_ID, "issues": []})

    assert status == 401
    assert body[0]["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert xero.requests == []


@pytest.mark.asyncio
async def test_fix_stream_requires_caller_identity() -> None:
    async with await _client(FakeXeroApi(), FakePipedriveApi()) as client:
        response = await client.post("/v1/fixes/stream", json={"tenantId": TENANT_ID, "issues": []})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_rollback_is_not_implemented() -> None:
    async with await _client(FakeXeroApi(), FakePipedriveApi()) as client:
        response = await client.delete(
            "/v1/fixes", params={"tenantId": TENANT_ID, "sessionId": "fix_1"}, headers=HEADERS
        )

    assert response.status_code == 501
    assert response.json()["error"]["code"] == "NOT_IMPLEMENTED"


@pytest.mark.asyncio
async def test_rollback_validates_parameters_and_tenant() -> None:
    async with await _client(FakeXeroApi(), FakePipedriveApi(), configs={}) as client:
        missing = await client.delete("/v1/fixes", params={"tenantId": TENANT_ID}, headers=HEADERS)
        unknown = await client.delete(
            "/v1/fixes", params={"tenantId": TENANT_ID, "sessionId": "fix_1"}, headers=HEADERS
        )

    assert missing.status_code == 400
    assert unknown.status_code == 404
