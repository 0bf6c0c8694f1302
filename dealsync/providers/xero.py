from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import httpx

from dealsync.core.config import get_settings
from dealsync.core.errors import RemoteApiError
from dealsync.domain.records import Credential
from dealsync.providers.base import PlatformGateway
from dealsync.services.rate_governor import RateGovernor


logger = logging.getLogger(__name__)

XERO_PAGE_SIZE = 100
# Fields Xero computes itself and rejects on update.
_READ_ONLY_QUOTE_FIELDS = ("QuoteID", "UpdatedDateUTC", "HasAttachments", "IsDeleted", "ValidationErrors")

CredentialSource = Callable[[], Awaitable[Credential]]


def strip_read_only(quote: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in quote.items() if key not in _READ_ONLY_QUOTE_FIELDS}


class XeroGateway(PlatformGateway):
    platform = "xero"

    def __init__(
        self,
        governor: RateGovernor,
        credentials: CredentialSource,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(governor, base_url=get_settings().xero_api_base_url, transport=transport)
        # Resolved per call so a refresh mid-workflow is picked up.
        self._credentials = credentials

    async def _auth_headers(self) -> dict[str, str]:
        credential = await self._credentials()
        return {
            "Authorization": f"Bearer {credential.access_token}",
            "Xero-tenant-id": credential.tenant_id,
        }

    async def list_quotes(self, page: int = 1) -> list[dict[str, Any]]:
        response = await self.request("GET", "/Quotes", params={"page": page})
        assert response is not None
        return list(response.json().get("Quotes") or [])

    async def fetch_all_quotes(self) -> list[dict[str, Any]]:
        # Xero pages hold at most 100 quotes; a short page is the last one.
        quotes: list[dict[str, Any]] = []
        page = 1
        while True:
            batch = await self.list_quotes(page)
            quotes.extend(batch)
            logger.debug("xero_quotes_page page=%s fetched=%s total=%s", page, len(batch), len(quotes))
            if len(batch) < XERO_PAGE_SIZE:
                return quotes
            page += 1

    async def get_quote(self, quote_id: str) -> dict[str, Any] | None:
        response = await self.request("GET", f"/Quotes/{quote_id}", allow_not_found=True)
        if response is None:
            return None
        quotes = response.json().get("Quotes") or []
        return quotes[0] if quotes else None

    async def update_quote(self, quote: dict[str, Any]) -> dict[str, Any]:
        quote_id = quote.get("QuoteID")
        body = {"Quotes": [{"QuoteID": quote_id, **strip_read_only(quote)}]}
        response = await self.request("POST", "/Quotes", json=body)
        assert response is not None
        quotes = response.json().get("Quotes") or []
        if not quotes:
            raise RemoteApiError(self.platform, response.status_code, "Xero returned no quote after update")
        updated = quotes[0]
        errors = updated.get("ValidationErrors") or []
        if errors:
            messages = "; ".join(str(item.get("Message")) for item in errors)
            raise RemoteApiError(self.platform, response.status_code, f"Xero rejected quote update: {messages}", body=errors)
        return updated

    async def set_quote_status(self, quote: dict[str, Any], status: str) -> dict[str, Any]:
        return await self.update_quote({**quote, "Status": status})
