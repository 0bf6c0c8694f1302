from __future__ import annotations

import logging
from typing import Any

import httpx

from dealsync.core.config import get_settings
from dealsync.core.errors import RemoteApiError
from dealsync.providers.base import PlatformGateway
from dealsync.services.rate_governor import RateGovernor


logger = logging.getLogger(__name__)

PIPEDRIVE_PAGE_SIZE = 100


def custom_field(deal: dict[str, Any], key: str | None) -> Any:
    # v2 nests custom fields; v1 returns them as top-level keys.
    if not key:
        return None
    nested = deal.get("custom_fields")
    if isinstance(nested, dict) and key in nested:
        value = nested[key]
    else:
        value = deal.get(key)
    if isinstance(value, dict) and "value" in value:
        return value["value"]
    return value


def product_line_total(product: dict[str, Any]) -> float:
    if product.get("sum") is not None:
        return float(product["sum"])
    quantity = float(product.get("quantity") or 0)
    price = float(product.get("item_price") or 0)
    discount = product_discount_percent(product)
    return quantity * price * (1 - discount / 100)


def product_discount_percent(product: dict[str, Any]) -> float:
    if product.get("discount_percentage") is not None:
        return float(product["discount_percentage"])
    if product.get("discount_type", "percentage") == "percentage" and product.get("discount") is not None:
        return float(product["discount"])
    return 0.0


class PipedriveGateway(PlatformGateway):
    platform = "pipedrive"

    def __init__(
        self,
        governor: RateGovernor,
        *,
        api_key: str,
        company_domain: str = "api",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        base_url = get_settings().pipedrive_base_url.format(domain=company_domain)
        super().__init__(governor, base_url=base_url, transport=transport)
        self._api_key = api_key

    async def _auth_headers(self) -> dict[str, str]:
        return {"x-api-token": self._api_key}

    async def _data(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self.request(method, path, **kwargs)
        if response is None:
            return None
        body = response.json()
        if not body.get("success", True):
            raise RemoteApiError(self.platform, response.status_code, f"Pipedrive API error: {body.get('error') or 'unknown'}")
        return body

    async def list_won_deals(self, pipeline_id: int) -> list[dict[str, Any]]:
        # Cursor pagination; the last page has no next_cursor.
        deals: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"limit": PIPEDRIVE_PAGE_SIZE, "status": "won", "pipeline_id": pipeline_id}
            if cursor:
                params["cursor"] = cursor
            body = await self._data("GET", "/v2/deals", params=params)
            deals.extend(body.get("data") or [])
            cursor = (body.get("additional_data") or {}).get("next_cursor")
            if not cursor:
                logger.info("pipedrive_deals_fetched pipeline_id=%s count=%s", pipeline_id, len(deals))
                return deals

    async def get_deal(self, deal_id: str) -> dict[str, Any] | None:
        body = await self._data("GET", f"/v1/deals/{deal_id}", allow_not_found=True)
        return body.get("data") if body else None

    async def list_deal_products(self, deal_id: str) -> list[dict[str, Any]]:
        body = await self._data("GET", f"/v1/deals/{deal_id}/products")
        return list(body.get("data") or [])

    async def get_organization(self, org_id: int) -> dict[str, Any] | None:
        body = await self._data("GET", f"/v1/organizations/{org_id}", allow_not_found=True)
        return body.get("data") if body else None

    async def update_deal(self, deal_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        body = await self._data("PUT", f"/v1/deals/{deal_id}", json=fields)
        return body.get("data") or {}
