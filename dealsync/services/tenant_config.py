from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from pydantic import BaseModel, Field, ValidationError, model_validator

from dealsync.core.config import get_settings
from dealsync.core.errors import ConfigurationError
from dealsync.domain.records import TenantContext


logger = logging.getLogger(__name__)


class TenantConfig(BaseModel):
    # Integration settings for one Xero tenant and its paired Pipedrive account.
    tenant_id: str
    tenant_name: str
    pipedrive_api_key: str = ""
    pipedrive_company_domain: str = "api"
    pipeline_ids: list[int] = Field(default_factory=list)
    # Deal custom fields that link a deal to its Xero quote.
    quote_id_field_key: str
    quote_number_field_key: str
    vessel_name_field_key: str | None = None
    # Fallback project code for quote numbers when the deal title has none.
    project_code: str | None = None
    enabled: bool = True

    @model_validator(mode="after")
    def _disable_without_api_key(self) -> "TenantConfig":
        # No API key means the integration cannot run.
        if not self.pipedrive_api_key:
            self.enabled = False
        return self

    def context(self) -> TenantContext:
        return TenantContext(
            tenant_id=self.tenant_id,
            display_name=self.tenant_name,
            platform_credentials_ref=f"pipedrive:{self.tenant_id}",
        )


class TenantConfigProvider(Protocol):
    def get_tenant_config(self, tenant_id: str) -> TenantConfig: ...


class StaticTenantConfigProvider:
    """Serves tenant configs from a mapping (settings JSON in production)."""

    def __init__(self, configs: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        raw = configs if configs is not None else get_settings().tenant_configs
        self._configs: dict[str, TenantConfig] = {}
        for tenant_id, values in raw.items():
            try:
                self._configs[tenant_id] = TenantConfig(**{"tenant_id": tenant_id, **dict(values)})
            except ValidationError as exc:
                logger.warning("tenant_config_invalid tenant_id=%s errors=%s", tenant_id, exc.error_count())

    def find(self, tenant_id: str) -> TenantConfig | None:
        return self._configs.get(tenant_id)

    def get_tenant_config(self, tenant_id: str) -> TenantConfig:
        config = self._configs.get(tenant_id)
        if config is None:
            raise ConfigurationError(
                f"No configuration found for tenant {tenant_id}",
                tenant_id=tenant_id,
                reason="not_found",
            )
        if not config.enabled:
            raise ConfigurationError(
                f"Pipedrive integration is disabled for tenant {config.tenant_name}",
                tenant_id=tenant_id,
                reason="disabled",
            )
        return config
