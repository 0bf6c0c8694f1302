from __future__ import annotations

import json

import pytest

from dealsync.core.errors import ConfigurationError
from dealsync.services.tenant_config import StaticTenantConfigProvider
from dealsync.tests.utils.platforms import TENANT_ID, tenant_config


def test_known_tenant_returns_config() -> None:
    provider = StaticTenantConfigProvider({TENANT_ID: tenant_config()})

    config = provider.get_tenant_config(TENANT_ID)

    assert config.tenant_name == "Marine Works"
    assert config.pipeline_ids == [6]
    assert config.context().tenant_id == TENANT_ID


def test_unknown_tenant_is_not_found() -> None:
    provider = StaticTenantConfigProvider({})

    with pytest.raises(ConfigurationError) as excinfo:
        provider.get_tenant_config("missing")
    assert excinfo.value.reason == "not_found"


@pytest.mark.parametrize("overrides", [{"enabled": False}, {"pipedrive_api_key": ""}])
def test_disabled_integration(overrides: dict) -> None:
    provider = StaticTenantConfigProvider({TENANT_ID: tenant_config(**overrides)})

    with pytest.raises(ConfigurationError) as excinfo:
        provider.get_tenant_config(TENANT_ID)
    assert excinfo.value.reason == "disabled"
    assert provider.find(TENANT_ID) is not None


def test_invalid_entries_are_skipped() -> None:
    provider = StaticTenantConfigProvider({"broken": {"tenant_name": "No field keys"}, TENANT_ID: tenant_config()})

    assert provider.find("broken") is None
    assert provider.find(TENANT_ID) is not None


def test_configs_load_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("TENANT_CONFIGS", json.dumps({TENANT_ID: tenant_config()}))

    provider = StaticTenantConfigProvider()

    assert provider.get_tenant_config(TENANT_ID).quote_id_field_key == "quote_id_field"
