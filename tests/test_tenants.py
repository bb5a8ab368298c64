from __future__ import annotations

from mcp_tenant_gateway.tenants import (
    TenantRegistry,
    denormalize_tenant_key,
    normalize_tenant_key,
)
from tests.client_test_utils import build_registry


def test_normalize_tenant_key_replaces_separators() -> None:
    assert normalize_tenant_key("riccardo-lr-test") == "RICCARDO_LR_TEST"
    assert normalize_tenant_key("acme.eu") == "ACME_EU"
    assert denormalize_tenant_key("RICCARDO_LR_TEST") == "riccardo-lr-test"


def test_config_for_derives_base_url_and_credentials() -> None:
    registry = build_registry()

    config = registry.config_for("beta-corp")

    assert config is not None
    assert config.base_url == "https://beta-corp.lms.test"
    assert config.credentials.client_id == "beta-id"
    assert config.credentials.client_secret == "beta-secret"
    assert config.credentials.redirect_uri == "https://gateway.example.com/callback"


def test_missing_secret_means_not_configured() -> None:
    registry = TenantRegistry({"TENANT_HALF_CLIENT_ID": "only-id"})

    assert registry.credentials_for("half") is None
    assert registry.config_for("half") is None
    assert registry.oauth_endpoints_for("half") is None
    assert registry.api_base_url_for("half") is None


def test_unknown_and_malformed_tenants_are_not_configured() -> None:
    registry = build_registry()

    assert registry.config_for("nobody") is None
    assert registry.config_for("") is None
    assert registry.config_for("evil.com/x") is None
    assert registry.config_for("-acme") is None


def test_oauth_endpoints_follow_base_url() -> None:
    registry = build_registry()

    endpoints = registry.oauth_endpoints_for("acme")

    assert endpoints is not None
    assert endpoints.authorization_url == "https://acme.lms.test/oauth2/authorize"
    assert endpoints.token_url == "https://acme.lms.test/oauth2/token"
    assert registry.api_base_url_for("acme") == "https://acme.lms.test"


def test_list_configured_tenants_reverse_scans_client_id_keys() -> None:
    registry = build_registry(UNRELATED_KEY="x", TENANT_ACME_REDIRECT_URI="https://cb")

    assert registry.list_configured_tenants() == ["acme", "beta-corp"]


def test_registry_copies_environment_at_construction() -> None:
    environment = {"TENANT_ACME_CLIENT_ID": "a", "TENANT_ACME_CLIENT_SECRET": "b"}
    registry = TenantRegistry(environment)

    environment["TENANT_ACME_CLIENT_SECRET"] = "changed"

    credentials = registry.credentials_for("acme")
    assert credentials is not None
    assert credentials.client_secret == "b"
