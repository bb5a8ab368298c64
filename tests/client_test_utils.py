from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
from fastapi.testclient import TestClient

from mcp_tenant_gateway.main import app
from mcp_tenant_gateway.settings import get_settings
from mcp_tenant_gateway.tenants import TenantRegistry

ACME_ENV = {
    "TENANT_ACME_CLIENT_ID": "real-id",
    "TENANT_ACME_CLIENT_SECRET": "real-secret",
}

BETA_ENV = {
    "TENANT_BETA_CORP_CLIENT_ID": "beta-id",
    "TENANT_BETA_CORP_CLIENT_SECRET": "beta-secret",
    "TENANT_BETA_CORP_REDIRECT_URI": "https://gateway.example.com/callback",
}


def build_registry(**extra: str) -> TenantRegistry:
    return TenantRegistry({**ACME_ENV, **BETA_ENV, **extra}, upstream_domain="lms.test")


def set_default_test_env(monkeypatch: Any, tmp_path: Path) -> None:
    monkeypatch.setenv("UPSTREAM_DOMAIN", "lms.test")
    monkeypatch.setenv("SERVER_PUBLIC_URL", "https://gateway.example.com")
    monkeypatch.setenv("VIRTUAL_CLIENTS_PATH", str(tmp_path / "virtual-clients.txt"))
    monkeypatch.setenv("CREDENTIALS_ENV_FILE", str(tmp_path / "missing.env"))
    monkeypatch.setenv("DCR_SERVER_SECRET", "test-server-secret")
    for key, value in {**ACME_ENV, **BETA_ENV}.items():
        monkeypatch.setenv(key, value)


def build_test_client(monkeypatch: Any, tmp_path: Path, **env: Any) -> TestClient:
    set_default_test_env(monkeypatch, tmp_path)
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    return TestClient(app)


def install_upstream(handler: Any) -> None:
    """Route the running app's outbound calls through ``handler``."""
    transport = httpx.MockTransport(handler)
    app.state.token_proxy.client = httpx.AsyncClient(transport=transport)
    app.state.lms_client.client = httpx.AsyncClient(transport=transport)
