from __future__ import annotations

import asyncio
import base64
import json
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest

from mcp_tenant_gateway.credentials import CredentialResolver
from mcp_tenant_gateway.gateway.errors import OAuthProxyError
from mcp_tenant_gateway.gateway.token import TokenProxy, parse_basic_client_auth
from mcp_tenant_gateway.state_codec import encode_state
from mcp_tenant_gateway.virtual_clients import VirtualClientStore
from tests.client_test_utils import build_registry, build_test_client, install_upstream

TOKEN_BODY = {"access_token": "at-1", "token_type": "Bearer", "expires_in": 3600}


class RecordingUpstream:
    def __init__(self, status_code: int = 200, body: Any = None, raw: bytes | None = None):
        self.status_code = status_code
        self.body = TOKEN_BODY if body is None else body
        self.raw = raw
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raw is not None:
            return httpx.Response(self.status_code, content=self.raw)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def form(self) -> list[tuple[str, str]]:
        return parse_qsl(self.requests[-1].content.decode("utf-8"), keep_blank_values=True)


def _proxy(
    tmp_path: Path,
    handler: Any,
    **kwargs: Any,
) -> tuple[TokenProxy, VirtualClientStore]:
    registry = build_registry()
    store = VirtualClientStore(tmp_path / "virtual-clients.txt", "server-secret")
    store.initialize()
    proxy = TokenProxy(
        registry,
        CredentialResolver(registry, store),
        store,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )
    return proxy, store


def _exchange(proxy: TokenProxy, form: dict[str, str], **kwargs: Any) -> Any:
    async def _run() -> Any:
        try:
            return await proxy.exchange(form, **kwargs)
        finally:
            await proxy.close()

    return asyncio.run(_run())


def _error(proxy: TokenProxy, form: dict[str, str], **kwargs: Any) -> OAuthProxyError:
    with pytest.raises(OAuthProxyError) as exc_info:
        _exchange(proxy, form, **kwargs)
    return exc_info.value


def test_refresh_token_body_uses_tenant_credentials(tmp_path: Path) -> None:
    upstream = RecordingUpstream()
    proxy, _ = _proxy(tmp_path, upstream)

    response = _exchange(
        proxy,
        {
            "grant_type": "refresh_token",
            "tenant": "acme",
            "refresh_token": "r1",
            "client_id": "caller-id",
            "client_secret": "caller-secret",
        },
    )

    assert response.status_code == 200
    assert json.loads(response.body) == TOKEN_BODY
    assert response.headers["cache-control"] == "no-store"
    request = upstream.requests[0]
    assert str(request.url) == "https://acme.lms.test/oauth2/token"
    assert request.headers["content-type"] == "application/x-www-form-urlencoded"
    assert upstream.form == [
        ("grant_type", "refresh_token"),
        ("client_id", "real-id"),
        ("client_secret", "real-secret"),
        ("refresh_token", "r1"),
    ]


def test_refresh_token_forwards_scope_when_present(tmp_path: Path) -> None:
    upstream = RecordingUpstream()
    proxy, _ = _proxy(tmp_path, upstream)

    _exchange(
        proxy,
        {"grant_type": "refresh_token", "refresh_token": "r1", "scope": "api"},
        query={"tenant": "acme"},
    )

    assert ("scope", "api") in upstream.form


def test_authorization_code_recovers_tenant_and_redirect_from_state(
    tmp_path: Path,
) -> None:
    upstream = RecordingUpstream()
    proxy, _ = _proxy(tmp_path, upstream)

    _exchange(
        proxy,
        {
            "grant_type": "authorization_code",
            "code": "c1",
            "code_verifier": "v1",
            "state": encode_state("acme", "orig", "https://cb.example.com"),
        },
    )

    assert str(upstream.requests[0].url) == "https://acme.lms.test/oauth2/token"
    assert dict(upstream.form) == {
        "grant_type": "authorization_code",
        "client_id": "real-id",
        "client_secret": "real-secret",
        "code": "c1",
        "redirect_uri": "https://cb.example.com",
        "code_verifier": "v1",
    }


def test_authorization_code_prefers_explicit_tenant_over_state(tmp_path: Path) -> None:
    upstream = RecordingUpstream()
    proxy, _ = _proxy(tmp_path, upstream)

    _exchange(
        proxy,
        {
            "grant_type": "authorization_code",
            "code": "c1",
            "tenant": "acme",
            "state": encode_state("beta-corp"),
        },
    )

    assert str(upstream.requests[0].url) == "https://acme.lms.test/oauth2/token"


def test_configured_redirect_uri_overrides_caller(tmp_path: Path) -> None:
    upstream = RecordingUpstream()
    proxy, _ = _proxy(tmp_path, upstream)

    _exchange(
        proxy,
        {
            "grant_type": "authorization_code",
            "tenant": "beta-corp",
            "code": "c1",
            "redirect_uri": "https://attacker.example.com",
        },
    )

    assert dict(upstream.form)["redirect_uri"] == "https://gateway.example.com/callback"


def test_authorization_code_without_tenant_or_state_is_400(tmp_path: Path) -> None:
    proxy, _ = _proxy(tmp_path, RecordingUpstream())

    error = _error(proxy, {"grant_type": "authorization_code", "code": "c1"})

    assert error.status_code == 400
    assert error.error == "invalid_request"
    assert "/mcp/<tenant>/oauth2/token" in error.description


def test_garbage_state_folds_into_invalid_request(tmp_path: Path) -> None:
    proxy, _ = _proxy(tmp_path, RecordingUpstream())

    error = _error(
        proxy, {"grant_type": "authorization_code", "code": "c1", "state": "%%%"}
    )

    assert error.status_code == 400


def test_refresh_token_requires_explicit_tenant(tmp_path: Path) -> None:
    proxy, _ = _proxy(tmp_path, RecordingUpstream())

    error = _error(
        proxy,
        {
            "grant_type": "refresh_token",
            "refresh_token": "r1",
            "state": encode_state("acme"),
        },
    )

    assert error.status_code == 400
    assert error.description == "Missing required parameter: tenant"


def test_unsupported_grant_type_names_the_grant(tmp_path: Path) -> None:
    proxy, _ = _proxy(tmp_path, RecordingUpstream())

    error = _error(proxy, {"grant_type": "client_credentials"})

    assert error.status_code == 400
    assert error.error == "unsupported_grant_type"
    assert "client_credentials" in error.description


def test_missing_grant_type_is_invalid_request(tmp_path: Path) -> None:
    proxy, _ = _proxy(tmp_path, RecordingUpstream())

    error = _error(proxy, {"tenant": "acme"})

    assert error.error == "invalid_request"
    assert "grant_type" in error.description


def test_missing_grant_fields_are_400(tmp_path: Path) -> None:
    upstream = RecordingUpstream()
    proxy, _ = _proxy(tmp_path, upstream)

    error = _error(proxy, {"grant_type": "password", "tenant": "acme", "username": "u"})

    assert error.status_code == 400
    assert "password" in error.description
    assert upstream.requests == []


def test_unconfigured_tenant_is_404(tmp_path: Path) -> None:
    proxy, _ = _proxy(tmp_path, RecordingUpstream())

    error = _error(
        proxy, {"grant_type": "refresh_token", "tenant": "nobody", "refresh_token": "r"}
    )

    assert error.status_code == 404
    assert "nobody" in error.description


@pytest.mark.parametrize(
    ("form", "expected_scope"),
    [
        ({"scope": ""}, "api"),
        ({"scope": "custom"}, "custom"),
        ({}, None),
    ],
)
def test_password_scope_defaults_only_when_present_but_empty(
    tmp_path: Path, form: dict[str, str], expected_scope: str | None
) -> None:
    upstream = RecordingUpstream()
    proxy, _ = _proxy(tmp_path, upstream)

    _exchange(
        proxy,
        {
            "grant_type": "password",
            "tenant": "acme",
            "username": "u",
            "password": "p",
            **form,
        },
    )

    assert dict(upstream.form).get("scope") == expected_scope


def test_virtual_client_uses_owning_tenant_endpoint(tmp_path: Path) -> None:
    upstream = RecordingUpstream()
    proxy, store = _proxy(tmp_path, upstream)
    issued = store.register("beta-corp")

    _exchange(
        proxy,
        {
            "grant_type": "refresh_token",
            "tenant": "acme",
            "refresh_token": "r1",
            "client_id": issued.client_id,
        },
    )

    assert str(upstream.requests[0].url) == "https://beta-corp.lms.test/oauth2/token"
    form = dict(upstream.form)
    assert form["client_id"] == "beta-id"
    assert form["client_secret"] == "beta-secret"


def test_virtual_client_for_unconfigured_tenant_names_that_tenant(
    tmp_path: Path,
) -> None:
    upstream = RecordingUpstream()
    proxy, store = _proxy(tmp_path, upstream)
    issued = store.register("gone-tenant")

    error = _error(
        proxy,
        {
            "grant_type": "refresh_token",
            "tenant": "acme",
            "refresh_token": "r1",
            "client_id": issued.client_id,
        },
    )

    assert error.status_code == 404
    assert error.description == "Tenant 'gone-tenant' is not configured"
    assert upstream.requests == []


def test_basic_auth_identifies_virtual_client(tmp_path: Path) -> None:
    upstream = RecordingUpstream()
    proxy, store = _proxy(tmp_path, upstream, require_virtual_secret=True)
    issued = store.register("beta-corp")
    encoded = base64.b64encode(
        f"{issued.client_id}:{issued.client_secret}".encode()
    ).decode()

    _exchange(
        proxy,
        {"grant_type": "refresh_token", "tenant": "acme", "refresh_token": "r1"},
        headers={"authorization": f"Basic {encoded}"},
    )

    assert str(upstream.requests[0].url) == "https://beta-corp.lms.test/oauth2/token"


def test_wrong_virtual_secret_is_rejected_when_required(tmp_path: Path) -> None:
    upstream = RecordingUpstream()
    proxy, store = _proxy(tmp_path, upstream, require_virtual_secret=True)
    issued = store.register("beta-corp")

    error = _error(
        proxy,
        {
            "grant_type": "refresh_token",
            "tenant": "acme",
            "refresh_token": "r1",
            "client_id": issued.client_id,
            "client_secret": "guess",
        },
    )

    assert error.status_code == 401
    assert error.error == "invalid_client"
    assert upstream.requests == []


def test_upstream_error_is_relayed_verbatim(tmp_path: Path) -> None:
    body = {"error": "invalid_grant", "error_description": "Code expired"}
    proxy, _ = _proxy(tmp_path, RecordingUpstream(status_code=400, body=body))

    response = _exchange(
        proxy,
        {"grant_type": "authorization_code", "tenant": "acme", "code": "old"},
    )

    assert response.status_code == 400
    assert json.loads(response.body) == body


def test_transport_failure_is_server_error(tmp_path: Path) -> None:
    def _fail(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    proxy, _ = _proxy(tmp_path, _fail)

    error = _error(
        proxy, {"grant_type": "refresh_token", "tenant": "acme", "refresh_token": "r"}
    )

    assert error.status_code == 500
    assert error.error == "server_error"


def test_non_json_upstream_is_server_error(tmp_path: Path) -> None:
    proxy, _ = _proxy(tmp_path, RecordingUpstream(raw=b"<html>bad gateway</html>"))

    error = _error(
        proxy, {"grant_type": "refresh_token", "tenant": "acme", "refresh_token": "r"}
    )

    assert error.status_code == 500


def test_parse_basic_client_auth() -> None:
    encoded = base64.b64encode(b"my%20id:s3cret").decode()

    assert parse_basic_client_auth({"authorization": f"Basic {encoded}"}) == (
        "my id",
        "s3cret",
    )
    assert parse_basic_client_auth({"authorization": "Bearer abc"}) is None
    assert parse_basic_client_auth({"authorization": "Basic !!!"}) is None
    assert parse_basic_client_auth(None) is None


def test_token_routes_relay_upstream(monkeypatch: Any, tmp_path: Path) -> None:
    upstream = RecordingUpstream()
    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(upstream)
        prefixed = client.post(
            "/mcp/acme/oauth2/token",
            data={"grant_type": "refresh_token", "refresh_token": "r1"},
        )
        root = client.post(
            "/oauth2/token",
            data={
                "grant_type": "authorization_code",
                "code": "c1",
                "state": encode_state("acme", "s"),
            },
        )
        unsupported = client.post("/oauth2/token", data={"grant_type": "implicit"})

    assert prefixed.status_code == 200
    assert prefixed.json() == TOKEN_BODY
    assert prefixed.headers["cache-control"] == "no-store"
    assert root.status_code == 200
    assert [str(request.url) for request in upstream.requests] == [
        "https://acme.lms.test/oauth2/token",
        "https://acme.lms.test/oauth2/token",
    ]
    assert unsupported.status_code == 400
    assert unsupported.json() == {
        "error": "unsupported_grant_type",
        "error_description": "Grant type 'implicit' is not supported",
    }
