from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import unquote_plus

import httpx
from fastapi.responses import Response

from mcp_tenant_gateway.credentials import CredentialResolver, NotConfigured
from mcp_tenant_gateway.gateway.audit import OAuthAuditLogger
from mcp_tenant_gateway.gateway.errors import (
    invalid_client,
    invalid_request,
    server_error,
    tenant_not_configured,
    unsupported_grant_type,
)
from mcp_tenant_gateway.gateway.sources import (
    Source,
    constant,
    first_present,
    string_field,
)
from mcp_tenant_gateway.state_codec import OAuthState, decode_state
from mcp_tenant_gateway.tenants import TenantRegistry
from mcp_tenant_gateway.virtual_clients import VirtualClientStore

logger = logging.getLogger("uvicorn.error")

AUTHORIZATION_CODE = "authorization_code"
REFRESH_TOKEN = "refresh_token"
PASSWORD = "password"
SUPPORTED_GRANT_TYPES = (AUTHORIZATION_CODE, REFRESH_TOKEN, PASSWORD)

REQUIRED_GRANT_FIELDS: dict[str, tuple[str, ...]] = {
    AUTHORIZATION_CODE: ("code",),
    REFRESH_TOKEN: ("refresh_token",),
    PASSWORD: ("username", "password"),
}

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _text(data: Mapping[str, Any] | None, key: str) -> str | None:
    if data is None:
        return None
    value = data.get(key)
    return value if isinstance(value, str) and value else None


def parse_basic_client_auth(
    headers: Mapping[str, str] | None,
) -> tuple[str, str] | None:
    if headers is None:
        return None
    scheme, _, encoded = headers.get("authorization", "").partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return None
    client_id, separator, client_secret = decoded.partition(":")
    if not separator or not client_id:
        return None
    return unquote_plus(client_id), unquote_plus(client_secret)


class TokenProxy:
    """Forwards token requests to the tenant's upstream token endpoint.

    The caller never chooses the upstream credentials: ``client_id`` and
    ``client_secret`` always come from the resolved tenant. Upstream responses
    are relayed with their original status and JSON body.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        resolver: CredentialResolver,
        store: VirtualClientStore,
        *,
        timeout_seconds: float = 5.0,
        connect_timeout_seconds: float | None = None,
        require_virtual_secret: bool = False,
        password_default_scope: str = "api",
        audit: OAuthAuditLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._registry = registry
        self._resolver = resolver
        self._store = store
        self.require_virtual_secret = require_virtual_secret
        self.password_default_scope = password_default_scope
        self._audit = audit
        read_timeout = max(0.1, float(timeout_seconds))
        connect_timeout = (
            max(0.1, float(connect_timeout_seconds))
            if connect_timeout_seconds is not None
            else read_timeout
        )
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(read_timeout, connect=connect_timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def exchange(
        self,
        form: Mapping[str, Any],
        query: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Response:
        grant_type = _text(form, "grant_type")
        logger.info("oauth_token_request grant_type=%s", grant_type)
        if grant_type is None:
            raise invalid_request("Missing required parameter: grant_type")
        if grant_type not in SUPPORTED_GRANT_TYPES:
            raise unsupported_grant_type(grant_type)

        decoded_state: OAuthState | None = None
        if grant_type == AUTHORIZATION_CODE:
            decoded_state = decode_state(form.get("state"))

        tenant_sources: list[Source] = [
            ("body", string_field(form, "tenant")),
            ("query", string_field(query, "tenant")),
        ]
        if grant_type == AUTHORIZATION_CODE:
            tenant_sources.append(
                ("state", constant(decoded_state.tenant if decoded_state else None))
            )
        tenant_source = first_present(tenant_sources)
        if tenant_source is None:
            if grant_type == AUTHORIZATION_CODE:
                raise invalid_request(
                    "Missing state parameter or unable to determine tenant; "
                    "use the tenant-qualified endpoint /mcp/<tenant>/oauth2/token"
                )
            raise invalid_request("Missing required parameter: tenant")
        requested_tenant = tenant_source.value

        missing = [
            field for field in REQUIRED_GRANT_FIELDS[grant_type] if not _text(form, field)
        ]
        if missing:
            raise invalid_request(f"Missing required parameter: {', '.join(missing)}")

        client_id = _text(form, "client_id")
        client_secret = _text(form, "client_secret")
        if client_id is None:
            basic = parse_basic_client_auth(headers)
            if basic is not None:
                client_id, client_secret = basic

        resolved = await asyncio.to_thread(
            self._resolver.resolve, client_id, requested_tenant
        )
        if isinstance(resolved, NotConfigured):
            raise tenant_not_configured(resolved.tenant_id)

        if self.require_virtual_secret and resolved.is_virtual:
            valid = client_id is not None and client_secret is not None and (
                self._store.validate(client_id, client_secret)
            )
            if not valid:
                logger.warning(
                    "oauth_token_invalid_virtual_secret client_id=%s", client_id
                )
                raise invalid_client("Invalid client credentials")

        tenant = resolved.tenant_id
        config = self._registry.config_for(tenant)
        if config is None:
            raise tenant_not_configured(tenant)
        endpoints = self._registry.oauth_endpoints_for(tenant)
        if endpoints is None:
            raise server_error("Failed to get tenant endpoints")

        body: dict[str, str] = {
            "grant_type": grant_type,
            "client_id": resolved.client_id,
            "client_secret": resolved.client_secret,
        }
        if grant_type == AUTHORIZATION_CODE:
            _copy_present(form, body, "code")
            redirect = first_present(
                [
                    ("tenant_config", constant(config.credentials.redirect_uri)),
                    ("request", string_field(form, "redirect_uri")),
                    (
                        "state",
                        constant(decoded_state.redirect_uri if decoded_state else None),
                    ),
                ]
            )
            if redirect is not None:
                body["redirect_uri"] = redirect.value
            _copy_present(form, body, "code_verifier")
        elif grant_type == REFRESH_TOKEN:
            _copy_present(form, body, "refresh_token")
            _copy_present(form, body, "scope")
        else:
            _copy_present(form, body, "username")
            _copy_present(form, body, "password")
            if "scope" in form:
                body["scope"] = _text(form, "scope") or self.password_default_scope

        logger.info(
            "oauth_token_proxy tenant=%s tenant_source=%s virtual_client=%s target=%s",
            tenant,
            tenant_source.source,
            resolved.is_virtual,
            endpoints.token_url,
        )
        try:
            upstream = await self.client.post(
                endpoints.token_url,
                data=body,
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
            )
        except httpx.RequestError as exc:
            logger.warning(
                "oauth_token_upstream_error tenant=%s error_type=%s",
                tenant,
                exc.__class__.__name__,
            )
            self._log_audit(tenant, grant_type, resolved.is_virtual, status=None)
            raise server_error("Failed to proxy token request") from exc

        try:
            payload = upstream.json()
        except ValueError as exc:
            logger.warning(
                "oauth_token_upstream_error tenant=%s status=%d reason=invalid_json",
                tenant,
                upstream.status_code,
            )
            self._log_audit(tenant, grant_type, resolved.is_virtual, status=None)
            raise server_error(
                "Upstream token endpoint returned an invalid response"
            ) from exc

        if upstream.is_success:
            logger.info("oauth_token_issued tenant=%s grant_type=%s", tenant, grant_type)
        else:
            upstream_error = payload.get("error") if isinstance(payload, dict) else None
            logger.warning(
                "oauth_token_rejected tenant=%s status=%d error=%s",
                tenant,
                upstream.status_code,
                upstream_error,
            )
        self._log_audit(
            tenant, grant_type, resolved.is_virtual, status=upstream.status_code
        )

        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            media_type="application/json",
            headers=NO_STORE_HEADERS,
        )

    def _log_audit(
        self,
        tenant: str,
        grant_type: str,
        virtual_client: bool,
        status: int | None,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log(
            "token_exchange",
            tenant=tenant,
            grant_type=grant_type,
            virtual_client=virtual_client,
            upstream_status=status,
        )


def _copy_present(source: Mapping[str, Any], target: dict[str, str], key: str) -> None:
    value = _text(source, key)
    if value is not None:
        target[key] = value
