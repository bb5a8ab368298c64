from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping
from urllib.parse import urlencode, urlparse

from fastapi import status
from fastapi.responses import RedirectResponse

from mcp_tenant_gateway.credentials import CredentialResolver, NotConfigured
from mcp_tenant_gateway.gateway.audit import OAuthAuditLogger
from mcp_tenant_gateway.gateway.errors import (
    invalid_request,
    server_error,
    tenant_not_configured,
)
from mcp_tenant_gateway.gateway.sources import constant, first_present, string_field
from mcp_tenant_gateway.state_codec import encode_state
from mcp_tenant_gateway.tenants import TenantRegistry

logger = logging.getLogger("uvicorn.error")

# Consumed or replaced by the proxy, never copied upstream verbatim.
EXCLUDED_AUTHORIZE_PARAMS = frozenset(
    {"tenant", "state", "client_id", "redirect_uri", "resource"}
)

_RESOURCE_TENANT_PATTERN = re.compile(r"/mcp/([^/]+)")


def tenant_from_resource(resource: str | None) -> str | None:
    if not resource:
        return None
    match = _RESOURCE_TENANT_PATTERN.search(urlparse(resource).path)
    if match is None:
        return None
    return match.group(1)


class AuthorizeProxy:
    """Rewrites an authorization request into the tenant's upstream redirect.

    No upstream call is made. The caller's ``state`` survives inside the
    encoded state so the token phase can recover the tenant.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        resolver: CredentialResolver,
        audit: OAuthAuditLogger | None = None,
    ) -> None:
        self._registry = registry
        self._resolver = resolver
        self._audit = audit

    async def authorize(self, params: Mapping[str, str]) -> RedirectResponse:
        tenant_source = first_present(
            [
                ("query", string_field(params, "tenant")),
                ("resource", lambda: tenant_from_resource(params.get("resource"))),
            ]
        )
        if tenant_source is None:
            raise invalid_request(
                "Missing required parameter: tenant "
                "(pass ?tenant=<tenant> or a resource URL containing /mcp/<tenant>)"
            )
        tenant = tenant_source.value
        logger.info(
            "oauth_authorize_request tenant=%s tenant_source=%s",
            tenant,
            tenant_source.source,
        )

        resolved = await asyncio.to_thread(
            self._resolver.resolve, params.get("client_id") or None, tenant
        )
        if isinstance(resolved, NotConfigured):
            raise tenant_not_configured(resolved.tenant_id)

        tenant = resolved.tenant_id
        config = self._registry.config_for(tenant)
        if config is None:
            raise tenant_not_configured(tenant)
        endpoints = self._registry.oauth_endpoints_for(tenant)
        if endpoints is None:
            raise server_error("Failed to get tenant endpoints")

        redirect = first_present(
            [
                ("tenant_config", constant(config.credentials.redirect_uri)),
                ("request", string_field(params, "redirect_uri")),
            ]
        )
        original_state = params.get("state")
        encoded_state = encode_state(
            tenant,
            original_state if isinstance(original_state, str) else None,
            redirect.value if redirect and redirect.source == "request" else None,
        )

        upstream_params = {
            key: value
            for key, value in params.items()
            if key not in EXCLUDED_AUTHORIZE_PARAMS and value
        }
        upstream_params["client_id"] = resolved.client_id
        if redirect is not None:
            upstream_params["redirect_uri"] = redirect.value
        upstream_params["state"] = encoded_state

        logger.info(
            "oauth_authorize_redirect tenant=%s virtual_client=%s redirect_source=%s target=%s",
            tenant,
            resolved.is_virtual,
            redirect.source if redirect else None,
            endpoints.authorization_url,
        )
        if self._audit is not None:
            self._audit.log(
                "authorize_redirect",
                tenant=tenant,
                tenant_source=tenant_source.source,
                virtual_client=resolved.is_virtual,
                redirect_source=redirect.source if redirect else None,
            )

        return RedirectResponse(
            url=f"{endpoints.authorization_url}?{urlencode(upstream_params)}",
            status_code=status.HTTP_302_FOUND,
        )
