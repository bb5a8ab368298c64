from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mcp_tenant_gateway.gateway.audit import OAuthAuditLogger
from mcp_tenant_gateway.gateway.errors import (
    invalid_client_metadata,
    invalid_request,
    tenant_not_configured,
)
from mcp_tenant_gateway.gateway.token import NO_STORE_HEADERS
from mcp_tenant_gateway.tenants import TenantRegistry
from mcp_tenant_gateway.virtual_clients import VirtualClientStore

logger = logging.getLogger("uvicorn.error")

DEFAULT_GRANT_TYPES = ["authorization_code", "refresh_token"]
DEFAULT_RESPONSE_TYPES = ["code"]
TOKEN_ENDPOINT_AUTH_METHOD = "client_secret_post"


class ClientRegistrationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    client_name: str | None = None
    redirect_uris: list[str] = Field(default_factory=list)
    grant_types: list[str] | None = None
    response_types: list[str] | None = None
    scope: str | None = None

    @field_validator("client_name")
    @classmethod
    def _check_client_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if any(char in normalized for char in "|\r\n"):
            raise ValueError("client_name must not contain '|' or line breaks")
        return normalized or None

    @field_validator("redirect_uris")
    @classmethod
    def _check_redirect_uris(cls, value: list[str]) -> list[str]:
        for uri in value:
            if not uri.startswith(("https://", "http://")):
                raise ValueError(f"redirect_uri must be an absolute HTTP(S) URL: {uri}")
            if any(char in uri for char in "|,\r\n"):
                raise ValueError(f"redirect_uri contains unsupported characters: {uri}")
        return value


class ClientRegistrar:
    """Issues virtual clients bound to one tenant (RFC 7591 look-alike)."""

    def __init__(
        self,
        registry: TenantRegistry,
        store: VirtualClientStore,
        audit: OAuthAuditLogger | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._audit = audit

    async def register(self, payload: Any, tenant: str | None) -> JSONResponse:
        if not tenant:
            raise invalid_request(
                "Missing required parameter: tenant "
                "(use /mcp/<tenant>/oauth2/register or ?tenant=<tenant>)"
            )
        if self._registry.config_for(tenant) is None:
            raise tenant_not_configured(tenant)

        if not isinstance(payload, dict):
            raise invalid_client_metadata("Expected a JSON object request body.")
        try:
            request = ClientRegistrationRequest.model_validate(payload)
        except ValidationError as exc:
            first = exc.errors()[0]
            message = str(first.get("msg", "Invalid metadata"))
            raise invalid_client_metadata(message) from exc

        try:
            issued = await asyncio.to_thread(
                self._store.register,
                tenant,
                request.client_name,
                request.redirect_uris,
            )
        except ValueError as exc:
            raise invalid_client_metadata(str(exc)) from exc

        logger.info(
            "oauth_client_registered tenant=%s client_id=%s redirect_uris=%d",
            tenant,
            issued.client_id,
            len(request.redirect_uris),
        )
        if self._audit is not None:
            self._audit.log(
                "client_registered",
                tenant=tenant,
                client_id=issued.client_id,
                client_name=request.client_name,
            )

        return JSONResponse(
            status_code=status.HTTP_201_CREATED,
            headers=NO_STORE_HEADERS,
            content={
                "client_id": issued.client_id,
                "client_secret": issued.client_secret,
                "client_id_issued_at": int(issued.issued_at.timestamp()),
                "client_name": request.client_name,
                "redirect_uris": request.redirect_uris,
                "grant_types": request.grant_types or DEFAULT_GRANT_TYPES,
                "response_types": request.response_types or DEFAULT_RESPONSE_TYPES,
                "token_endpoint_auth_method": TOKEN_ENDPOINT_AUTH_METHOD,
            },
        )
