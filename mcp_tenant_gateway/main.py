from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from mcp_tenant_gateway import __version__
from mcp_tenant_gateway.credentials import CredentialResolver
from mcp_tenant_gateway.gateway.audit import OAuthAuditLogger
from mcp_tenant_gateway.gateway.auth import BearerPassthrough
from mcp_tenant_gateway.gateway.authorize import AuthorizeProxy
from mcp_tenant_gateway.gateway.discovery import (
    authorization_server_metadata,
    endpoint_description,
    protected_resource_metadata,
)
from mcp_tenant_gateway.gateway.errors import (
    OAuthProxyError,
    invalid_client_metadata,
)
from mcp_tenant_gateway.gateway.origins import OriginPolicy
from mcp_tenant_gateway.gateway.registration import ClientRegistrar
from mcp_tenant_gateway.gateway.token import TokenProxy
from mcp_tenant_gateway.lms_client import LmsApiClient
from mcp_tenant_gateway.mcp import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    McpDispatcher,
    jsonrpc_error,
)
from mcp_tenant_gateway.settings import get_settings, load_tenant_environment
from mcp_tenant_gateway.tenants import TenantRegistry
from mcp_tenant_gateway.virtual_clients import VirtualClientStore

app = FastAPI(
    title="MCP Tenant Gateway",
    description="Multi-tenant OAuth2 authorization proxy and MCP endpoint.",
    version=__version__,
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def origin_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    policy: OriginPolicy | None = getattr(app.state, "origin_policy", None)
    if policy is None:
        return await call_next(request)
    return await policy.apply(request, call_next)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    registry = TenantRegistry(
        load_tenant_environment(settings.credentials_env_file),
        upstream_domain=settings.upstream_domain,
    )
    store = VirtualClientStore(settings.virtual_clients_path, settings.dcr_server_secret)
    store.initialize()
    if settings.uses_default_dcr_secret:
        logger.warning(
            "dcr_server_secret_default virtual client secrets are derived from the "
            "built-in default; set DCR_SERVER_SECRET in production"
        )

    resolver = CredentialResolver(registry, store)
    audit_logger = OAuthAuditLogger(
        settings.oauth_audit_log_path,
        enabled=settings.oauth_audit_log_enabled,
    )
    lms_client = LmsApiClient(
        registry,
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
    )

    app.state.settings = settings
    app.state.tenant_registry = registry
    app.state.virtual_client_store = store
    app.state.audit_logger = audit_logger
    app.state.origin_policy = OriginPolicy(
        settings.allowed_origins_list, allow_local_dev=settings.allow_local_dev
    )
    app.state.bearer_auth = BearerPassthrough(settings.server_public_url)
    app.state.authorize_proxy = AuthorizeProxy(registry, resolver, audit=audit_logger)
    app.state.token_proxy = TokenProxy(
        registry,
        resolver,
        store,
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        require_virtual_secret=settings.virtual_client_require_secret,
        password_default_scope=settings.password_grant_default_scope,
        audit=audit_logger,
    )
    app.state.client_registrar = ClientRegistrar(registry, store, audit=audit_logger)
    app.state.lms_client = lms_client
    app.state.mcp_dispatcher = McpDispatcher(lms_client)
    logger.info(
        (
            "startup complete public_url=%s tenants=%d virtual_clients_path=%s "
            "audit_log_enabled=%s allow_local_dev=%s"
        ),
        settings.server_public_url,
        len(registry.list_configured_tenants()),
        settings.virtual_clients_path,
        settings.oauth_audit_log_enabled,
        settings.allow_local_dev,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    token_proxy: TokenProxy | None = getattr(app.state, "token_proxy", None)
    if token_proxy is not None:
        await token_proxy.close()
    lms_client: LmsApiClient | None = getattr(app.state, "lms_client", None)
    if lms_client is not None:
        await lms_client.close()
    audit_logger: OAuthAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


def _public_url() -> str:
    return app.state.settings.server_public_url


@app.get("/health")
async def health() -> dict[str, str]:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }


@app.get("/.well-known/oauth-authorization-server")
async def root_authorization_server_metadata() -> dict[str, Any]:
    return authorization_server_metadata(_public_url())


@app.get("/.well-known/oauth-authorization-server/mcp/{tenant}")
@app.get("/mcp/{tenant}/.well-known/oauth-authorization-server")
async def tenant_authorization_server_metadata(tenant: str) -> dict[str, Any]:
    return authorization_server_metadata(_public_url(), tenant)


@app.get("/.well-known/oauth-protected-resource")
async def root_protected_resource_metadata() -> dict[str, Any]:
    return protected_resource_metadata(_public_url())


@app.get("/.well-known/oauth-protected-resource/mcp/{tenant}")
@app.get("/mcp/{tenant}/.well-known/oauth-protected-resource")
async def tenant_protected_resource_metadata(tenant: str) -> dict[str, Any]:
    return protected_resource_metadata(_public_url(), tenant)


async def _authorize(params: dict[str, str]) -> Response:
    proxy: AuthorizeProxy = app.state.authorize_proxy
    return await proxy.authorize(params)


@app.get("/oauth2/authorize")
async def authorize(request: Request) -> Response:
    return await _authorize(dict(request.query_params))


@app.get("/mcp/{tenant}/oauth2/authorize")
async def tenant_authorize(tenant: str, request: Request) -> Response:
    params = dict(request.query_params)
    params["tenant"] = tenant
    return await _authorize(params)


async def _token(request: Request, query: dict[str, str]) -> Response:
    proxy: TokenProxy = app.state.token_proxy
    form = await request.form()
    return await proxy.exchange(form, query=query, headers=request.headers)


@app.post("/oauth2/token")
async def token(request: Request) -> Response:
    return await _token(request, dict(request.query_params))


@app.post("/mcp/{tenant}/oauth2/token")
async def tenant_token(tenant: str, request: Request) -> Response:
    query = dict(request.query_params)
    query["tenant"] = tenant
    return await _token(request, query)


async def _register(request: Request, tenant: str | None) -> Response:
    registrar: ClientRegistrar = app.state.client_registrar
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise invalid_client_metadata("Request body must be valid JSON.") from exc
    return await registrar.register(payload, tenant)


@app.post("/oauth2/register")
async def register(request: Request) -> Response:
    return await _register(request, request.query_params.get("tenant") or None)


@app.post("/mcp/{tenant}/oauth2/register")
async def tenant_register(tenant: str, request: Request) -> Response:
    return await _register(request, tenant)


@app.head("/mcp/{tenant}")
async def mcp_head(tenant: str) -> Response:
    return Response(status_code=status.HTTP_200_OK)


@app.get("/mcp/{tenant}")
async def mcp_info(tenant: str) -> dict[str, Any]:
    return endpoint_description(_public_url(), tenant)


@app.post("/mcp/{tenant}")
async def mcp_endpoint(tenant: str, request: Request) -> Response:
    bearer_auth: BearerPassthrough = app.state.bearer_auth
    auth_error = bearer_auth.authenticate_request(request, tenant)
    if auth_error is not None:
        return auth_error

    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonrpc_error(
                None, INVALID_REQUEST, "Invalid Request: body is not JSON"
            ),
        )
    if not isinstance(payload, dict) or not payload.get("method"):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonrpc_error(
                None, INVALID_REQUEST, "Invalid Request: missing method field"
            ),
        )

    dispatcher: McpDispatcher = app.state.mcp_dispatcher
    try:
        result = await dispatcher.handle(payload, request.state.bearer_token, tenant)
    except Exception:
        logger.exception("mcp_request_failed tenant=%s", tenant)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=jsonrpc_error(None, INTERNAL_ERROR, "Internal server error"),
        )
    return JSONResponse(content=result)


@app.exception_handler(OAuthProxyError)
async def oauth_proxy_error_handler(_: Request, exc: OAuthProxyError) -> JSONResponse:
    return exc.to_response()


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code != status.HTTP_404_NOT_FOUND:
        return JSONResponse(
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
            content={"error": str(exc.detail)},
        )
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={
            "error": "Not Found",
            "message": "Endpoint not found",
            "available_endpoints": {
                "health": "GET /health",
                "oauth_discovery": "GET /mcp/<tenant>/.well-known/oauth-authorization-server",
                "resource_discovery": "GET /mcp/<tenant>/.well-known/oauth-protected-resource",
                "authorize": "GET /mcp/<tenant>/oauth2/authorize",
                "token": "POST /mcp/<tenant>/oauth2/token",
                "register": "POST /mcp/<tenant>/oauth2/register",
                "mcp": "POST /mcp/<tenant>",
            },
        },
    )


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "mcp_tenant_gateway.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )
