from __future__ import annotations

from typing import Any

SCOPES_SUPPORTED = ["api"]
GRANT_TYPES_SUPPORTED = ["authorization_code", "refresh_token", "password"]


def tenant_base_url(public_url: str, tenant: str | None) -> str:
    if tenant is None:
        return public_url
    return f"{public_url}/mcp/{tenant}"


def authorization_server_metadata(
    public_url: str, tenant: str | None = None
) -> dict[str, Any]:
    """RFC 8414 metadata; root metadata points at the tenant-agnostic endpoints."""
    base_url = tenant_base_url(public_url, tenant)
    return {
        "issuer": base_url,
        "authorization_endpoint": f"{base_url}/oauth2/authorize",
        "token_endpoint": f"{base_url}/oauth2/token",
        "registration_endpoint": f"{base_url}/oauth2/register",
        "scopes_supported": SCOPES_SUPPORTED,
        "response_types_supported": ["code"],
        "grant_types_supported": GRANT_TYPES_SUPPORTED,
        "code_challenge_methods_supported": ["S256"],
        "token_endpoint_auth_methods_supported": [
            "client_secret_post",
            "client_secret_basic",
        ],
    }


def protected_resource_metadata(
    public_url: str, tenant: str | None = None
) -> dict[str, Any]:
    base_url = tenant_base_url(public_url, tenant)
    return {
        "resource": base_url,
        "authorization_servers": [base_url],
        "scopes_supported": SCOPES_SUPPORTED,
        "bearer_methods_supported": ["header"],
        "resource_documentation": f"{public_url}/docs",
    }


def protected_resource_metadata_url(public_url: str, tenant: str | None) -> str:
    return f"{tenant_base_url(public_url, tenant)}/.well-known/oauth-protected-resource"


def endpoint_description(public_url: str, tenant: str) -> dict[str, Any]:
    base_url = tenant_base_url(public_url, tenant)
    return {
        "name": "MCP Tenant Gateway",
        "tenant": tenant,
        "endpoints": {
            "mcp": f"POST {base_url}",
            "oauth_authorization": f"GET {base_url}/oauth2/authorize",
            "oauth_token": f"POST {base_url}/oauth2/token",
            "oauth_registration": f"POST {base_url}/oauth2/register",
            "oauth_discovery": f"GET {base_url}/.well-known/oauth-authorization-server",
            "resource_metadata": f"GET {base_url}/.well-known/oauth-protected-resource",
        },
    }
