from __future__ import annotations

from fastapi import status
from fastapi.responses import JSONResponse


class OAuthProxyError(Exception):
    """Client-facing OAuth2 failure rendered as ``{error, error_description}``."""

    def __init__(
        self,
        status_code: int,
        error: str,
        description: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(description)
        self.status_code = status_code
        self.error = error
        self.description = description
        self.headers = headers

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            headers=self.headers,
            content={"error": self.error, "error_description": self.description},
        )


def invalid_request(description: str) -> OAuthProxyError:
    return OAuthProxyError(
        status.HTTP_400_BAD_REQUEST, "invalid_request", description
    )


def tenant_not_configured(tenant: str) -> OAuthProxyError:
    return OAuthProxyError(
        status.HTTP_404_NOT_FOUND,
        "invalid_request",
        f"Tenant '{tenant}' is not configured",
    )


def server_error(description: str) -> OAuthProxyError:
    return OAuthProxyError(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "server_error", description
    )


def unsupported_grant_type(grant_type: str | None) -> OAuthProxyError:
    return OAuthProxyError(
        status.HTTP_400_BAD_REQUEST,
        "unsupported_grant_type",
        f"Grant type '{grant_type}' is not supported",
    )


def invalid_client(description: str) -> OAuthProxyError:
    return OAuthProxyError(
        status.HTTP_401_UNAUTHORIZED,
        "invalid_client",
        description,
        headers={"WWW-Authenticate": "Basic"},
    )


def invalid_client_metadata(description: str) -> OAuthProxyError:
    return OAuthProxyError(
        status.HTTP_400_BAD_REQUEST, "invalid_client_metadata", description
    )
