from __future__ import annotations

from fastapi import Request, status
from fastapi.responses import JSONResponse

from mcp_tenant_gateway.gateway.discovery import protected_resource_metadata_url


def extract_bearer_token(auth_header: str | None) -> str | None:
    if not auth_header:
        return None
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class BearerPassthrough:
    """Extracts the caller's Bearer token for forwarding to the upstream API.

    Tokens are not verified here; the tenant's API rejects bad ones.
    """

    def __init__(self, public_url: str):
        self.public_url = public_url

    def authenticate_request(self, request: Request, tenant: str) -> JSONResponse | None:
        auth_header = request.headers.get("authorization", "")
        if not auth_header:
            return self._unauthorized("Authorization header is required", tenant)

        token = extract_bearer_token(auth_header)
        if token is None:
            return self._unauthorized(
                "Invalid Authorization format. Expected: Bearer <token>", tenant
            )

        request.state.bearer_token = token
        return None

    def _unauthorized(self, message: str, tenant: str) -> JSONResponse:
        metadata_url = protected_resource_metadata_url(self.public_url, tenant)
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            headers={"WWW-Authenticate": f'Bearer resource_metadata="{metadata_url}"'},
            content={"error": "Unauthorized", "message": message},
        )
