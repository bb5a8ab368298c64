from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from mcp_tenant_gateway.tenants import TenantRegistry

logger = logging.getLogger("uvicorn.error")


class TenantNotConfiguredError(Exception):
    def __init__(self, tenant: str):
        super().__init__(f"Tenant '{tenant}' is not configured")
        self.tenant = tenant


class LmsApiError(Exception):
    def __init__(self, status_code: int, body: Any):
        super().__init__(f"LMS API request failed with status {status_code}")
        self.status_code = status_code
        self.body = body


class LmsApiClient:
    """Calls a tenant's REST API with the caller's own Bearer token."""

    def __init__(
        self,
        registry: TenantRegistry,
        *,
        timeout_seconds: float = 5.0,
        connect_timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._registry = registry
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

    async def get(
        self,
        tenant: str,
        bearer_token: str,
        path: str,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        base_url = self._registry.api_base_url_for(tenant)
        if base_url is None:
            raise TenantNotConfiguredError(tenant)
        if not path.startswith("/") or "://" in path:
            raise ValueError("path must be an absolute path such as /learn/v1/courses")

        url = f"{base_url}{path}"
        logger.info("lms_api_request tenant=%s path=%s", tenant, path)
        try:
            response = await self.client.get(
                url,
                params=dict(params) if params else None,
                headers={
                    "Authorization": f"Bearer {bearer_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.RequestError as exc:
            logger.warning(
                "lms_api_transport_error tenant=%s path=%s error_type=%s",
                tenant,
                path,
                exc.__class__.__name__,
            )
            raise

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        if not response.is_success:
            logger.warning(
                "lms_api_error tenant=%s path=%s status=%d",
                tenant,
                path,
                response.status_code,
            )
            raise LmsApiError(response.status_code, body)
        return body
