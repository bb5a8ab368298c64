from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

logger = logging.getLogger("uvicorn.error")

DEFAULT_UPSTREAM_DOMAIN = "docebosaas.com"

_TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?$")
_CLIENT_ID_KEY_PATTERN = re.compile(r"^TENANT_(.+)_CLIENT_ID$")
_NON_ALNUM = re.compile(r"[^A-Z0-9]")


@dataclass(frozen=True, slots=True)
class TenantCredentials:
    client_id: str
    client_secret: str
    redirect_uri: str | None = None


@dataclass(frozen=True, slots=True)
class TenantConfig:
    tenant_id: str
    base_url: str
    credentials: TenantCredentials


@dataclass(frozen=True, slots=True)
class OAuthEndpoints:
    authorization_url: str
    token_url: str


def normalize_tenant_key(tenant_id: str) -> str:
    # "riccardo-lr-test" -> "RICCARDO_LR_TEST"
    return _NON_ALNUM.sub("_", tenant_id.upper())


def denormalize_tenant_key(key: str) -> str:
    return key.lower().replace("_", "-")


def is_valid_tenant_id(tenant_id: str) -> bool:
    return bool(_TENANT_ID_PATTERN.match(tenant_id))


class TenantRegistry:
    """Resolves tenant ids to upstream base URLs and OAuth2 credentials.

    Credentials are read from a mapping shaped like the process environment:

        TENANT_<KEY>_CLIENT_ID
        TENANT_<KEY>_CLIENT_SECRET
        TENANT_<KEY>_REDIRECT_URI   (optional)

    where ``<KEY>`` is the upper-cased tenant id with every non-alphanumeric
    character replaced by ``_``. A tenant is configured only when both the
    client id and the client secret are present; otherwise every lookup
    returns ``None``.
    """

    def __init__(
        self,
        environment: Mapping[str, str],
        upstream_domain: str = DEFAULT_UPSTREAM_DOMAIN,
    ) -> None:
        self._environment: Mapping[str, str] = MappingProxyType(dict(environment))
        self.upstream_domain = upstream_domain.strip().strip(".")

    def credentials_for(self, tenant_id: str) -> TenantCredentials | None:
        if not tenant_id or not is_valid_tenant_id(tenant_id):
            logger.warning("tenant_invalid_id tenant=%r", tenant_id)
            return None

        key = normalize_tenant_key(tenant_id)
        client_id = self._environment.get(f"TENANT_{key}_CLIENT_ID") or None
        client_secret = self._environment.get(f"TENANT_{key}_CLIENT_SECRET") or None
        redirect_uri = self._environment.get(f"TENANT_{key}_REDIRECT_URI") or None

        if not client_id or not client_secret:
            logger.warning("tenant_not_configured tenant=%s", tenant_id)
            return None

        return TenantCredentials(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
        )

    def config_for(self, tenant_id: str) -> TenantConfig | None:
        credentials = self.credentials_for(tenant_id)
        if credentials is None:
            return None
        return TenantConfig(
            tenant_id=tenant_id,
            base_url=self._base_url(tenant_id),
            credentials=credentials,
        )

    def oauth_endpoints_for(self, tenant_id: str) -> OAuthEndpoints | None:
        config = self.config_for(tenant_id)
        if config is None:
            return None
        return OAuthEndpoints(
            authorization_url=f"{config.base_url}/oauth2/authorize",
            token_url=f"{config.base_url}/oauth2/token",
        )

    def api_base_url_for(self, tenant_id: str) -> str | None:
        config = self.config_for(tenant_id)
        if config is None:
            return None
        return config.base_url

    def list_configured_tenants(self) -> list[str]:
        tenants: set[str] = set()
        for key in self._environment:
            match = _CLIENT_ID_KEY_PATTERN.match(key)
            if match:
                tenants.add(denormalize_tenant_key(match.group(1)))
        return sorted(tenants)

    def _base_url(self, tenant_id: str) -> str:
        return f"https://{tenant_id}.{self.upstream_domain}"
