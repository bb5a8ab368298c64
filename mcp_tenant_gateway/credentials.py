from __future__ import annotations

import logging
from dataclasses import dataclass

from mcp_tenant_gateway.tenants import TenantRegistry
from mcp_tenant_gateway.virtual_clients import VirtualClient, VirtualClientStore

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class ResolvedCredentials:
    client_id: str
    client_secret: str
    tenant_id: str
    virtual_client: VirtualClient | None = None

    @property
    def is_virtual(self) -> bool:
        return self.virtual_client is not None


@dataclass(frozen=True, slots=True)
class NotConfigured:
    """Resolution failed because ``tenant_id`` has no credentials."""

    tenant_id: str


class CredentialResolver:
    """Maps a caller-supplied client id onto real upstream credentials.

    A client id that names a registered virtual client switches the effective
    tenant to the client's owning tenant. Any other client id is ignored and
    the requested tenant's own credentials are used.
    """

    def __init__(self, registry: TenantRegistry, store: VirtualClientStore):
        self._registry = registry
        self._store = store

    def resolve(
        self,
        supplied_client_id: str | None,
        tenant: str,
    ) -> ResolvedCredentials | NotConfigured:
        if supplied_client_id:
            virtual_client = self._store.lookup(supplied_client_id)
            if virtual_client is not None:
                owning_tenant = virtual_client.tenant_id
                if owning_tenant != tenant:
                    logger.info(
                        "virtual_client_tenant_override client_id=%s requested=%s owner=%s",
                        supplied_client_id,
                        tenant,
                        owning_tenant,
                    )
                config = self._registry.config_for(owning_tenant)
                if config is None:
                    logger.warning(
                        "virtual_client_orphaned client_id=%s tenant=%s",
                        supplied_client_id,
                        owning_tenant,
                    )
                    return NotConfigured(owning_tenant)
                return ResolvedCredentials(
                    client_id=config.credentials.client_id,
                    client_secret=config.credentials.client_secret,
                    tenant_id=owning_tenant,
                    virtual_client=virtual_client,
                )

        config = self._registry.config_for(tenant)
        if config is None:
            return NotConfigured(tenant)
        return ResolvedCredentials(
            client_id=config.credentials.client_id,
            client_secret=config.credentials.client_secret,
            tenant_id=tenant,
        )
