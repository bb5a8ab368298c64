from __future__ import annotations

import os
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType

from dotenv import dotenv_values
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DCR_SERVER_SECRET = "default-secret-change-me"
TENANT_ENV_PREFIX = "TENANT_"


class Settings(BaseSettings):
    server_public_url: str = "http://localhost:8000"
    host: str = "0.0.0.0"
    port: int = 8000
    allowed_origins: str = "*"
    allow_local_dev: bool = False
    upstream_domain: str = "docebosaas.com"
    upstream_timeout_seconds: float = 5.0
    upstream_connect_timeout_seconds: float = 3.0
    dcr_server_secret: str = DEFAULT_DCR_SERVER_SECRET
    virtual_clients_path: str = "virtual-clients.txt"
    virtual_client_require_secret: bool = False
    password_grant_default_scope: str = "api"
    oauth_audit_log_enabled: bool = False
    oauth_audit_log_path: str = "logs/oauth_events.jsonl"
    credentials_env_file: str = ".env"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("server_public_url")
    @classmethod
    def _normalize_public_url(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        if not normalized.startswith(("https://", "http://")):
            raise ValueError("SERVER_PUBLIC_URL must be a valid HTTP(S) URL")
        return normalized

    @property
    def allowed_origins_list(self) -> list[str]:
        return _split_csv(self.allowed_origins) or ["*"]

    @property
    def uses_default_dcr_secret(self) -> bool:
        return self.dcr_server_secret == DEFAULT_DCR_SERVER_SECRET


def load_tenant_environment(
    env_file: str | Path | None = ".env",
    environ: Mapping[str, str] | None = None,
) -> Mapping[str, str]:
    """Collect ``TENANT_*`` keys from the env file overlaid by the process env.

    The result is read-only and is meant to be injected into the tenant
    registry once at startup.
    """
    merged: dict[str, str] = {}
    if env_file and Path(env_file).is_file():
        for key, value in dotenv_values(env_file).items():
            if value is not None and key.startswith(TENANT_ENV_PREFIX):
                merged[key] = value
    source = os.environ if environ is None else environ
    for key, value in source.items():
        if key.startswith(TENANT_ENV_PREFIX):
            merged[key] = value
    return MappingProxyType(merged)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
