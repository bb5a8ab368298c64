"""Virtual OAuth2 clients for callers that cannot register upstream.

Proof-of-concept store, not meant for production:

- plaintext, append-only file
- no revocation
- no authentication on registration
- no coordination between writer processes

Secrets are never written to disk. Each secret is an HMAC of the client id
under a server-wide key, so validation recomputes it instead of looking it up.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock

logger = logging.getLogger("uvicorn.error")

FIELD_DELIMITER = "|"
REDIRECT_URI_DELIMITER = ","
STORE_HEADER = (
    "# Virtual Client Mappings (POC - NOT SECURE)\n"
    "# Format: virtual_client_id|tenant_id|created_at|client_name|redirect_uris\n"
    "# DO NOT use in production - this is for testing only\n"
)


@dataclass(frozen=True, slots=True)
class VirtualClient:
    virtual_client_id: str
    tenant_id: str
    created_at: str
    client_name: str | None = None
    redirect_uris: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class VirtualClientCredentials:
    client_id: str
    client_secret: str
    issued_at: datetime


def derive_client_secret(server_secret: str, client_id: str) -> str:
    return hmac.new(
        server_secret.encode("utf-8"),
        client_id.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def serialize_client(client: VirtualClient) -> str:
    _ensure_storable(client)
    redirect_uris = REDIRECT_URI_DELIMITER.join(client.redirect_uris or ())
    return FIELD_DELIMITER.join(
        (
            client.virtual_client_id,
            client.tenant_id,
            client.created_at,
            client.client_name or "",
            redirect_uris,
        )
    )


def deserialize_client(line: str) -> VirtualClient | None:
    parts = line.rstrip("\r\n").split(FIELD_DELIMITER)
    if len(parts) < 3:
        return None

    virtual_client_id, tenant_id, created_at = parts[0], parts[1], parts[2]
    client_name = parts[3] if len(parts) > 3 else ""
    redirect_uris = parts[4] if len(parts) > 4 else ""
    return VirtualClient(
        virtual_client_id=virtual_client_id,
        tenant_id=tenant_id,
        created_at=created_at,
        client_name=client_name or None,
        redirect_uris=(
            tuple(redirect_uris.split(REDIRECT_URI_DELIMITER)) if redirect_uris else None
        ),
    )


def _ensure_storable(client: VirtualClient) -> None:
    fields = [client.virtual_client_id, client.tenant_id, client.created_at]
    if client.client_name:
        fields.append(client.client_name)
    for value in fields:
        if FIELD_DELIMITER in value or "\n" in value or "\r" in value:
            raise ValueError(f"Virtual client field cannot be stored: {value!r}")
    for uri in client.redirect_uris or ():
        if (
            not uri
            or FIELD_DELIMITER in uri
            or REDIRECT_URI_DELIMITER in uri
            or "\n" in uri
            or "\r" in uri
        ):
            raise ValueError(f"Redirect URI cannot be stored: {uri!r}")


def _iso_timestamp(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class VirtualClientStore:
    def __init__(self, path: str | Path, server_secret: str):
        self.path = Path(path)
        self._server_secret = server_secret
        self._lock = Lock()

    def initialize(self) -> None:
        if self.path.exists():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self.path.open("x", encoding="utf-8") as handle:
                handle.write(STORE_HEADER)
        except FileExistsError:
            return
        logger.info("virtual_clients_store_initialized path=%s", self.path)

    def derive_secret(self, client_id: str) -> str:
        return derive_client_secret(self._server_secret, client_id)

    def register(
        self,
        tenant_id: str,
        client_name: str | None = None,
        redirect_uris: Sequence[str] | None = None,
    ) -> VirtualClientCredentials:
        issued_at = datetime.now(timezone.utc)
        client = VirtualClient(
            virtual_client_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            created_at=_iso_timestamp(issued_at),
            client_name=client_name or None,
            redirect_uris=tuple(redirect_uris) if redirect_uris else None,
        )
        line = serialize_client(client)

        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

        logger.info(
            "virtual_client_registered client_id=%s tenant=%s",
            client.virtual_client_id,
            tenant_id,
        )
        return VirtualClientCredentials(
            client_id=client.virtual_client_id,
            client_secret=self.derive_secret(client.virtual_client_id),
            issued_at=issued_at,
        )

    def lookup(self, client_id: str) -> VirtualClient | None:
        for client in self._iter_clients():
            if client.virtual_client_id == client_id:
                return client
        return None

    def validate(self, client_id: str, supplied_secret: str) -> bool:
        expected = self.derive_secret(client_id)
        return hmac.compare_digest(
            expected.encode("utf-8"), supplied_secret.encode("utf-8")
        )

    def list_all(self) -> list[VirtualClient]:
        return list(self._iter_clients())

    def _iter_clients(self) -> Iterator[VirtualClient]:
        # Whole-file scan on every call; fine for the handful of clients a POC sees.
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                if line.startswith("#") or not line.strip():
                    continue
                client = deserialize_client(line)
                if client is not None:
                    yield client
