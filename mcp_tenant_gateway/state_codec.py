from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from typing import Any

_BASE64URL_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True, slots=True)
class OAuthState:
    tenant: str
    original: str | None = None
    redirect_uri: str | None = None


def encode_state(
    tenant: str,
    original: str | None = None,
    redirect_uri: str | None = None,
) -> str:
    payload: dict[str, str] = {"tenant": tenant}
    if original is not None:
        payload["original"] = original
    if redirect_uri is not None:
        payload["redirectUri"] = redirect_uri
    raw = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_state(token: Any) -> OAuthState | None:
    """Decode a value produced by :func:`encode_state`.

    The token-phase ``state`` is fully caller controlled, so every malformed
    input yields ``None`` instead of raising.
    """
    if not isinstance(token, str) or not _BASE64URL_PATTERN.match(token):
        return None
    if len(token) % 4 == 1:
        return None

    padding = "=" * ((4 - len(token) % 4) % 4)
    try:
        raw = base64.urlsafe_b64decode(token + padding)
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError, RecursionError):
        return None

    if not isinstance(payload, dict):
        return None

    tenant = payload.get("tenant")
    if not isinstance(tenant, str) or not tenant:
        return None

    original = payload.get("original")
    redirect_uri = payload.get("redirectUri")
    if original is not None and not isinstance(original, str):
        return None
    if redirect_uri is not None and not isinstance(redirect_uri, str):
        return None

    return OAuthState(tenant=tenant, original=original, redirect_uri=redirect_uri)
