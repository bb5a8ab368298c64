from __future__ import annotations

import json
import logging
import time
from logging.handlers import QueueListener
from pathlib import Path
from queue import SimpleQueue
from typing import Any

REDACTED = "[redacted]"
SENSITIVE_FIELDS = frozenset(
    {
        "access_token",
        "client_secret",
        "code",
        "code_verifier",
        "password",
        "refresh_token",
        "state",
    }
)


def sanitize_audit_event(event: dict[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in event.items():
        if key in SENSITIVE_FIELDS and value is not None:
            sanitized[key] = REDACTED
        elif isinstance(value, dict):
            sanitized[key] = sanitize_audit_event(value)
        else:
            sanitized[key] = value
    return sanitized


class OAuthAuditLogger:
    """Append-only JSONL trail of OAuth proxy decisions.

    Lines are handed to a ``QueueListener`` so request handlers never touch
    the file; the listener's thread owns the ``FileHandler``.
    """

    def __init__(self, path: str, enabled: bool = True) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._queue: SimpleQueue[logging.LogRecord] = SimpleQueue()
        self._listener: QueueListener | None = None
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(self.path, encoding="utf-8", delay=True)
            self._listener = QueueListener(self._queue, handler)
            self._listener.start()

    def log(self, event: str, **fields: Any) -> None:
        if self._listener is None:
            return
        record = {"ts": int(time.time()), "event": event, **sanitize_audit_event(fields)}
        line = json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
        self._queue.put_nowait(logging.makeLogRecord({"msg": line}))

    def close(self) -> None:
        listener, self._listener = self._listener, None
        if listener is None:
            return
        listener.stop()
        for handler in listener.handlers:
            handler.close()
