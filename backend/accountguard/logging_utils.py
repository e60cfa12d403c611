from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import sys
from typing import Any

from .config import settings

_STRUCTURED_KEYS = (
    "event",
    "scope",
    "identifier",
    "account_id",
    "token_id",
    "ip",
    "reason",
    "external_id",
    "period",
    "path",
    "status",
    "db_backend",
)
# Values under these keys may be email addresses.
_MASKED_KEYS = frozenset({"identifier"})


def mask_email(value: Any) -> Any:
    """``alice@example.com`` -> ``a***@example.com``; other values pass through."""
    if not isinstance(value, str) or "@" not in value:
        return value
    local, _, domain = value.rpartition("@")
    if not local:
        return f"***@{domain}"
    return f"{local[0]}***@{domain}"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in _STRUCTURED_KEYS:
            value = getattr(record, key, None)
            if value is None:
                continue
            payload[key] = mask_email(value) if key in _MASKED_KEYS else value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging() -> None:
    root = logging.getLogger()
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.setLevel(getattr(logging, settings.log_level, logging.INFO))
    root.addHandler(handler)
