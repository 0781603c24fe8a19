"""Structured JSON logging for stockdb.

Modules keep using ``logging.getLogger(__name__)`` and pass structured
fields through ``extra={...}``; this module only decides how records are
rendered. Credential-looking fields are redacted before they reach a handler.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

REDACTED = "****"

SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "password",
        "token",
        "secret",
        "webhook_secret",
        "authorization",
        "credentials",
        "auth_credentials",
    }
)

_STDLIB_KEYS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {
    "message",
    "taskName",
}


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: (REDACTED if str(key).lower() in SENSITIVE_KEYS else _redact(item))
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


class RedactingFilter(logging.Filter):
    """Blank out credential fields passed through ``extra``."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key in list(vars(record).keys()):
            if key in _STDLIB_KEYS:
                continue
            if key.lower() in SENSITIVE_KEYS:
                setattr(record, key, REDACTED)
            else:
                setattr(record, key, _redact(getattr(record, key)))
        return True


class _JSONEncoder(json.JSONEncoder):
    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        return str(obj)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _STDLIB_KEYS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, cls=_JSONEncoder)


_configured = False


def configure_logging(level: Optional[str] = None, *, json_output: Optional[bool] = None) -> None:
    """Install the stockdb handler on the root logger once per process."""
    global _configured
    if _configured:
        return

    level_name = (level or os.getenv("LOG_LEVEL", "info")).upper()
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "json").lower() == "json"

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RedactingFilter())
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))
    _configured = True
