"""Logging setup for rolegate.

Two formats are supported, selected by ``settings.log_format``:
``json`` (one object per line, for log shippers) and ``text``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from rolegate.config import settings

SERVICE_NAME = "rolegate"

# Attributes every LogRecord carries; anything else came in via ``extra=``
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Format records as single-line JSON objects."""

    def __init__(self, role: str | None = None):
        super().__init__()
        self.role = role

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": SERVICE_NAME,
            "message": record.getMessage(),
        }
        role = getattr(record, "role", None) or self.role
        if role:
            payload["role"] = role
        extra = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and key != "role"
        }
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable single-line format."""

    def __init__(self, role: str | None = None):
        super().__init__(datefmt="%Y-%m-%d %H:%M:%S")
        self.role = role

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, self.datefmt)
        role = getattr(record, "role", None) or self.role
        prefix = f"[{role}] " if role else ""
        line = f"{timestamp} {record.levelname:<7} {record.name}: {prefix}{record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(role: str | None = None) -> None:
    """Configure the root logger from settings. Safe to call repeatedly."""
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())

    for handler in list(root.handlers):
        if getattr(handler, "_rolegate", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler._rolegate = True
    if settings.log_format.lower() == "json":
        handler.setFormatter(JSONFormatter(role=role))
    else:
        handler.setFormatter(TextFormatter(role=role))
    root.addHandler(handler)

    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
