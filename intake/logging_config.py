"""Logging setup driven by LoggingSettings.

Emits one JSON object per line by default; ``LOG_FORMAT=text`` switches to
a plain human-readable format for local development.
"""
from __future__ import annotations

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from typing import Any

from .config import settings

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_configured = False
_lock = threading.Lock()


class JSONFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Structured extra data passed via ``extra=``
        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = val

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def setup_logging(
    *,
    level: str | None = None,
    fmt: str | None = None,
    file: str | None = None,
    force: bool = False,
) -> None:
    """Configure the root logger once (idempotent unless ``force``).

    Args:
        level: Log level name (defaults to LOG_LEVEL)
        fmt: "json" or "text" (defaults to LOG_FORMAT)
        file: Optional log file path (defaults to LOG_FILE)
        force: Reconfigure even if already configured
    """
    global _configured
    with _lock:
        if _configured and not force:
            return
        _configured = True

    level_name = (level or settings.logging.level).upper()
    fmt = fmt or settings.logging.format
    file = file if file is not None else settings.logging.file

    formatter: logging.Formatter
    if fmt == "json":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if file:
        handlers.append(logging.FileHandler(file, encoding="utf-8"))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level_name)

    # httpx logs every request at INFO; registry calls are logged by the client
    logging.getLogger("httpx").setLevel(logging.WARNING)
