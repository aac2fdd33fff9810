"""Structured JSON log formatter and logging configuration.

:class:`JsonFormatter` emits one JSON object per log record on a single
line (NDJSON).  Besides the usual ``timestamp``/``level``/``logger``/
``message`` fields, every line carries the ``service`` and ``version``
and, when the call site passes them through ``extra=``, the RPC
correlation fields::

    logger.info("call done", extra={"device": d.id, "method": "Switch.Toggle"})

produces ``{..., "device": "shelly1minig3-abc123", "method": "Switch.Toggle"}``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from myhome._settings import LoggingSettings

_MB = 1024 * 1024

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

CONTEXT_FIELDS: tuple[str, ...] = ("device", "method", "channel", "request_id")
"""``LogRecord`` attributes copied into the JSON output when present."""


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects.

    Args:
        service: Application name included in every log line.
        version: Application version string.  Omitted when empty.
    """

    def __init__(
        self,
        *,
        service: str = "",
        version: str = "",
    ) -> None:
        super().__init__()
        self._service = service
        self._version = version

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
        }

        if self._version:
            entry["version"] = self._version

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(entry, default=str)


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Configure the root logger from settings.

    Existing root handlers are removed.  A stderr handler is always
    installed; a :class:`~logging.handlers.RotatingFileHandler` is
    added when ``settings.file`` is set.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    if settings.format == "json":
        formatter: logging.Formatter = JsonFormatter(service=service, version=version)
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.file is not None:
        file_handler = RotatingFileHandler(
            settings.file,
            maxBytes=settings.max_file_size_mb * _MB,
            backupCount=settings.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(settings.level)

    # httpx logs every request at INFO; keep it at the daemon's level or quieter
    logging.getLogger("httpx").setLevel(max(root.level, logging.WARNING))
