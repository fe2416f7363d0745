"""Structured logging configuration.

Uses standard library logging with a JSON formatter. Context such as
``execution_id``, ``node_id`` or ``transaction_id`` is passed through
``extra=`` and ends up under the ``extra`` key of each JSON line.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

# Attributes every LogRecord carries; anything else on a record came from ``extra=``.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
}

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_QUIET_LOGGERS = ("openai", "httpx", "httpcore", "urllib3")


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.levelno >= logging.WARNING:
            payload["source"] = f"{record.module}:{record.lineno}"

        context = _context(record)
        if context:
            payload["extra"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str, fmt: str = "json") -> None:
    """Install a single stdout handler on the root logger.

    ``fmt`` is ``"json"`` (one object per line) or ``"text"``.
    """
    formatter: logging.Formatter
    if fmt == "text":
        formatter = logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    else:
        formatter = JsonFormatter()

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    # Re-configuring replaces handlers rather than stacking them.
    root.handlers[:] = [handler]
    root.setLevel(level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))
