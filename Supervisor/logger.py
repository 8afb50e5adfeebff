"""Structured JSON logging for the Supervisor."""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any


class _JsonFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "supervisor_id": getattr(record, "supervisor_id", "unknown"),
            "bot_id": getattr(record, "bot_id", None),
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            entry["error"] = str(record.exc_info[1])
        return json.dumps(entry, ensure_ascii=False)


def get_logger(supervisor_id: str, bot_id: str | None = None) -> logging.Logger:
    """Return a logger configured for structured JSON output.

    Args:
        supervisor_id: The supervisor identifier, or a dotted child name
            such as ``ops-supervisor.remediation``.
        bot_id: Optional worker the caller is currently handling.
    """
    name = f"supervisor.{supervisor_id}"
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    root_id = supervisor_id.split(".", 1)[0]

    class _ContextFilter(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            record.supervisor_id = root_id
            record.bot_id = bot_id
            return True

    for f in list(logger.filters):
        if type(f).__name__ == "_ContextFilter":
            logger.removeFilter(f)
    logger.addFilter(_ContextFilter())

    return logger
