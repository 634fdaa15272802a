from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from trend_trader.common import sanitize_text, sanitize_value

LOGGER_NAME = "trend_trader"

# Attributes every LogRecord carries; anything else arrived through ``extra``.
RESERVED_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, shaped for Cloud Logging (``severity``)."""

    def __init__(self, *, static_fields: dict[str, Any] | None = None) -> None:
        super().__init__()
        self._static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "severity": record.levelname,
            "logger": record.name,
            "message": sanitize_text(record.getMessage()),
            **self._static_fields,
        }
        payload.update(
            (key, sanitize_value(value))
            for key, value in vars(record).items()
            if key not in RESERVED_RECORD_ATTRS and not key.startswith("_")
        )

        if record.exc_info:
            payload["exception"] = sanitize_text(self.formatException(record.exc_info))

        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logger.setLevel(logging.getLevelNamesMapping().get(level_name, logging.INFO))

    static_fields = {"bot_id": os.getenv("BOT_ID", "sol-trend-trader")}
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter(static_fields=static_fields))

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False

    return logger
