"""Structured JSON logging configuration."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

# Record attributes copied into the JSON line when a caller passes them in ``extra``.
_EXTRA_FIELDS = (
    "record_id",
    "subject_id",
    "status",
    "attempts",
    "account_id",
    "retry_after_s",
    "run_id",
    "trigger",
    "processed",
    "succeeded",
    "failed",
    "duration_s",
)


class JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        log_entry.update(
            (key, getattr(record, key))
            for key in _EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        return json.dumps(log_entry, default=str)


def configure_logging(level: Optional[str] = None) -> None:
    """Send the ``provisioning`` logger tree to stderr as JSON.

    ``level`` defaults to $LOG_LEVEL, then INFO. Safe to call repeatedly.
    """
    level = level or os.environ.get("LOG_LEVEL", "INFO")
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger("provisioning")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(handler)
    root.propagate = False
