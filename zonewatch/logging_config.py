"""
Logging configuration.

Provides:
    - JSON-formatted logs for production (machine-parseable)
    - Plain text logs for development

Usage:
    from zonewatch.config import ZoneWatchConfig
    from zonewatch.logging_config import setup_logging

    config = ZoneWatchConfig.from_env()
    setup_logging(config.logging)
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from .config import LoggingConfig


# Extra fields copied into JSON records when a caller passes them via `extra=`
_EXTRA_FIELDS = (
    "subscription_id",
    "attempt",
    "error_code",
    "incident_count",
    "zone_count",
    "duration_ms",
)


class JSONFormatter(logging.Formatter):
    """Machine-parseable JSON log output for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key in _EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry, default=str)


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Configure the root logger from a LoggingConfig."""
    config = config or LoggingConfig()

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    # Remove existing handlers
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if config.json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(config.format))
    root.addHandler(handler)

    # Quieten noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
