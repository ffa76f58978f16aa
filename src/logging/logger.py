# src/logging/logger.py - v1
"""Logger setup for the ``fleetdeploy`` namespace.

Console output goes to stdout, optionally mirrored to a rotating file.
Records carry the orchestration/domain/phase context of the task that
emitted them.

Rollback failures go through the dedicated ``fleetdeploy.alerts`` logger,
which keeps its own stderr handler and ignores the configured level.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from fleetdeploy.logging.context import get_context

ROOT_LOGGER_NAME = "fleetdeploy"
ALERT_LOGGER_NAME = "fleetdeploy.alerts"


def _timestamp(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, context."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": _timestamp(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = get_context().as_dict()
        if context:
            entry["context"] = context
        data = getattr(record, "data", None)
        if data:
            entry["data"] = data
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """``<time> [LEVEL] logger [domain] (phase) - message``"""

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_context()
        line = f"{_timestamp(record):%Y-%m-%d %H:%M:%S} [{record.levelname:8s}] {record.name}"
        if ctx.domain_id:
            line += f" [{ctx.domain_id}]"
        if ctx.phase:
            line += f" ({ctx.phase})"
        line += f" - {record.getMessage()}"
        if record.exc_info and record.exc_info[1] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


_FORMATTERS: dict[str, type[logging.Formatter]] = {
    "json": JsonFormatter,
    "text": TextFormatter,
}


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``fleetdeploy`` namespace."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    log_file: str | None = None,
    rotation: str = "10MB",
    retention: int = 30,
) -> None:
    """Configure the fleetdeploy logger tree. Safe to call repeatedly.

    Args:
        level: DEBUG, INFO, WARNING or ERROR.
        log_format: "json" or "text".
        log_file: Mirror output to this file (rotated by size).
        rotation: Max file size before rotation (e.g. "10MB").
        retention: Number of rotated files to keep.
    """
    formatter = _FORMATTERS.get(log_format, TextFormatter)()

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    _reset_handlers(root_logger)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root_logger.addHandler(console)

    if log_file:
        from fleetdeploy.logging.handlers import create_rotating_handler

        file_handler = create_rotating_handler(log_file, rotation=rotation, retention=retention)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    alert_logger = logging.getLogger(ALERT_LOGGER_NAME)
    alert_logger.setLevel(logging.WARNING)
    alert_logger.propagate = False
    _reset_handlers(alert_logger)
    alert_handler = logging.StreamHandler(sys.stderr)
    alert_handler.setFormatter(formatter)
    alert_logger.addHandler(alert_handler)


def _reset_handlers(target: logging.Logger) -> None:
    for handler in list(target.handlers):
        target.removeHandler(handler)
        handler.close()


def surface_alert(message: str, **data: Any) -> None:
    """Emit an operator alert regardless of the configured log level."""
    logging.getLogger(ALERT_LOGGER_NAME).critical(message, extra={"data": data or None})
