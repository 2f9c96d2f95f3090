"""
Logging setup for agent-orchestrator.

Modules log through ``logging.getLogger(__name__)``; this module only
formats and installs handlers on the package logger:
- JSONFormatter: one JSON object per line, including ``extra`` fields
- TextFormatter: compact colored text for terminals
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from .config.logging import LoggingConfig

# Attributes present on every LogRecord; anything else came in via ``extra``.
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True) -> None:
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        color = self.LEVEL_COLORS.get(record.levelname, "") if self.color else ""
        reset = self.RESET if color else ""
        line = f"{timestamp} {color}{record.levelname:8}{reset} {record.name}: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(config: LoggingConfig | None = None) -> logging.Logger:
    """
    Install a single stream handler on the package logger.

    Calling it again replaces the handler installed by the previous call
    instead of stacking a second one.
    """
    config = config or LoggingConfig()
    logger = logging.getLogger(config.logger_name)
    logger.setLevel(config.level)

    for handler in list(logger.handlers):
        if getattr(handler, "_orchestrator_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if config.format == "json" else TextFormatter())
    handler._orchestrator_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.propagate = False
    return logger


__all__ = ["JSONFormatter", "TextFormatter", "configure_logging"]
