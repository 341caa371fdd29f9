"""Centralized logging configuration for promptcascade.

Library modules only ever call ``logging.getLogger(__name__)``; the CLI (or an
embedding application) calls :func:`configure_logging` once at startup.

Usage:
    from promptcascade.core.logging_config import configure_logging

    configure_logging(level="DEBUG", format="json")

Environment Variables:
    PROMPTCASCADE_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    PROMPTCASCADE_LOG_FORMAT: Output format ("text" or "json")
    PROMPTCASCADE_LOG_FILE: Optional log file path
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Literal

TEXT_FORMAT = "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ROOT_LOGGER = "promptcascade"

# Third-party loggers that are chatty at DEBUG/INFO
QUIET_LOGGERS = ("aiohttp", "asyncio")

_STANDARD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

_configured = False


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Outputs one object per record:
    {
        "timestamp": "2025-12-28T14:30:00.123000",
        "level": "INFO",
        "logger": "promptcascade.core.orchestrator",
        "message": "cascade_node_completed: node_id=abc, level=1",
        "extra": {...}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}
        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


def configure_logging(
    level: str | None = None,
    format: Literal["text", "json"] | None = None,
    file_path: str | None = None,
    force: bool = False,
) -> None:
    """Configure the ``promptcascade`` logger tree.

    Subsequent calls are ignored unless ``force=True``. Explicit arguments win
    over the PROMPTCASCADE_LOG_* environment variables.

    Args:
        level: Log level. Defaults to PROMPTCASCADE_LOG_LEVEL or "INFO".
        format: Output format. Defaults to PROMPTCASCADE_LOG_FORMAT or "text".
        file_path: Optional log file. Defaults to PROMPTCASCADE_LOG_FILE.
        force: Reconfigure even if already configured.
    """
    global _configured
    if _configured and not force:
        return

    level = level or os.environ.get("PROMPTCASCADE_LOG_LEVEL", "INFO")
    format = format or os.environ.get("PROMPTCASCADE_LOG_FORMAT", "text")  # type: ignore[assignment]
    file_path = file_path or os.environ.get("PROMPTCASCADE_LOG_FILE")

    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    if format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(numeric_level)
    logger.handlers.clear()
    logger.propagate = False

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True


def set_level(level: str, logger_name: str | None = ROOT_LOGGER) -> None:
    """Set log level for a specific logger (the package logger by default)."""
    logging.getLogger(logger_name).setLevel(getattr(logging, level.upper()))
