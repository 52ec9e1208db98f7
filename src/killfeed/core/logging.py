"""
Killfeed Structured Logging

Provides consistent logging across the killfeed package with:
- Environment-based configuration via KILLFEED_LOG_LEVEL
- Backward compatibility with KILLFEED_DEBUG
- JSON-formatted output option for machine parsing
- Module-specific loggers

Usage:
    from killfeed.core.logging import get_logger

    logger = get_logger(__name__)
    logger.debug("Processing killmail %d", killmail_id)
    logger.info("Backfill complete", extra={"character_id": 123})
    logger.warning("Breaker opened")
    logger.error("Write failed", exc_info=True)

Environment Variables:
    KILLFEED_LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR)
    KILLFEED_DEBUG: Legacy - if set, enables DEBUG level
    KILLFEED_LOG_JSON: If set, output JSON-formatted logs
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Optional

from .config import get_settings

# Attributes present on every LogRecord; anything else came in via extra=
_STANDARD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "message",
    )
)


def _get_log_level() -> int:
    """
    Determine log level from centralized config.

    Priority:
    1. KILLFEED_LOG_LEVEL (explicit level name)
    2. KILLFEED_DEBUG (legacy, enables DEBUG)
    3. Default: WARNING
    """
    return get_settings().log_level_int


def _is_json_output() -> bool:
    """Check if JSON output is requested."""
    return get_settings().log_json


class KillfeedFormatter(logging.Formatter):
    """
    Custom formatter for killfeed logs.

    Supports both human-readable and JSON output.
    """

    def __init__(self, json_output: bool = False) -> None:
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds")

        if self.json_output:
            return self._format_json(record, timestamp)
        return self._format_text(record, timestamp)

    def _format_text(self, record: logging.LogRecord, timestamp: str) -> str:
        """Format as human-readable text."""
        module = record.name.split(".")[-1] if "." in record.name else record.name

        msg = f"{timestamp} [KILLFEED {record.levelname}] [{module}] {record.getMessage()}"

        if record.exc_info:
            exc_text = "".join(traceback.format_exception(*record.exc_info))
            msg += f"\n{exc_text}"

        return msg

    def _format_json(self, record: logging.LogRecord, timestamp: str) -> str:
        """Format as JSON for machine parsing."""
        log_data: dict[str, Any] = {
            "timestamp": timestamp,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(log_data, default=str)


# Module-level logger cache
_loggers: dict[str, logging.Logger] = {}
_handler: Optional[logging.Handler] = None
_level_override: Optional[int] = None


def _get_handler() -> logging.Handler:
    """Get or create the shared stderr handler."""
    global _handler
    if _handler is None:
        _handler = logging.StreamHandler(sys.stderr)
        _handler.setFormatter(KillfeedFormatter(json_output=_is_json_output()))
    return _handler


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for the given module name.

    Args:
        name: Module name (typically __name__)

    Returns:
        Configured logger instance
    """
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    logger.setLevel(_level_override if _level_override is not None else _get_log_level())
    logger.addHandler(_get_handler())
    logger.propagate = False

    _loggers[name] = logger
    return logger


def set_log_level(level: int) -> None:
    """
    Dynamically set log level for all killfeed loggers.

    Loggers created afterwards start at the same level.

    Args:
        level: logging.DEBUG, logging.INFO, etc.
    """
    global _level_override
    _level_override = level
    for logger in _loggers.values():
        logger.setLevel(level)


def reset_logging() -> None:
    """
    Reset all killfeed loggers to default state.

    Restores propagate=True and level=NOTSET on every killfeed.* logger in
    Python's logging manager (including ones created with plain
    logging.getLogger), detaches the shared handler and drops the handler
    cache. Loggers stay cached so propagation survives the reset.

    Used by test fixtures so caplog can observe records.
    """
    global _handler, _level_override

    manager = logging.Logger.manager
    for name in list(manager.loggerDict.keys()):
        if name == "killfeed" or name.startswith("killfeed."):
            logger_or_placeholder = manager.loggerDict[name]
            # loggerDict can contain Logger objects or PlaceHolder objects
            if isinstance(logger_or_placeholder, logging.Logger):
                logger_or_placeholder.propagate = True
                logger_or_placeholder.setLevel(logging.NOTSET)

    for logger in _loggers.values():
        if _handler is not None:
            logger.removeHandler(_handler)

    _handler = None
    _level_override = None
