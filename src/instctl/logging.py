"""
Structured logging for instctl.

Log records are written to stderr so that user-facing messages printed by the
CLI on stdout are never interleaved with diagnostics.

Features:
- JSON-formatted log output for machine-readable logs
- Plain-text fallback for interactive use
- Extra fields passed via ``extra=`` become top-level JSON keys
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from instctl.config import LoggingConfig

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Attributes every LogRecord carries; anything else came in through ``extra=``
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", logging.NOTSET, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """
    A logging formatter that outputs log records as JSON objects.

    Each log record is formatted as a JSON object with consistent fields:
    - timestamp: ISO 8601 formatted timestamp in UTC
    - level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - logger: Logger name
    - message: Log message
    - Additional fields from the record's extra dict
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            JSON-formatted string representation of the log record.
        """
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in set(record.__dict__.keys()) - _RESERVED_ATTRS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "WARNING",
    json_format: bool = False,
) -> logging.Logger:
    """
    Configure the ``instctl`` logger.

    Args:
        config: Optional LoggingConfig. If provided, overrides other parameters.
        level: Log level if no config is provided.
        json_format: Whether to emit JSON lines instead of plain text.

    Returns:
        The root logger of the instctl package.

    Example:
        >>> from instctl.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Upgrade started", extra={"instance": "main"})
    """
    if config is not None:
        log_level = config.level.upper()
        json_format = config.json_format
    else:
        log_level = level.upper()

    logger = logging.getLogger("instctl")
    logger.setLevel(getattr(logging, log_level, logging.WARNING))

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(getattr(logging, log_level, logging.WARNING))
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
    logger.addHandler(handler)

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: The name for the logger, typically __name__ of the calling module.
            The "instctl." prefix is added automatically if not present.

    Returns:
        A logger that is a child of the ``instctl`` logger.
    """
    if not name.startswith("instctl"):
        name = f"instctl.{name}"

    return logging.getLogger(name)
