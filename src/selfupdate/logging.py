"""
Structured logging for the self-update orchestrator.

Every participant and the orchestrator log through a scoped logger: each
record carries a ``scope`` field (e.g. "git", "docker", "orchestrator").

Features:
- JSON-formatted log output for machine-readable logs
- Scope tagging via ScopedLogger, with a ``success`` level helper
- Optional per-scope log files (``<log_dir>/<scope>.log``)
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from collections.abc import MutableMapping
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, TextIO

if TYPE_CHECKING:
    from selfupdate.config import LoggingConfig

ROOT_LOGGER_NAME = "selfupdate"

# Default log format for fallback
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Scope used for records that were not logged through a ScopedLogger
DEFAULT_SCOPE = "app"

_RESERVED_ATTRS = {
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


class JSONFormatter(logging.Formatter):
    """
    A logging formatter that outputs log records as JSON objects.

    Each log record is formatted as a JSON object with consistent fields:
    - timestamp: ISO 8601 formatted timestamp in UTC
    - level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - logger: Logger name
    - message: Log message
    - Additional fields from the record's extra dict (scope, outcome, ...)
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
            "timestamp": datetime.now(UTC).isoformat(),
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


class ScopeFileHandler(logging.Handler):
    """
    Handler that writes each record to a file named after its scope.

    Records logged through ``get_scoped_logger("git")`` end up in
    ``<log_dir>/git.log``; records without a scope go to ``app.log``.
    File handlers are created lazily, one per scope.
    """

    def __init__(self, log_dir: Path | str, level: int = logging.NOTSET) -> None:
        """
        Initialize the handler.

        Args:
            log_dir: Directory receiving the per-scope log files.
            level: Minimum level handled.
        """
        super().__init__(level)
        self.log_dir = Path(log_dir)
        self._handlers: dict[str, logging.FileHandler] = {}
        self._handlers_lock = threading.Lock()

    def _handler_for(self, scope: str) -> logging.FileHandler:
        with self._handlers_lock:
            handler = self._handlers.get(scope)
            if handler is None:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                handler = logging.FileHandler(
                    self.log_dir / f"{scope}.log", encoding="utf-8"
                )
                handler.setFormatter(self.formatter or JSONFormatter())
                self._handlers[scope] = handler
            return handler

    def emit(self, record: logging.LogRecord) -> None:
        """Write the record to the file of its scope."""
        scope = getattr(record, "scope", None) or DEFAULT_SCOPE
        try:
            self._handler_for(str(scope)).emit(record)
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        """Close every per-scope file."""
        with self._handlers_lock:
            for handler in self._handlers.values():
                handler.close()
            self._handlers.clear()
        super().close()


class ScopedLogger(logging.LoggerAdapter):
    """
    Logger adapter that tags every record with a scope name.

    Provides the ``info``/``warning``/``error`` methods of a regular logger
    plus ``success`` for completed steps (logged at INFO with
    ``outcome="success"``).

    Example:
        >>> log = get_scoped_logger("git")
        >>> log.info("Fetching remote")
        >>> log.success("Updated to commit abc123")
    """

    def __init__(self, logger: logging.Logger, scope: str) -> None:
        super().__init__(logger, {"scope": scope})
        self.scope = scope

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        """Merge the scope into any ``extra`` passed by the caller."""
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def success(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        """Log a completed step at INFO level with ``outcome="success"``."""
        extra = dict(kwargs.pop("extra", None) or {})
        extra["outcome"] = "success"
        self.info(msg, *args, extra=extra, **kwargs)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    log_to_stdout: bool = True,
    log_dir: Path | str | None = None,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Configure the logging system for the orchestrator.

    Args:
        config: Optional LoggingConfig object with logging settings.
            If provided, overrides other parameters.
        level: Default log level if no config is provided.
        json_format: Whether to use JSON formatting (default: True).
        log_to_stdout: Whether to log to stdout (default: True).
        log_dir: Optional directory for per-scope log files.
        stream: Stream for console output (default: sys.stdout).

    Returns:
        The root logger configured for the selfupdate package.

    Example:
        >>> from selfupdate.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG", log_dir="logs")
    """
    if config is not None:
        log_level = config.level.upper()
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
        log_dir = config.log_dir
    else:
        log_level = level.upper()

    numeric_level = getattr(logging, log_level, logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(numeric_level)

    # Remove existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_to_stdout:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setLevel(numeric_level)
        if json_format:
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        logger.addHandler(handler)

    if log_dir is not None:
        file_handler = ScopeFileHandler(log_dir, level=numeric_level)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    # Prevent propagation to root logger to avoid duplicate logs
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: The name for the logger, typically __name__ of the calling module.
            The "selfupdate." prefix is added automatically if not present.

    Returns:
        A configured logger instance.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)


def get_scoped_logger(scope: str) -> ScopedLogger:
    """
    Get a logger that tags every record with ``scope``.

    Args:
        scope: Scope name, usually a participant name or "orchestrator".

    Returns:
        A ScopedLogger wrapping ``selfupdate.<scope>``.
    """
    return ScopedLogger(get_logger(scope), scope)
