"""Logging configuration and utilities for model-kombat."""

import contextvars
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Type

from .exceptions import KombatError

_LOG_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("model_kombat_log_context", default={})


class StructuredFormatter(logging.Formatter):
    """Formatter that appends structured context to log records."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with run context and exception context."""
        fields: Dict[str, Any] = dict(getattr(record, "kombat_context", {}) or {})

        if record.exc_info and isinstance(record.exc_info[1], KombatError):
            exc = record.exc_info[1]
            for key, value in exc.context.items():
                fields.setdefault(f"ctx_{key}", value)
                setattr(record, f"ctx_{key}", value)

        message = super().format(record)
        if not fields:
            return message
        rendered = " ".join(f"{key}={value}" for key, value in fields.items())
        first_line, sep, rest = message.partition("\n")
        return f"{first_line} [{rendered}]{sep}{rest}"


class ContextFilter(logging.Filter):
    """Attach the active LogContext fields to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        current = _LOG_CONTEXT.get()
        existing = getattr(record, "kombat_context", None) or {}
        record.kombat_context = {**current, **existing}
        return True


class StructuredLogger:
    """Logger wrapper accepting keyword context on every call."""

    def __init__(self, name: str):
        """Initialize with logger name."""
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, exc_info: bool, fields: Dict[str, Any]) -> None:
        self._logger.log(level, msg, exc_info=exc_info, extra={"kombat_context": fields})

    def debug(self, msg: str, **kwargs: Any) -> None:
        """Log debug message with context."""
        self._log(logging.DEBUG, msg, False, kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        """Log info message with context."""
        self._log(logging.INFO, msg, False, kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        """Log warning message with context."""
        self._log(logging.WARNING, msg, False, kwargs)

    def error(self, msg: str, exc_info: bool = False, **kwargs: Any) -> None:
        """Log error message with context."""
        self._log(logging.ERROR, msg, exc_info, kwargs)

    def critical(self, msg: str, exc_info: bool = False, **kwargs: Any) -> None:
        """Log critical message with context."""
        self._log(logging.CRITICAL, msg, exc_info, kwargs)

    def exception(self, msg: str, **kwargs: Any) -> None:
        """Log exception with context."""
        self._log(logging.ERROR, msg, True, kwargs)


def configure_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    format_string: Optional[str] = None,
    include_timestamp: bool = True,
    console_formatter: Optional[Type[StructuredFormatter]] = None,
) -> None:
    """Configure logging for model-kombat.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        format_string: Custom format string (uses default if None)
        include_timestamp: Whether to include timestamps in logs
        console_formatter: Formatter class for the console handler only
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(numeric_level)

    if format_string is None:
        if include_timestamp:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        else:
            format_string = "%(name)s - %(levelname)s - %(message)s"

    formatter = StructuredFormatter(format_string)
    context_filter = ContextFilter()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter((console_formatter or StructuredFormatter)(format_string))
    console_handler.setLevel(numeric_level)
    console_handler.addFilter(context_filter)
    root.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(numeric_level)
        file_handler.addFilter(context_filter)
        root.addHandler(file_handler)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Logger accepting keyword context
    """
    return StructuredLogger(name)


def current_log_context() -> Dict[str, Any]:
    """Return a copy of the fields bound by the innermost LogContext."""
    return dict(_LOG_CONTEXT.get())


class LogContext:
    """Context manager binding structured fields to every log line in scope.

    Bindings are stored in a ``contextvars.ContextVar`` so concurrent asyncio
    tasks each see their own run id, phase and model.
    """

    def __init__(self, **context: Any):
        """Initialize with context fields.

        Args:
            **context: Key-value pairs to add as context
        """
        self._context = {key: value for key, value in context.items() if value is not None}
        self._token: Optional[contextvars.Token[Dict[str, Any]]] = None

    def __enter__(self) -> "LogContext":
        self._token = _LOG_CONTEXT.set({**_LOG_CONTEXT.get(), **self._context})
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _LOG_CONTEXT.reset(self._token)
            self._token = None


__all__ = [
    "StructuredFormatter",
    "ContextFilter",
    "StructuredLogger",
    "configure_logging",
    "current_log_context",
    "get_logger",
    "LogContext",
]
