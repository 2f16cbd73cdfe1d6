"""
Logging configuration for the family call coordinator.
"""

import os
import sys
import logging
import json
from datetime import datetime
from typing import Any, Dict, Optional
from logging.handlers import RotatingFileHandler
from contextvars import ContextVar

# Context variable carrying the active call id across async tasks
call_context: ContextVar[str] = ContextVar('call_id', default='N/A')

_RESERVED_ATTRS = (
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message"
)


class CallFilter(logging.Filter):
    """Add call_id to all log records from context."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Inject call_id into log record."""
        record.call_id = call_context.get()
        return True


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_obj[key] = value

        return json.dumps(log_obj, default=str)


class StandardFormatter(logging.Formatter):
    """Standard text formatter for human-readable logs with call_id."""

    def __init__(self):
        """Initialize formatter."""
        super().__init__(
            fmt="%(asctime)s - [%(call_id)s] - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )


def setup_logger(
    name: str = None,
    level: str = None,
    log_format: str = None
) -> logging.Logger:
    """
    Set up and configure logger.

    File logging is enabled only when LOG_DIR is set; a device session
    normally logs to the console.

    Args:
        name: Logger name (defaults to root logger)
        level: Log level (defaults to LOG_LEVEL env var or INFO)
        log_format: Log format ("json" or "text", defaults to LOG_FORMAT env var or "text")

    Returns:
        Configured logger instance
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_format = (log_format or os.getenv("LOG_FORMAT", "text")).lower()
    log_dir = os.getenv("LOG_DIR")
    log_filename = os.getenv("LOG_FILENAME", "family_calls.log")

    logger = logging.getLogger(name)

    if logger.handlers:
        # Already configured, don't add duplicates
        return logger

    logger.setLevel(getattr(logging, level, logging.INFO))

    if log_format == "json":
        formatter = JSONFormatter()
    else:
        formatter = StandardFormatter()

    call_filter = CallFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level, logging.INFO))
    console_handler.addFilter(call_filter)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)

            file_handler = RotatingFileHandler(
                os.path.join(log_dir, log_filename),
                maxBytes=2 * 1024 * 1024,  # 2MB
                backupCount=10
            )
            file_handler.setLevel(getattr(logging, level, logging.INFO))
            file_handler.addFilter(call_filter)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

        except (OSError, PermissionError) as e:
            logger.warning(f"Failed to setup file logging: {e}. Logging to console only.")

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the specified name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def set_call_context(call_id: Optional[str]) -> None:
    """Bind the call id to the current task's logging context."""
    call_context.set(call_id or 'N/A')


def log_stale_event(logger: logging.Logger, reason: str, **context) -> None:
    """
    Log a discarded event.

    Stale events carry event_class=StaleEventIgnored so they can be told
    apart from real failures.
    """
    details = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.info(
        f"[STALE] {reason}" + (f" ({details})" if details else ""),
        extra={"event_class": "StaleEventIgnored"}
    )
