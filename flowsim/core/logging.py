"""Logging setup for the workflow simulator.

Records are stamped with the active logging context (request id, run id),
which lives in a context variable so concurrent requests and simulation runs
never see each other's fields.
"""

import json
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s%(context_suffix)s"

# third-party loggers that are too chatty at INFO
QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "urllib3": logging.WARNING,
    "asyncio": logging.WARNING,
}

_log_context: ContextVar[Dict[str, Any]] = ContextVar("flowsim_log_context", default={})


class StructuredFormatter(logging.Formatter):
    """One JSON object per record with the context fields at top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(getattr(record, "context", {}))
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }
        return json.dumps(entry, default=str)


class ContextFilter(logging.Filter):
    """Copies the active logging context onto each record.

    ``context`` feeds the structured formatter, ``context_suffix`` the plain one.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        context = _log_context.get()
        record.context = dict(context)
        record.context_suffix = "".join(f" [{key}={value}]" for key, value in context.items())
        return True


_context_filter = ContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the simulator service.

    Args:
        level: Logging level name
        log_file: Optional file path, rotated at ``max_size`` bytes
        log_format: Format for plain records; ``%(context_suffix)s`` appends the context
        structured: Emit JSON records instead of plain text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The ``flowsim`` package logger
    """
    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_context_filter)
        root_logger.addHandler(handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    package_logger = logging.getLogger("flowsim")
    package_logger.setLevel(root_logger.level)
    return package_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def current_logging_context() -> Dict[str, Any]:
    return dict(_log_context.get())


@contextmanager
def logging_context(**fields) -> Iterator[None]:
    """Add fields to the logging context for the duration of a block.

    The previous context is restored on exit, so nested scopes (a simulation
    run inside a request) keep the outer fields.
    """
    token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)


def log_with_context(logger: logging.Logger, level: int, message: str, **fields):
    """Log a message with additional structured fields."""
    logger.log(level, message, extra={"extra_fields": fields})
