"""Process logging for ClinicFlow.

Records carry the request or execution they were written for. The fields
are kept per thread, so a background walk and the HTTP request that
started it tag their records independently.
"""

import json
import logging
import sys
import threading
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Libraries that are chatty at INFO
_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "urllib3": logging.WARNING,
    "httpx": logging.WARNING,
    "openai": logging.WARNING,
}

_local = threading.local()


def _current_context() -> Dict[str, Any]:
    if not hasattr(_local, "context"):
        _local.context = {}
    return _local.context


def set_logging_context(**fields):
    """Tag every following record on this thread with ``fields``."""
    _current_context().update(fields)


def clear_logging_context():
    _current_context().clear()


class ContextFilter(logging.Filter):
    """Copies the thread's context fields onto each record as ``context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = dict(_current_context())
        context.update(getattr(record, "extra_fields", None) or {})
        record.context = context
        return True


class ContextFormatter(logging.Formatter):
    """Plain-text formatter that appends the execution or request a record belongs to."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "context", None) or {}
        tags = [f"{key}={context[key]}" for key in ("request_id", "execution_id") if context.get(key)]
        return f"{line} [{' '.join(tags)}]" if tags else line


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, context fields included."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(getattr(record, "context", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Logging level name
        log_file: Also write to this file, rotated at ``max_size`` bytes
        log_format: Format of plain-text records
        structured: Write JSON records instead of plain text
        max_size: Size at which the log file is rotated
        backup_count: Number of rotated files kept

    Returns:
        The root logger
    """
    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = ContextFormatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    context_filter = ContextFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        root_logger.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
