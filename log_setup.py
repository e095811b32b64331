"""Logging setup and the context-carrying logger handle.

Every operation in the update engine takes a ``ContextLogger`` instead of
reaching for a module global, so cycle and container fields travel with the
call and tests can inspect exactly what was logged.
"""

import json
import logging
import logging.handlers
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "harborbuddy"

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

TEXT_FORMAT = '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S %Z'

_level_lock = threading.Lock()
_configured_level = logging.INFO


class ContextLogger(logging.LoggerAdapter):
    """LoggerAdapter with immutable bound fields.

    ``bind`` returns a new adapter; the receiver is never modified, so a
    cycle logger can be handed to worker threads and narrowed per container.
    """

    def __init__(self, logger: logging.Logger, fields: Optional[Dict[str, Any]] = None):
        super().__init__(logger, dict(fields or {}))

    @property
    def fields(self) -> Dict[str, Any]:
        return dict(self.extra)

    def bind(self, **fields: Any) -> "ContextLogger":
        merged = dict(self.extra)
        merged.update(fields)
        return ContextLogger(self.logger, merged)

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        extra["context"] = dict(self.extra)
        kwargs["extra"] = extra
        if self.extra:
            prefix = " ".join(f"{k}={v}" for k, v in self.extra.items())
            msg = f"[{prefix}] {msg}"
        return msg, kwargs


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with bound context fields as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None) or {}
        if context:
            # The text prefix is redundant when fields are structured
            prefix = "[" + " ".join(f"{k}={v}" for k, v in context.items()) + "] "
            if entry["message"].startswith(prefix):
                entry["message"] = entry["message"][len(prefix):]
            entry.update(context)
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def get_logger(**fields: Any) -> ContextLogger:
    """Return the root HarborBuddy logger handle, optionally with bound fields."""
    return ContextLogger(logging.getLogger(LOGGER_NAME), fields)


def setup_logging(level: str = "info", json_format: bool = False,
                  log_file: str = "", max_size_mb: int = 10,
                  max_backups: int = 1) -> logging.Logger:
    """Configure the ``harborbuddy`` logger.

    Console output always; a size-rotated file as well when ``log_file`` is
    set and writable.  Calling it again replaces the previous handlers.
    """
    global _configured_level

    logger = logging.getLogger(LOGGER_NAME)
    numeric = LEVELS.get(level.lower(), logging.INFO)
    logger.setLevel(numeric)
    logger.propagate = False
    with _level_lock:
        _configured_level = numeric

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        try:
            # Create it readable by the host user when the directory is a bind mount
            with open(log_file, 'a'):
                pass
            os.chmod(log_file, 0o644)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_size_mb * 1024 * 1024,
                backupCount=max_backups,
            )
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"File logging disabled, cannot open {log_file}: {e}")

    return logger


def toggle_debug() -> int:
    """Flip between DEBUG and the configured level; returns the new level."""
    logger = logging.getLogger(LOGGER_NAME)
    with _level_lock:
        if logger.level == logging.DEBUG and _configured_level != logging.DEBUG:
            new_level = _configured_level
        elif logger.level == logging.DEBUG:
            new_level = logging.INFO
        else:
            new_level = logging.DEBUG
        logger.setLevel(new_level)
    logger.info(f"Log level switched to {logging.getLevelName(new_level)}")
    return new_level
