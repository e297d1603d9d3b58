"""
Structured Logging Configuration Module

JSON log lines for banking operations. Every line carries the structured
fields attached by log_action; a correlation ID bound with
correlation_scope() is stamped on every line emitted inside the scope.
"""

import contextvars
import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional


STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_correlation_id: contextvars.ContextVar = contextvars.ContextVar('avenir_correlation_id', default=None)


def current_correlation_id() -> Optional[str]:
    """Correlation ID bound to the running context, if any"""
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation ID for the duration of the block"""
    value = correlation_id or str(uuid.uuid4())
    token = _correlation_id.set(value)
    try:
        yield value
    finally:
        _correlation_id.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per record; unset structured fields are omitted"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if name == "correlation_id" and value is None:
                value = current_correlation_id()
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "avenir",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the application logger.

    Calling it again replaces the handler instead of stacking a second one.

    Args:
        level: Log level name
        logger_name: Logger to configure, "avenir" covers every component
        log_format: "json" for structured lines, anything else for plain text
        log_file: Append to this file instead of stderr
    """
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def get_logger(name: str = "avenir") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None) -> None:
    """
    Log a business action with its structured context.

    Args:
        logger: Component logger
        level: Level name (info, warning, error...)
        message: Human-readable message
        user_id: Acting user
        action: Short action name, e.g. "transfer"
        resource: "<type>:<id>" of the affected record
        correlation_id: Overrides the one bound by correlation_scope()
        extra: Additional JSON-serializable data
    """
    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    logger.log(
        logging.getLevelName(level.upper()), message,
        extra={name: value for name, value in fields.items() if value}
    )
