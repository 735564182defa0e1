"""
Structured logging configuration.

Development uses a human-readable key=value text format; production emits one
JSON object per line for log aggregation. The current request ID is carried in
a context variable and attached to every record logged while a request is
being handled.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Context variable for the request ID (set by the request-ID middleware)
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'exc_info', 'exc_text', 'stack_info',
    'message', 'asctime', 'taskName',
}


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Collect the attributes passed through ``extra=`` on a log call."""
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }
    request_id = request_id_ctx.get()
    if request_id and "request_id" not in fields:
        fields["request_id"] = request_id
    return fields


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        log_entry.update(_extra_fields(record))

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_entry["stack"] = self.formatStack(record.stack_info)

        return json.dumps(log_entry, default=self._json_default)

    def _json_default(self, obj: Any) -> str:
        """JSON serializer for objects not serializable by default"""
        if isinstance(obj, datetime):
            return obj.isoformat()
        return str(obj)


class TextFormatter(logging.Formatter):
    """
    Human-readable formatter: ``time LEVEL logger message key=value ...``
    """

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _extra_fields(record)
        if fields:
            pairs = " ".join(f"{key}={self._quote(value)}" for key, value in fields.items())
            first, sep, rest = line.partition("\n")
            line = f"{first} {pairs}{sep}{rest}"
        return line

    @staticmethod
    def _quote(value: Any) -> str:
        text = str(value)
        if not text or any(ch in text for ch in ' ="'):
            return json.dumps(text)
        return text


def setup_logging(log_level: str = "info", enable_json: bool = False) -> None:
    """
    Configure process-wide logging.

    Args:
        log_level: Logging level (debug, info, warn, error)
        enable_json: Whether to use JSON formatting
    """
    logging.root.handlers.clear()

    formatter: logging.Formatter = StructuredFormatter() if enable_json else TextFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(LOG_LEVELS.get(log_level.lower(), logging.INFO))
    root_logger.addHandler(console_handler)

    # The access-log middleware replaces uvicorn's access log
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).handlers.clear()
        logging.getLogger(name).propagate = True


def get_request_id() -> Optional[str]:
    """Return the request ID of the request being handled, if any."""
    return request_id_ctx.get()


def set_request_id(request_id: Optional[str]):
    """Set the request ID for the current context; returns a reset token."""
    return request_id_ctx.set(request_id)


def init_application_logging(settings) -> None:
    """Initialize logging from application settings."""
    setup_logging(log_level=settings.LOG_LEVEL, enable_json=settings.is_production)

    logger = logging.getLogger("webstarter.startup")
    logger.debug(
        "Structured logging initialized",
        extra={
            "environment": settings.ENVIRONMENT,
            "json_logging": settings.is_production,
            "log_level": settings.LOG_LEVEL,
        },
    )
