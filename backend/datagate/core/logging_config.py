"""
Structured JSON logging configuration.

Sets up application-wide JSON logging with:
- Consistent field names across all logs
- Request correlation IDs (taken from the current request context when a
  record does not carry one)
- Entity / operation tracking for gateway calls
- Timestamp, level, message, path, status code, latency

Logs are written to stdout, one JSON object per line.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Correlation id of the request being served, set by RequestIDMiddleware
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


# LogRecord attributes that are not user supplied context
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName",
})


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as single-line JSON objects with consistent fields:
    - timestamp: ISO 8601 UTC timestamp
    - level: Log level
    - message: Log message
    - logger: Logger name (module path)
    - exception: Formatted traceback (if exception occurred)
    - any field passed through ``extra={...}`` (request_id, entity,
      operation, path, status_code, latency_ms, ...)

    Example output:
        {"timestamp": "2025-11-24T10:30:00.123456+00:00", "level": "WARNING",
         "message": "Query parameters rejected", "logger": "datagate.services.query_params",
         "entity": "product", "kind": "disallowed_field"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            log_data["stack_info"] = self.formatStack(record.stack_info)

        # Context passed via logger.info("msg", extra={...})
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in log_data or key.startswith("_"):
                continue
            if value is None:
                continue
            log_data[key] = value

        if "request_id" not in log_data:
            request_id = request_id_var.get()
            if request_id is not None:
                log_data["request_id"] = request_id

        return json.dumps(log_data, default=str)


class RequestIdFilter(logging.Filter):
    """Stamp records with the current request id ('-' outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get() or "-"
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True
) -> None:
    """
    Configure application logging.

    Replaces any handlers on the root logger with a single stdout handler
    using either the JSON formatter or a plain text formatter. Both include
    the current request id.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSONFormatter (True) or simple formatter (False)

    Note:
        Call this once at application startup, before any logging occurs.
    """
    root_logger = logging.getLogger()

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        console_handler.addFilter(RequestIdFilter())

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get logger instance with given name."""
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    request_id: Optional[str] = None,
    entity: Optional[str] = None,
    operation: Optional[str] = None,
    **extra_fields: Any
) -> None:
    """
    Log message with structured gateway context fields.

    Args:
        logger: Logger instance
        level: Log level name (debug, info, warning, error, critical)
        message: Log message
        request_id: Request correlation ID
        entity: Entity name the call operates on
        operation: Gateway operation (list, create, bulk_update, raw_query, ...)
        **extra_fields: Additional fields to include

    Example:
        log_with_context(
            logger, "info", "Bulk create finished",
            entity="product", operation="bulk_create",
            succeeded=9, failed=1,
        )
    """
    extra: Dict[str, Any] = {}

    if request_id is not None:
        extra["request_id"] = request_id
    if entity is not None:
        extra["entity"] = entity
    if operation is not None:
        extra["operation"] = operation

    extra.update(extra_fields)

    log_method = getattr(logger, level.lower())
    log_method(message, extra=extra)
