"""Structured logging configuration.

JSON or text output, with request correlation IDs and the organization
currently being scanned attached to every record.
"""

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

# Request correlation ID, set by CorrelationIdMiddleware
correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Organization whose scan/resolution is in progress
organization_id_ctx: ContextVar[str | None] = ContextVar(
    "organization_id", default=None
)


@contextmanager
def organization_context(organization_id: Any) -> Iterator[None]:
    """Tag all log records emitted inside the block with an organization id."""
    token = organization_id_ctx.set(str(organization_id))
    try:
        yield
    finally:
        organization_id_ctx.reset(token)


class JsonFormatter(logging.Formatter):
    """Formatter that renders each record as a single JSON object.

    Fields: timestamp, level, service, message, logger, plus
    correlation_id / organization_id when set and any extra fields
    passed through StructuredLogger.
    """

    def __init__(self, service_name: str = "oncall-escalation"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "message": record.getMessage(),
            "logger": record.name,
        }

        correlation_id = correlation_id_ctx.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        organization_id = organization_id_ctx.get()
        if organization_id:
            log_data["organization_id"] = organization_id

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if record.levelno >= logging.ERROR:
            log_data["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development.

    Format: timestamp - service - level - [correlation_id/org] - message key=value
    """

    def __init__(self, service_name: str = "oncall-escalation"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        correlation_id = correlation_id_ctx.get() or "-"
        organization_id = organization_id_ctx.get() or "-"

        base_msg = (
            f"{timestamp} - {self.service_name} - {record.levelname} - "
            f"[{correlation_id}/{organization_id}] - {record.getMessage()}"
        )

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            base_msg += " " + " ".join(f"{k}={v}" for k, v in extra_fields.items())

        if record.exc_info:
            base_msg += f"\n{self.formatException(record.exc_info)}"

        return base_msg


def setup_logging(
    log_format: str = "json",
    log_level: str = "INFO",
    service_name: str = "oncall-escalation",
) -> None:
    """Configure root logging for the service.

    Args:
        log_format: 'json' for structured logging, 'text' for human-readable
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Service name to include in logs
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    if log_format.lower() == "json":
        formatter: logging.Formatter = JsonFormatter(service_name=service_name)
    else:
        formatter = TextFormatter(service_name=service_name)

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


class StructuredLogger:
    """Logger wrapper that supports structured extra fields."""

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def _log(
        self,
        level: int,
        msg: str,
        extra_fields: dict[str, Any] | None = None,
        exc_info: bool = False,
    ) -> None:
        record_extra = {"extra_fields": extra_fields} if extra_fields else {}
        self._logger.log(level, msg, extra=record_extra, exc_info=exc_info)

    def debug(self, msg: str, exc_info: bool = False, **extra_fields: Any) -> None:
        self._log(logging.DEBUG, msg, extra_fields or None, exc_info)

    def info(self, msg: str, exc_info: bool = False, **extra_fields: Any) -> None:
        self._log(logging.INFO, msg, extra_fields or None, exc_info)

    def warning(self, msg: str, exc_info: bool = False, **extra_fields: Any) -> None:
        self._log(logging.WARNING, msg, extra_fields or None, exc_info)

    def error(self, msg: str, exc_info: bool = False, **extra_fields: Any) -> None:
        self._log(logging.ERROR, msg, extra_fields or None, exc_info)

    def exception(self, msg: str, **extra_fields: Any) -> None:
        """Log at ERROR with the active exception's traceback."""
        self._log(logging.ERROR, msg, extra_fields or None, exc_info=True)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance (typically ``get_logger(__name__)``)."""
    return StructuredLogger(name)
