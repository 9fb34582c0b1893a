"""
Logging setup for the consumer autoscaler operator.

Structured JSON (or plain text) logs on stdout, stamped with the service name
and the OpenTelemetry trace and span of the reconcile cycle that emitted them.
"""

import json
import logging
import os
import sys
from datetime import datetime

from opentelemetry import trace

SERVICE_NAME = "consumer-autoscaler"

TEXT_LOG_FORMAT = (
    "%(asctime)s - %(levelname)s - [%(service_name)s] - [%(trace_id)s:%(span_id)s] - "
    "[%(name)s] - %(message)s"
)

LOG_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "service_name",
        "trace_id",
        "span_id",
    }
)


class ServiceNameFilter(logging.Filter):
    """Filter to inject service name into log records."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name  # type: ignore[attr-defined]
        return True


class TraceContextFilter(logging.Filter):
    """Filter to inject trace context into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add trace_id and span_id to log record if available."""
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            record.trace_id = format(span_context.trace_id, "032x")  # type: ignore[attr-defined]
            record.span_id = format(span_context.span_id, "016x")  # type: ignore[attr-defined]
        else:
            record.trace_id = "0" * 32  # type: ignore[attr-defined]
            record.span_id = "0" * 16  # type: ignore[attr-defined]
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service_name", SERVICE_NAME),
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }

        trace_id = getattr(record, "trace_id", None)
        if trace_id and trace_id != "0" * 32:
            log_entry["trace_id"] = trace_id
            log_entry["span_id"] = getattr(record, "span_id", None)

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in log_entry:
                log_entry[key] = value

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def setup_logging(
    service_name: str = SERVICE_NAME,
    level: str | None = None,
    log_format: str | None = None,
) -> logging.Handler:
    """Install the operator's stdout handler on the root logger.

    ``LOG_LEVEL`` and ``LOG_FORMAT`` environment variables take precedence
    over the arguments, which normally come from the logging config section.

    Args:
        service_name: Name stamped on every record
        level: Log level name, defaults to INFO
        log_format: "json" or "text", defaults to json

    Returns:
        The installed handler
    """
    level = os.environ.get("LOG_LEVEL", level or "INFO").upper()
    log_format = os.environ.get("LOG_FORMAT", log_format or "json").lower()

    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))
    handler.addFilter(ServiceNameFilter(service_name))
    handler.addFilter(TraceContextFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(LOG_LEVELS.get(level, logging.INFO))

    # the kubernetes client logs every request at DEBUG
    logging.getLogger("kubernetes").setLevel(max(root.level, logging.INFO))
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return handler


__all__ = [
    "JSONFormatter",
    "ServiceNameFilter",
    "TraceContextFilter",
    "setup_logging",
]
