"""Structured JSON logging utilities.

- JSON format for log aggregation
- Includes request_id, event_id, member_id from context variables
- Standard fields: timestamp, level, message, module, func, line
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from memberhub_api.context import event_id_var, member_id_var, request_id_var
from memberhub_api.utils.sanitize import sanitize_exc, sanitize_obj, sanitize_str

_STANDARD_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "stack_info",
    "taskName",
    "trace_id",
    "span_id",
})

_CONTEXT_FIELDS = (
    ("request_id", request_id_var),
    ("event_id", event_id_var),
    ("member_id", member_id_var),
)


class JSONFormatter(logging.Formatter):
    """JSON log formatter with request/event context.

    Formats log records as JSON with standard fields:
    - timestamp: ISO 8601 UTC
    - level: log level (INFO, ERROR, etc.)
    - message: log message (sanitized)
    - module / func / line
    - request_id, event_id, member_id: from context variables when set
    - trace_id / span_id: from extra kwargs when provided

    Every extra field passes through sanitize_obj() so customer PII and
    signatures never leave the process in clear text.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": sanitize_str(record.getMessage()),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }

        for field, var in _CONTEXT_FIELDS:
            value = var.get()
            if value:
                log_data[field] = value

        trace_id = getattr(record, "trace_id", None)
        span_id = getattr(record, "span_id", None)
        if trace_id:
            log_data["trace_id"] = str(trace_id)
        if span_id:
            log_data["span_id"] = str(span_id)

        if record.exc_info:
            log_data["exc_info"] = sanitize_exc(record.exc_info)

        # Extra fields from logger.info(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                log_data[key] = sanitize_obj(value)

        return json.dumps(log_data, default=str)


def configure_json_logging(log_level: str = "INFO") -> None:
    """Configure root logger with JSON formatter.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
