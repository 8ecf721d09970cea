"""Structured logging with correlation IDs.

Records are emitted as one JSON object per line. Each carries a correlation
ID; a transcode attempt binds it to its job token together with the
SourceFile and attempt number, so every line a job writes across stages and
retries can be grouped.
"""

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

from streamvault.core.tracing import current_trace_ids

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
job_context_var: ContextVar[Optional[dict[str, Any]]] = ContextVar("job_context", default=None)

# Attributes every LogRecord has; anything else arrived through extra=
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "correlation_id",
}

NOISY_LOGGERS = ("sqlalchemy.engine", "botocore", "boto3", "s3transfer", "urllib3")


def get_correlation_id() -> str:
    """Get the current correlation ID.

    Falls back to the active trace ID, then to a generated ID that sticks
    for the rest of the context.
    """
    cid = correlation_id_var.get()
    if cid is not None:
        return cid

    trace_id, _ = current_trace_ids()
    if trace_id:
        return trace_id

    cid = uuid.uuid4().hex
    correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def bind_job(job_token: str, source_file_id: int, attempt: int) -> None:
    """Tag every following record in this context with a transcode job."""
    correlation_id_var.set(job_token)
    job_context_var.set({"source_file_id": source_file_id, "attempt": attempt})


def clear_correlation_id() -> None:
    """Drop the correlation ID and any bound job."""
    correlation_id_var.set(None)
    job_context_var.set(None)


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """Render log records as single-line JSON."""

    def __init__(self, include_stack_trace: bool = True):
        super().__init__()
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        trace_id, span_id = current_trace_ids()
        if trace_id:
            payload["trace_id"] = trace_id
            payload["span_id"] = span_id

        job = job_context_var.get()
        if job:
            payload["job"] = job

        if record.exc_info and record.exc_info[1] is not None:
            exc_type, exc, tb = record.exc_info
            payload["exception"] = {"type": exc_type.__name__, "message": str(exc)}
            if self.include_stack_trace and tb is not None:
                payload["exception"]["stack_trace"] = traceback.format_exception(exc_type, exc, tb)

        extra = {
            key: _json_safe(value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS
        }
        if extra:
            payload["extra"] = extra

        return json.dumps(payload, default=str)


class CorrelationIdFilter(logging.Filter):
    """Expose the correlation ID as ``%(correlation_id)s`` for text formats."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        return True


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Replace root handlers with a single stdout handler.

    Args:
        level: Log level name
        json_format: Emit JSON lines instead of plain text
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"
        ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _log(
    logger: logging.Logger,
    level: int,
    message: str,
    extra: dict[str, Any],
    exception: Optional[BaseException] = None,
) -> None:
    logger.log(level, message, exc_info=exception, extra=extra)


def log_info(logger: logging.Logger, message: str, **extra: Any) -> None:
    _log(logger, logging.INFO, message, extra)


def log_warning(logger: logging.Logger, message: str, **extra: Any) -> None:
    _log(logger, logging.WARNING, message, extra)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **extra: Any,
) -> None:
    """Log an error, with the exception's traceback when one is given."""
    _log(logger, logging.ERROR, message, extra, exception)
