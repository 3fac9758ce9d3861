"""Structured logging with request and tenant context.

Every record carries the correlation id (the request's ``X-Correlation-ID``
or the processor event id during webhook handling), the tenant being
worked on when one is known, and the active trace ids.
"""

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional, Union

from studio_billing.core.tracing import current_trace_ids

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "correlation_id", "tenant_id"}


def get_correlation_id() -> str:
    """Current correlation id, minting one if the context has none."""
    cid = correlation_id_var.get()
    if cid is None:
        cid = current_trace_ids()[0] or str(uuid.uuid4())
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def bind_tenant(tenant_id: Union[uuid.UUID, str, None]) -> None:
    """Tag subsequent log records in this context with a tenant."""
    tenant_id_var.set(str(tenant_id) if tenant_id else None)


def clear_log_context() -> None:
    correlation_id_var.set(None)
    tenant_id_var.set(None)


class ContextFilter(logging.Filter):
    """Copy correlation and tenant ids onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        record.tenant_id = tenant_id_var.get() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, include_stack_trace: bool = True):
        super().__init__()
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }
        tenant_id = tenant_id_var.get()
        if tenant_id:
            log_data["tenant_id"] = tenant_id

        trace_id, span_id = current_trace_ids()
        if trace_id:
            log_data["trace_id"] = trace_id
            log_data["span_id"] = span_id

        if record.exc_info and record.exc_info[0]:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }
            if self.include_stack_trace:
                log_data["exception"]["stack_trace"] = traceback.format_exception(*record.exc_info)

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES
        }
        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
) -> None:
    """Configure the root logger with a single stdout handler.

    Args:
        level: Log level name
        json_format: Emit JSON lines instead of plain text
        include_stack_trace: Include tracebacks in JSON error records
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter(include_stack_trace=include_stack_trace))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s tenant=%(tenant_id)s] %(message)s"
        ))
    root_logger.addHandler(handler)

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpx", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
