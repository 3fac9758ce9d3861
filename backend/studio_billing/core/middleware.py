"""HTTP middleware: correlation ids, tracing, request logging and metrics.

None of these read the request body. The webhook endpoint verifies the
signature over the raw payload, which must reach it untouched.
"""

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from studio_billing.core.logging import clear_log_context, set_correlation_id
from studio_billing.core.metrics import HTTP_REQUEST_DURATION_SECONDS, HTTP_REQUESTS_TOTAL
from studio_billing.core.tracing import create_span, record_exception

request_logger = logging.getLogger("studio_billing.requests")

CORRELATION_ID_HEADER = "X-Correlation-ID"
UNLOGGED_PATHS = ("/health", "/metrics")

_UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    flags=re.IGNORECASE,
)
# Processor object ids: sub_..., in_..., acct_...
_STRIPE_ID_RE = re.compile(r"/[a-z]{2,6}_[A-Za-z0-9]{8,}(?=/|$)")


def route_template(path: str) -> str:
    """Path with local and processor ids replaced by ``{id}``."""
    return _STRIPE_ID_RE.sub("/{id}", _UUID_RE.sub("{id}", path))


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Adopt the caller's X-Correlation-ID or mint one, and echo it back."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_log_context()


class TracingMiddleware(BaseHTTPMiddleware):
    """One server span per request, named after the route template."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        route = route_template(request.url.path)
        with create_span(
            f"{request.method} {route}",
            attributes={"http.method": request.method, "http.route": route},
            kind=trace.SpanKind.SERVER,
        ) as span:
            try:
                response = await call_next(request)
            except Exception as e:
                record_exception(e, span)
                raise
            span.set_attribute("http.status_code", response.status_code)
            return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request, skipping health checks and scrapes."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in UNLOGGED_PATHS:
            return await call_next(request)

        start = time.perf_counter()
        fields = {"method": request.method, "path": request.url.path}
        try:
            response = await call_next(request)
        except Exception:
            fields["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
            request_logger.exception("Request failed", extra=fields)
            raise

        fields["status_code"] = response.status_code
        fields["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        request_logger.log(level, f"{request.method} {request.url.path} {response.status_code}", extra=fields)
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """Request count and latency per route template."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        route = route_template(request.url.path)
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            HTTP_REQUEST_DURATION_SECONDS.labels(method=request.method, endpoint=route).observe(
                time.perf_counter() - start
            )
            HTTP_REQUESTS_TOTAL.labels(
                method=request.method, endpoint=route, status_code=str(status_code)
            ).inc()
