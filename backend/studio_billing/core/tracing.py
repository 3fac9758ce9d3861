"""OpenTelemetry tracing.

Every processor round-trip runs inside a ``stripe.<operation>`` span tagged
with the connected account, so processor latency and failures show up under
the request or webhook event that caused them.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

TRACER_NAME = "studio_billing"

_provider: Optional[TracerProvider] = None


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    otlp_endpoint: Optional[str] = None,
) -> None:
    """Install the tracer provider.

    Spans are only exported when ``otlp_endpoint`` is set and the ``otlp``
    extra is installed; otherwise they still feed trace ids into the logs.
    """
    global _provider

    _provider = TracerProvider(
        resource=Resource.create({
            SERVICE_NAME: service_name,
            SERVICE_VERSION: service_version,
            "deployment.environment": environment,
        })
    )

    if otlp_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning("OTLP_ENDPOINT is set but the otlp extra is not installed")
        else:
            _provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint))
            )
            logger.info(f"Exporting spans to {otlp_endpoint}")

    trace.set_tracer_provider(_provider)
    set_global_textmap(TraceContextTextMapPropagator())


def current_trace_ids() -> tuple[Optional[str], Optional[str]]:
    """Hex trace and span id of the active span, or (None, None)."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None, None
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


@contextmanager
def create_span(
    name: str,
    attributes: Optional[dict] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> Iterator[Span]:
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(name, kind=kind, attributes=attributes or {}) as span:
        yield span


@contextmanager
def processor_span(operation: str, account: Optional[str] = None) -> Iterator[Span]:
    """Client span around one processor API call."""
    attributes = {"stripe.operation": operation}
    if account:
        attributes["stripe.account"] = account
    with create_span(f"stripe.{operation}", attributes, kind=trace.SpanKind.CLIENT) as span:
        yield span


def record_exception(exception: Exception, span: Optional[Span] = None) -> None:
    """Mark a span (the active one by default) as failed."""
    span = span or trace.get_current_span()
    span.record_exception(exception)
    span.set_status(Status(StatusCode.ERROR, str(exception)))


def shutdown_tracing() -> None:
    """Flush pending spans."""
    if _provider:
        _provider.shutdown()
