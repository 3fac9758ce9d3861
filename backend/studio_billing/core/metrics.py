"""Prometheus metrics for the billing service."""

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    multiprocess,
)
import os

REGISTRY = CollectorRegistry()

# Gunicorn / multi-worker deployments
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


APP_INFO = Info(
    "studio_billing_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)


# ============================================
# Payment Processor Metrics
# ============================================
PROCESSOR_CALLS_TOTAL = Counter(
    "processor_calls_total",
    "Calls made to the payment processor",
    ["operation", "outcome"],
    registry=REGISTRY,
)

PROCESSOR_CALL_DURATION_SECONDS = Histogram(
    "processor_call_duration_seconds",
    "Payment processor call duration in seconds",
    ["operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)


# ============================================
# Webhook / Reconciliation Metrics
# ============================================
WEBHOOK_EVENTS_TOTAL = Counter(
    "webhook_events_total",
    "Processor webhook events received",
    ["event_type", "outcome"],
    registry=REGISTRY,
)

RECONCILIATION_GAPS_TOTAL = Counter(
    "reconciliation_gaps_total",
    "Remote references that could not be matched to local state",
    ["kind"],
    registry=REGISTRY,
)


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({"version": version, "environment": environment})


def record_processor_call(operation: str, outcome: str, duration: float) -> None:
    PROCESSOR_CALLS_TOTAL.labels(operation=operation, outcome=outcome).inc()
    PROCESSOR_CALL_DURATION_SECONDS.labels(operation=operation).observe(duration)


def record_webhook_event(event_type: str, outcome: str) -> None:
    WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome=outcome).inc()


def record_reconciliation_gap(kind: str) -> None:
    RECONCILIATION_GAPS_TOTAL.labels(kind=kind).inc()


def get_metrics() -> tuple[bytes, str]:
    """Render the registry in Prometheus text format."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
