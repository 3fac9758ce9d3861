"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from studio_billing.core.config import settings
from studio_billing.core.database import init_db
from studio_billing.core.errors import (
    BillingError,
    ExternalServiceError,
    NotFoundError,
    PreconditionError,
    ReconciliationGap,
    ValidationError,
)
from studio_billing.core.logging import get_correlation_id, setup_logging
from studio_billing.core.metrics import get_metrics, record_reconciliation_gap, set_app_info
from studio_billing.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from studio_billing.core.tracing import setup_tracing, shutdown_tracing
from studio_billing.modules.billing.router import router as billing_router
from studio_billing.modules.ledger.router import router as ledger_router
from studio_billing.modules.membership.router import router as plans_router
from studio_billing.modules.tenant.router import router as tenant_router

logger = logging.getLogger(__name__)

WEBHOOK_PATH = f"{settings.API_V1_PREFIX}/billing/webhooks"


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    shutdown_tracing()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Studio Billing API

Tenant billing for studios: connected payment accounts, student membership
subscriptions, processor webhooks, a local invoice/payment mirror and
recurring revenue metrics.

All endpoints except `/health`, `/metrics` and the processor webhook require
a JWT bearer token whose `tid` claim names the caller's tenant.
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Health check endpoints"},
        {"name": "tenants", "description": "Payment account onboarding and billing settings"},
        {"name": "plans", "description": "Membership plans"},
        {"name": "billing", "description": "Subscriptions, webhooks and financial metrics"},
        {"name": "ledger", "description": "Local invoice and payment records"},
    ],
)

setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment=settings.ENVIRONMENT,
    otlp_endpoint=settings.OTLP_ENDPOINT,
)

set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(TracingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


# ==================== Error Handling ====================

def _error_body(error: BillingError, category: str, **extra) -> dict:
    body = {
        "error": category,
        "detail": error.message,
        "correlation_id": get_correlation_id(),
    }
    body.update({k: v for k, v in extra.items() if v is not None})
    return body


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(exc, "validation_error"),
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=_error_body(exc, "not_found"),
    )


@app.exception_handler(PreconditionError)
async def precondition_error_handler(request: Request, exc: PreconditionError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=_error_body(exc, "precondition_failed", hint=exc.hint),
    )


@app.exception_handler(ExternalServiceError)
async def external_service_error_handler(
    request: Request, exc: ExternalServiceError
) -> JSONResponse:
    logger.error(
        f"Payment processor unavailable during {exc.operation}: {exc.message}",
        extra={"path": request.url.path, "stripe_code": exc.code},
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=_error_body(exc, "payment_processor_error", operation=exc.operation, code=exc.code),
    )


@app.exception_handler(ReconciliationGap)
async def reconciliation_gap_handler(request: Request, exc: ReconciliationGap) -> JSONResponse:
    record_reconciliation_gap(exc.kind)
    if request.url.path == WEBHOOK_PATH:
        logger.warning(f"Discarding webhook: {exc.message}")
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"received": True, "outcome": "discarded"},
        )
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=_error_body(exc, "reconciliation_gap", kind=exc.kind, remote_id=exc.remote_id),
    )


# ==================== Operational Endpoints ====================

@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    """Prometheus scrape endpoint."""
    body, content_type = get_metrics()
    return Response(content=body, media_type=content_type)


# Include routers
app.include_router(tenant_router, prefix=settings.API_V1_PREFIX)
app.include_router(plans_router, prefix=settings.API_V1_PREFIX)
app.include_router(billing_router, prefix=settings.API_V1_PREFIX)
app.include_router(ledger_router, prefix=settings.API_V1_PREFIX)
