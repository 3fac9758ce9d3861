"""API Router for subscriptions, metrics and processor webhooks."""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.core.database import get_session
from studio_billing.modules.auth.jwt import get_current_tenant_id
from studio_billing.modules.billing.analytics import FinancialMetricsService
from studio_billing.modules.billing.schemas import (
    AuditionPaymentCreate,
    AuditionPaymentResponse,
    FinancialMetrics,
    PaymentMethodUpdate,
    PaymentMethodUpdateResponse,
    SubscriptionCancel,
    SubscriptionChangePlan,
    SubscriptionCreate,
    SubscriptionDetails,
    WebhookResult,
)
from studio_billing.modules.billing.service import SubscriptionService
from studio_billing.modules.billing.stripe_client import StripeClient, get_stripe_client
from studio_billing.modules.billing.webhooks import WebhookProcessor
from studio_billing.modules.notification.schemas import NotificationResponse
from studio_billing.modules.notification.service import NotificationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ==================== Webhooks ====================

@router.post("/webhooks", response_model=WebhookResult)
async def stripe_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    """Receive a signed processor event.

    The raw body is verified before anything else. Events for entities not
    known locally are acknowledged and discarded.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    processor = WebhookProcessor(session, stripe_client)

    try:
        event = processor.verify(payload, signature)
    except ValueError as e:
        logger.warning(f"Rejected webhook: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RuntimeError as e:
        logger.error(f"Webhook processing unavailable: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret is not configured",
        )

    return await processor.dispatch(event)


# ==================== Subscriptions ====================

@router.post("/subscriptions", response_model=SubscriptionDetails, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    data: SubscriptionCreate,
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    service = SubscriptionService(session, stripe_client)
    return await service.create_subscription(
        data.student_id, data.price_id, data.payment_method_id, tenant_id
    )


@router.patch("/subscriptions/{subscription_id}/change-plan", response_model=SubscriptionDetails)
async def change_subscription_plan(
    subscription_id: str,
    data: SubscriptionChangePlan,
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    service = SubscriptionService(session, stripe_client)
    return await service.update_subscription(subscription_id, data.new_price_id, tenant_id)


@router.delete("/subscriptions/{subscription_id}", response_model=SubscriptionDetails)
async def cancel_subscription(
    subscription_id: str,
    data: SubscriptionCancel,
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    """Cancel at the end of the current billing period."""
    service = SubscriptionService(session, stripe_client)
    return await service.cancel_subscription(data.student_id, subscription_id, tenant_id)


@router.get("/students/{student_id}/subscription", response_model=Optional[SubscriptionDetails])
async def get_student_subscription(
    student_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    service = SubscriptionService(session, stripe_client)
    return await service.get_student_subscription(student_id, tenant_id)


@router.post("/students/{student_id}/payment-method", response_model=PaymentMethodUpdateResponse)
async def update_payment_method(
    student_id: uuid.UUID,
    data: PaymentMethodUpdate,
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    service = SubscriptionService(session, stripe_client)
    return await service.update_payment_method(student_id, data.payment_method_id, tenant_id)


# ==================== Audition Fee ====================

@router.post("/audition-payments", response_model=AuditionPaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_audition_payment(
    data: AuditionPaymentCreate,
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    service = SubscriptionService(session, stripe_client)
    return await service.create_audition_payment_intent(tenant_id, data.name, data.email)


# ==================== Metrics and Notifications ====================

@router.get("/metrics", response_model=FinancialMetrics)
async def get_financial_metrics(
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    """MRR, churn, ARPU, LTV, plan mix and payment failure rate."""
    return await FinancialMetricsService(session, stripe_client).get_metrics(tenant_id)


@router.get("/notifications", response_model=list[NotificationResponse])
async def list_billing_notifications(
    unread_only: bool = False,
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    return await NotificationService(session).list_notifications(tenant_id, unread_only)
