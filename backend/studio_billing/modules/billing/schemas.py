"""Pydantic schemas for subscription lifecycle, metrics and webhooks."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from studio_billing.modules.billing.stripe_client import StripeSubscriptionData


# ==================== Subscriptions ====================

class SubscriptionCreate(BaseModel):
    """Request to subscribe a student to a plan price."""
    student_id: uuid.UUID
    price_id: str = Field(..., description="Processor price id of the membership plan")
    payment_method_id: Optional[str] = None


class SubscriptionChangePlan(BaseModel):
    new_price_id: str


class SubscriptionCancel(BaseModel):
    student_id: uuid.UUID


class PaymentMethodUpdate(BaseModel):
    payment_method_id: str


class SubscriptionDetails(BaseModel):
    """Processor subscription state returned by lifecycle operations."""
    id: str
    customer_id: Optional[str] = None
    status: str
    price_ids: list[str] = []
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    client_secret: Optional[str] = None

    @classmethod
    def from_data(cls, data: StripeSubscriptionData) -> "SubscriptionDetails":
        return cls(
            id=data.id,
            customer_id=data.customer_id,
            status=data.status,
            price_ids=data.price_ids,
            current_period_start=data.current_period_start,
            current_period_end=data.current_period_end,
            cancel_at_period_end=data.cancel_at_period_end,
            client_secret=data.latest_invoice_client_secret,
        )


class PaymentMethodUpdateResponse(BaseModel):
    customer_id: str
    payment_method_id: str
    changed: bool = Field(..., description="False when the method was already the default")


# ==================== Audition Fee ====================

class AuditionPaymentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr


class AuditionPaymentResponse(BaseModel):
    payment_intent_id: str
    client_secret: str
    amount: float
    currency: str


# ==================== Metrics ====================

class PlanMixItem(BaseModel):
    name: str
    value: int


class FinancialMetrics(BaseModel):
    """Recurring revenue metrics of one tenant.

    Money is rounded to 2 decimals, rates (percent) to 1 decimal.
    """
    mrr: float = 0.0
    active_subscribers: int = 0
    arpu: float = 0.0
    churn_rate: float = 0.0
    ltv: float = 0.0
    plan_mix: list[PlanMixItem] = []
    payment_failure_rate: float = 0.0


# ==================== Webhooks ====================

class WebhookResult(BaseModel):
    """Outcome of processing one webhook event."""
    received: bool = True
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    outcome: str = "processed"
