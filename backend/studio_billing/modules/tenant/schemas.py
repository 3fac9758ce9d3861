"""Pydantic schemas for tenant payment accounts and billing settings."""

from typing import Optional

from pydantic import BaseModel, Field

from studio_billing.modules.tenant.models import PaymentAccountStatus


class PaymentAccountResponse(BaseModel):
    """Result of provisioning a connected account."""
    account_id: str
    created: bool = Field(..., description="False when an existing valid account was reused")


class OnboardingLinkResponse(BaseModel):
    url: str


class PaymentAccountStatusResponse(BaseModel):
    """Onboarding state of the tenant's connected account."""
    status: PaymentAccountStatus
    account_id: Optional[str] = None
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False
    dashboard_url: Optional[str] = None


class BillingSettingsUpdate(BaseModel):
    """Partial update of tenant billing settings. Empty string clears a field."""
    enrollment_product_id: Optional[str] = None
    enrollment_price_id: Optional[str] = None
    audition_product_id: Optional[str] = None
    audition_price_id: Optional[str] = None


class BillingSettingsResponse(BaseModel):
    enrollment_product_id: Optional[str] = None
    enrollment_price_id: Optional[str] = None
    audition_product_id: Optional[str] = None
    audition_price_id: Optional[str] = None
