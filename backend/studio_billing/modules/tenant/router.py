"""API Router for tenant payment accounts and billing settings."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.core.database import get_session
from studio_billing.modules.auth.jwt import get_current_tenant_id
from studio_billing.modules.billing.stripe_client import StripeClient, get_stripe_client
from studio_billing.modules.tenant.schemas import (
    BillingSettingsResponse,
    BillingSettingsUpdate,
    OnboardingLinkResponse,
    PaymentAccountResponse,
    PaymentAccountStatusResponse,
)
from studio_billing.modules.tenant.service import AccountService
from studio_billing.modules.tenant.settings import BillingSettingsStore

router = APIRouter(prefix="/tenants/me", tags=["tenants"])


@router.post("/payment-account", response_model=PaymentAccountResponse)
async def create_payment_account(
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    """Create the tenant's connected account, or reuse a valid existing one."""
    service = AccountService(session, stripe_client)
    return await service.create_account(tenant_id)


@router.post("/payment-account/onboarding-link", response_model=OnboardingLinkResponse)
async def create_onboarding_link(
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    service = AccountService(session, stripe_client)
    url = await service.create_onboarding_link(tenant_id)
    return OnboardingLinkResponse(url=url)


@router.get("/payment-account/status", response_model=PaymentAccountStatusResponse)
async def get_payment_account_status(
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    service = AccountService(session, stripe_client)
    return await service.get_status(tenant_id)


@router.get("/billing-settings", response_model=BillingSettingsResponse)
async def get_billing_settings(
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    resolved = await BillingSettingsStore(session).get_settings(tenant_id)
    return BillingSettingsResponse(
        enrollment_product_id=resolved.enrollment_product_id,
        enrollment_price_id=resolved.enrollment_price_id,
        audition_product_id=resolved.audition_product_id,
        audition_price_id=resolved.audition_price_id,
    )


@router.put("/billing-settings", response_model=BillingSettingsResponse)
async def update_billing_settings(
    data: BillingSettingsUpdate,
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    """Set the tenant's enrollment and audition product/price ids."""
    resolved = await BillingSettingsStore(session).update_settings(
        tenant_id, **data.model_dump(exclude_unset=True)
    )
    return BillingSettingsResponse(
        enrollment_product_id=resolved.enrollment_product_id,
        enrollment_price_id=resolved.enrollment_price_id,
        audition_product_id=resolved.audition_product_id,
        audition_price_id=resolved.audition_price_id,
    )
