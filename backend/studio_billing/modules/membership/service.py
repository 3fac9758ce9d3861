"""Membership plan service with lazy processor price provisioning."""

import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.core.config import settings
from studio_billing.core.errors import NotFoundError, PreconditionError
from studio_billing.modules.billing.stripe_client import StripeClient, get_stripe_client
from studio_billing.modules.membership.models import MembershipPlan
from studio_billing.modules.membership.repository import MembershipPlanRepository
from studio_billing.modules.membership.schemas import MembershipPlanCreate
from studio_billing.modules.tenant.repository import TenantRepository

logger = logging.getLogger(__name__)


class MembershipPlanService:
    """Service for tenant membership plans."""

    def __init__(self, session: AsyncSession, stripe_client: Optional[StripeClient] = None):
        self.session = session
        self.plan_repo = MembershipPlanRepository(session)
        self.tenant_repo = TenantRepository(session)
        self.stripe = stripe_client or get_stripe_client()

    async def create_plan(self, tenant_id: uuid.UUID, data: MembershipPlanCreate) -> MembershipPlan:
        """Create a plan, provisioning its monthly price when none is given.

        No plan row is written if provisioning fails.

        Raises:
            PreconditionError: If a price must be created but the tenant has no payment account
            ExternalServiceError: If the processor rejects product or price creation
        """
        product_id = None
        price_id = data.stripe_price_id

        if not price_id:
            tenant = await self.tenant_repo.get_by_id(tenant_id)
            if not tenant:
                raise NotFoundError(f"Tenant {tenant_id} not found")
            if not tenant.stripe_account_id:
                raise PreconditionError(
                    f"Tenant {tenant_id} has no payment account",
                    hint="Create the payment account or supply an existing price id.",
                )
            product = await self.stripe.create_product(
                tenant.stripe_account_id, data.name, data.description
            )
            price = await self.stripe.create_price(
                tenant.stripe_account_id,
                product_id=product.id,
                unit_amount=round(data.monthly_price * 100),
                currency=settings.DEFAULT_CURRENCY,
                interval="month",
                nickname=data.name,
            )
            product_id = product.id
            price_id = price.id
            logger.info(f"Provisioned price {price_id} for plan '{data.name}' of tenant {tenant_id}")

        return await self.plan_repo.create(
            tenant_id=tenant_id,
            name=data.name,
            description=data.description,
            monthly_price=data.monthly_price,
            duration_months=data.duration_months,
            stripe_product_id=product_id,
            stripe_price_id=price_id,
        )

    async def list_plans(self, tenant_id: uuid.UUID) -> list[MembershipPlan]:
        return await self.plan_repo.list_for_tenant(tenant_id)
