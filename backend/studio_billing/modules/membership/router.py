"""API Router for membership plans."""

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.core.database import get_session
from studio_billing.modules.auth.jwt import get_current_tenant_id
from studio_billing.modules.billing.stripe_client import StripeClient, get_stripe_client
from studio_billing.modules.membership.schemas import MembershipPlanCreate, MembershipPlanResponse
from studio_billing.modules.membership.service import MembershipPlanService

router = APIRouter(prefix="/plans", tags=["plans"])


@router.post("", response_model=MembershipPlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    data: MembershipPlanCreate,
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    """Create a membership plan for the caller's tenant."""
    plan = await MembershipPlanService(session, stripe_client).create_plan(tenant_id, data)
    return MembershipPlanResponse.model_validate(plan)


@router.get("", response_model=list[MembershipPlanResponse])
async def list_plans(
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    plans = await MembershipPlanService(session).list_plans(tenant_id)
    return [MembershipPlanResponse.model_validate(p) for p in plans]
