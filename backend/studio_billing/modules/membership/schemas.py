"""Pydantic schemas for membership plans."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class MembershipPlanCreate(BaseModel):
    """Request to create a membership plan.

    When ``stripe_price_id`` is omitted a product and a monthly recurring
    price are created on the tenant's payment account.
    """
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    monthly_price: float = Field(..., gt=0)
    duration_months: Optional[int] = Field(default=None, ge=1)
    stripe_price_id: Optional[str] = None


class MembershipPlanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    name: str
    description: Optional[str] = None
    monthly_price: float
    duration_months: Optional[int] = None
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    created_at: Optional[datetime] = None
