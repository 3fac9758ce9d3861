"""Tenant (studio) models.

A tenant owns one connected account on the payment processor. The account
id is written by the payment account manager only.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from studio_billing.core.database import Base


class PaymentAccountStatus(str, Enum):
    """Onboarding state of a tenant's connected account."""
    UNVERIFIED = "unverified"
    INCOMPLETE = "incomplete"
    ACTIVE = "active"


class Tenant(Base):
    """A studio: the billing isolation boundary."""

    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    owner_email: Mapped[str] = mapped_column(String(255), nullable=False)

    stripe_account_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True, index=True
    )
    stripe_account_status: Mapped[str] = mapped_column(
        String(20), default=PaymentAccountStatus.UNVERIFIED.value, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name={self.name}, account={self.stripe_account_id})>"


class TenantBillingSettingsRecord(Base):
    """Per-tenant processor product and price ids."""

    __tablename__ = "tenant_billing_settings"

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True
    )
    enrollment_product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    enrollment_price_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    audition_product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    audition_price_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
