"""Tenant-keyed billing configuration store.

Enrollment and audition product/price ids live per tenant in
``tenant_billing_settings``. Fields a tenant has not configured fall back,
one by one, to the process-wide defaults from ``core.config``.
"""

import uuid
from dataclasses import dataclass, replace
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.core.config import settings
from studio_billing.modules.tenant.repository import BillingSettingsRepository

SETTINGS_FIELDS = (
    "enrollment_product_id",
    "enrollment_price_id",
    "audition_product_id",
    "audition_price_id",
)


@dataclass(frozen=True)
class TenantBillingSettings:
    """Resolved billing settings for one tenant."""
    tenant_id: Optional[uuid.UUID] = None
    enrollment_product_id: Optional[str] = None
    enrollment_price_id: Optional[str] = None
    audition_product_id: Optional[str] = None
    audition_price_id: Optional[str] = None

    @property
    def has_enrollment_fee(self) -> bool:
        return bool(self.enrollment_price_id)

    @property
    def has_audition_fee(self) -> bool:
        return bool(self.audition_price_id and self.audition_product_id)


def default_billing_settings() -> TenantBillingSettings:
    """Process-wide defaults from the environment."""
    return TenantBillingSettings(
        enrollment_product_id=settings.STRIPE_ENROLLMENT_PRODUCT_ID or None,
        enrollment_price_id=settings.STRIPE_ENROLLMENT_PRICE_ID or None,
        audition_product_id=settings.STRIPE_AUDITION_PRODUCT_ID or None,
        audition_price_id=settings.STRIPE_AUDITION_PRICE_ID or None,
    )


class BillingSettingsStore:
    """Reads and writes per-tenant billing settings."""

    def __init__(
        self,
        session: AsyncSession,
        defaults: Optional[TenantBillingSettings] = None,
    ):
        self.session = session
        self.repository = BillingSettingsRepository(session)
        self.defaults = defaults if defaults is not None else default_billing_settings()

    async def get_settings(self, tenant_id: uuid.UUID) -> TenantBillingSettings:
        record = await self.repository.get(tenant_id)
        values = {}
        for name in SETTINGS_FIELDS:
            stored = getattr(record, name) if record is not None else None
            values[name] = stored or getattr(self.defaults, name)
        return replace(self.defaults, tenant_id=tenant_id, **values)

    async def update_settings(self, tenant_id: uuid.UUID, **fields) -> TenantBillingSettings:
        """Store the given fields; empty strings clear a field back to the default."""
        updates = {
            name: (fields[name] or None) for name in SETTINGS_FIELDS if name in fields
        }
        await self.repository.upsert(tenant_id, **updates)
        return await self.get_settings(tenant_id)
