"""Repository for tenant database operations."""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.modules.tenant.models import Tenant, TenantBillingSettingsRecord


class TenantRepository:
    """Repository for tenant operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, tenant_id: uuid.UUID) -> Optional[Tenant]:
        result = await self.session.execute(select(Tenant).where(Tenant.id == tenant_id))
        return result.scalar_one_or_none()

    async def get_by_account_id(self, account_id: str) -> Optional[Tenant]:
        """Get the tenant owning a connected account."""
        result = await self.session.execute(
            select(Tenant).where(Tenant.stripe_account_id == account_id)
        )
        return result.scalar_one_or_none()

    async def list_active(self) -> list[Tenant]:
        result = await self.session.execute(
            select(Tenant).where(Tenant.is_active == True).order_by(Tenant.created_at)  # noqa: E712
        )
        return list(result.scalars().all())

    async def create(self, **kwargs) -> Tenant:
        tenant = Tenant(**kwargs)
        self.session.add(tenant)
        await self.session.commit()
        await self.session.refresh(tenant)
        return tenant

    async def update(self, tenant_id: uuid.UUID, **kwargs) -> Optional[Tenant]:
        """Re-read the tenant and apply the given fields."""
        tenant = await self.get_by_id(tenant_id)
        if not tenant:
            return None
        for key, value in kwargs.items():
            if hasattr(tenant, key):
                setattr(tenant, key, value)
        await self.session.commit()
        await self.session.refresh(tenant)
        return tenant


class BillingSettingsRepository:
    """Repository for per-tenant billing settings rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, tenant_id: uuid.UUID) -> Optional[TenantBillingSettingsRecord]:
        result = await self.session.execute(
            select(TenantBillingSettingsRecord).where(
                TenantBillingSettingsRecord.tenant_id == tenant_id
            )
        )
        return result.scalar_one_or_none()

    async def upsert(self, tenant_id: uuid.UUID, **kwargs) -> TenantBillingSettingsRecord:
        record = await self.get(tenant_id)
        if record is None:
            record = TenantBillingSettingsRecord(tenant_id=tenant_id)
            self.session.add(record)
        for key, value in kwargs.items():
            if hasattr(record, key):
                setattr(record, key, value)
        await self.session.commit()
        await self.session.refresh(record)
        return record
