"""Repository for tenant notifications."""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.modules.notification.models import Notification


class NotificationRepository:
    """Repository for notification rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Notification:
        notification = Notification(**kwargs)
        self.session.add(notification)
        await self.session.commit()
        await self.session.refresh(notification)
        return notification

    async def find_by_dedupe_key(self, tenant_id: uuid.UUID, dedupe_key: str) -> Optional[Notification]:
        result = await self.session.execute(
            select(Notification).where(
                Notification.tenant_id == tenant_id,
                Notification.dedupe_key == dedupe_key,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_tenant(
        self, tenant_id: uuid.UUID, unread_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        """Newest first."""
        query = select(Notification).where(Notification.tenant_id == tenant_id)
        if unread_only:
            query = query.where(Notification.is_read == False)  # noqa: E712
        query = query.order_by(Notification.created_at.desc()).limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())
