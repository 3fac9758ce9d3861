"""Tenant-scoped notification collaborator.

Billing code emits notifications through ``NotificationService.notify``.
A failure to notify is logged and never aborts the billing operation
that triggered it.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.modules.notification.models import Notification
from studio_billing.modules.notification.repository import NotificationRepository
from studio_billing.modules.notification.schemas import (
    NotificationResponse,
    NotificationSendRequest,
)

logger = logging.getLogger(__name__)


class NotificationService:
    """Persists and lists tenant notifications."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.repository = NotificationRepository(session)

    async def send_notification(self, request: NotificationSendRequest) -> Optional[Notification]:
        """Store a notification. Returns None if it could not be stored.

        A request carrying a ``dedupe_key`` already stored for the tenant
        returns the existing row instead of adding another.
        """
        if request.dedupe_key:
            existing = await self.repository.find_by_dedupe_key(
                request.tenant_id, request.dedupe_key
            )
            if existing:
                logger.debug(
                    f"Notification '{request.title}' for {request.dedupe_key} already sent"
                )
                return existing

        try:
            notification = await self.repository.create(
                tenant_id=request.tenant_id,
                title=request.title,
                message=request.message,
                severity=request.severity.value,
                link=request.link,
                dedupe_key=request.dedupe_key,
            )
        except Exception as e:
            await self.session.rollback()
            if request.dedupe_key and isinstance(e, IntegrityError):
                # A concurrent delivery of the same event stored it first
                return await self.repository.find_by_dedupe_key(
                    request.tenant_id, request.dedupe_key
                )
            logger.error(
                f"Failed to store notification '{request.title}' for tenant {request.tenant_id}: {e}"
            )
            return None

        logger.info(
            f"Notification '{request.title}' sent to tenant {request.tenant_id}",
            extra={"tenant_id": str(request.tenant_id), "severity": request.severity.value},
        )
        return notification

    async def notify(
        self,
        tenant_id: uuid.UUID,
        title: str,
        message: str,
        severity: str = "info",
        link: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> Optional[Notification]:
        """Emit a tenant-scoped notification."""
        return await self.send_notification(
            NotificationSendRequest(
                tenant_id=tenant_id,
                title=title,
                message=message,
                severity=severity,
                link=link,
                dedupe_key=dedupe_key,
            )
        )

    async def list_notifications(
        self, tenant_id: uuid.UUID, unread_only: bool = False, limit: int = 50
    ) -> list[NotificationResponse]:
        rows = await self.repository.list_for_tenant(tenant_id, unread_only, limit)
        return [NotificationResponse.model_validate(row) for row in rows]
