"""Billing notification service.

Sends tenant notifications for payment and subscription events.
"""

import logging
import uuid
from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.modules.notification.service import NotificationService

logger = logging.getLogger(__name__)


class BillingNotificationService:
    """Service for sending billing-related notifications."""

    def __init__(self, session: AsyncSession, notification_service: Optional[NotificationService] = None):
        self.session = session
        self.notification_service = notification_service or NotificationService(session)

    async def notify_payment_succeeded(
        self, tenant_id: uuid.UUID, student_name: str, amount: float
    ) -> None:
        await self.notification_service.notify(
            tenant_id,
            title="Payment Succeeded",
            message=f"Received ${amount:,.2f} from {student_name}.",
            severity="success",
            link="/billing",
        )

    async def notify_payment_failed(
        self,
        tenant_id: uuid.UUID,
        student_name: Optional[str],
        amount: float,
        invoice_id: str,
        event_id: Optional[str] = None,
    ) -> None:
        who = student_name or "an unknown customer"
        await self.notification_service.notify(
            tenant_id,
            title="Payment Failed",
            message=f"A payment of ${amount:,.2f} from {who} failed (invoice {invoice_id}).",
            severity="error",
            link="/billing",
            dedupe_key=event_id,
        )

    async def notify_payment_overdue(
        self, tenant_id: uuid.UUID, student_name: str, status: str
    ) -> None:
        await self.notification_service.notify(
            tenant_id,
            title="Payment Overdue",
            message=f"The membership of {student_name} is {status.replace('_', ' ')}.",
            severity="warning",
            link="/billing",
        )

    async def notify_membership_changed(
        self,
        tenant_id: uuid.UUID,
        student_name: str,
        old_plan: Optional[str],
        new_plan: Optional[str],
    ) -> None:
        await self.notification_service.notify(
            tenant_id,
            title="Membership Changed",
            message=(
                f"{student_name} changed membership from {old_plan or 'no plan'} "
                f"to {new_plan or 'an unrecognised plan'}."
            ),
            severity="info",
            link="/students",
        )

    async def notify_subscription_canceled(
        self, tenant_id: uuid.UUID, student_name: str, expires_on: Optional[date]
    ) -> None:
        until = expires_on.isoformat() if expires_on else "the end of the current period"
        await self.notification_service.notify(
            tenant_id,
            title="Subscription Canceled",
            message=f"The membership of {student_name} will end on {until}.",
            severity="warning",
            link="/students",
        )

    async def notify_payment_method_updated(self, tenant_id: uuid.UUID, student_name: str) -> None:
        await self.notification_service.notify(
            tenant_id,
            title="Payment Method Updated",
            message=f"{student_name} updated their payment method.",
            severity="info",
            link="/students",
        )

    async def notify_audition_fee_paid(
        self,
        tenant_id: uuid.UUID,
        amount: float,
        email: Optional[str],
        event_id: Optional[str] = None,
    ) -> None:
        await self.notification_service.notify(
            tenant_id,
            title="Audition Fee Paid",
            message=f"Audition fee of ${amount:,.2f} received{f' from {email}' if email else ''}.",
            severity="success",
            link="/auditions",
            dedupe_key=event_id,
        )
