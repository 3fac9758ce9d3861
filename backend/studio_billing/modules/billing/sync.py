"""Subscription state synchronization.

Both the subscription synchronizer and the webhook processor write remote
subscription state into the student record through ``SubscriptionStateSync``
so the mapping lives in one place. Every write re-reads the student first;
whichever caller arrives last wins.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.core.metrics import record_reconciliation_gap
from studio_billing.modules.billing.notifications import BillingNotificationService
from studio_billing.modules.billing.stripe_client import StripeSubscriptionData
from studio_billing.modules.membership.models import Student, SubscriptionStatus
from studio_billing.modules.membership.repository import (
    MembershipPlanRepository,
    StudentRepository,
)

logger = logging.getLogger(__name__)

OVERDUE_STATUSES = (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID)


class SubscriptionStateSync:
    """Maps a processor subscription onto a student's membership fields."""

    def __init__(
        self,
        session: AsyncSession,
        notifications: Optional[BillingNotificationService] = None,
    ):
        self.session = session
        self.student_repo = StudentRepository(session)
        self.plan_repo = MembershipPlanRepository(session)
        self.notifications = notifications or BillingNotificationService(session)

    async def apply(
        self,
        student: Student,
        subscription: StripeSubscriptionData,
        notify: bool = True,
    ) -> Student:
        """Write remote status, plan and billing period to the student.

        Plan fields change only when the remote price matches a local plan
        of the student's tenant; an unmatched price is logged and the
        current plan is kept.
        """
        status = SubscriptionStatus.parse(subscription.status)
        if status is None:
            logger.warning(
                f"Unknown subscription status '{subscription.status}' on {subscription.id}"
            )

        fields = {
            "stripe_subscription_id": subscription.id,
            "subscription_status": status.value if status else None,
            "cancel_at_period_end": subscription.cancel_at_period_end,
        }
        if subscription.customer_id:
            fields["stripe_customer_id"] = subscription.customer_id
        if subscription.current_period_end:
            fields["membership_renewal_date"] = subscription.current_period_end.date()
        if subscription.current_period_start:
            fields["membership_start_date"] = subscription.current_period_start.date()

        price_id = subscription.price_id
        plan = await self.plan_repo.find_by_external_price_id(student.tenant_id, price_id)
        if plan is not None:
            fields["membership_plan_id"] = plan.id
            fields["membership_plan_name"] = plan.name
        else:
            record_reconciliation_gap("plan")
            logger.warning(
                f"No local plan for price {price_id} on subscription {subscription.id}; "
                f"keeping plan '{student.membership_plan_name}' for student {student.id}"
            )

        previous_status = student.subscription_status
        updated = await self.student_repo.update(student.id, **fields)
        if updated is None:
            logger.warning(f"Student {student.id} disappeared while syncing {subscription.id}")
            return student

        if (
            notify
            and status in OVERDUE_STATUSES
            and previous_status != status.value
        ):
            await self.notifications.notify_payment_overdue(
                updated.tenant_id, updated.full_name, status.value
            )
        return updated

    async def clear(self, student: Student) -> Optional[Student]:
        """Drop a subscription the processor no longer knows about."""
        return await self.student_repo.update(
            student.id,
            stripe_subscription_id=None,
            subscription_status=None,
            membership_renewal_date=None,
            cancel_at_period_end=False,
        )
