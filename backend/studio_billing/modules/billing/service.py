"""Customer and subscription synchronizer.

Creates billable customers for students on the tenant's connected account
and drives the subscription lifecycle: create, change plan, cancel at
period end, payment method updates and live refresh.

No local transaction spans a processor call. When the processor succeeds
and the local write fails, a ``ReconciliationGap`` is raised; the next
webhook delivery or reconciliation sweep repairs the mirror.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.core.config import settings
from studio_billing.core.errors import (
    ExternalServiceError,
    NotFoundError,
    PreconditionError,
    ReconciliationGap,
    ValidationError,
)
from studio_billing.core.metrics import record_reconciliation_gap
from studio_billing.modules.billing.notifications import BillingNotificationService
from studio_billing.modules.billing.schemas import (
    AuditionPaymentResponse,
    PaymentMethodUpdateResponse,
    SubscriptionDetails,
)
from studio_billing.modules.billing.stripe_client import (
    StripeClient,
    StripeCustomerData,
    StripeSubscriptionData,
    get_stripe_client,
)
from studio_billing.modules.billing.sync import SubscriptionStateSync
from studio_billing.modules.membership.models import Student
from studio_billing.modules.membership.repository import StudentRepository
from studio_billing.modules.tenant.models import Tenant
from studio_billing.modules.tenant.repository import TenantRepository
from studio_billing.modules.tenant.settings import BillingSettingsStore

logger = logging.getLogger(__name__)


def enrollment_fee_items(student: Student, enrollment_price_id: Optional[str]) -> list[dict]:
    """One-time items billed on a student's first subscription invoice.

    The enrollment fee is charged only when the student has never had a
    subscription and the tenant has an enrollment price configured.
    """
    if student.stripe_subscription_id or not enrollment_price_id:
        return []
    return [{"price": enrollment_price_id}]


class SubscriptionService:
    """Service for student customers and subscriptions."""

    def __init__(
        self,
        session: AsyncSession,
        stripe_client: Optional[StripeClient] = None,
        settings_store: Optional[BillingSettingsStore] = None,
        notifications: Optional[BillingNotificationService] = None,
    ):
        self.session = session
        self.stripe = stripe_client or get_stripe_client()
        self.settings_store = settings_store or BillingSettingsStore(session)
        self.notifications = notifications or BillingNotificationService(session)
        self.student_repo = StudentRepository(session)
        self.tenant_repo = TenantRepository(session)
        self.sync = SubscriptionStateSync(session, self.notifications)

    # ==================== Lookups ====================

    async def _require_account(self, tenant_id: uuid.UUID) -> Tenant:
        tenant = await self.tenant_repo.get_by_id(tenant_id)
        if not tenant:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        if not tenant.stripe_account_id:
            raise PreconditionError(
                f"Tenant {tenant_id} has no payment account",
                hint="Create the payment account and complete onboarding first.",
            )
        return tenant

    async def _require_student(self, student_id: uuid.UUID, tenant_id: uuid.UUID) -> Student:
        student = await self.student_repo.get_by_id(student_id, tenant_id)
        if not student:
            raise NotFoundError(f"Student {student_id} not found")
        return student

    async def _persist(self, operation: str, remote_id: str, write):
        """Run a local write that follows a successful processor call."""
        try:
            return await write()
        except SQLAlchemyError as e:
            await self.session.rollback()
            record_reconciliation_gap("local_write")
            logger.error(
                f"{operation}: processor object {remote_id} created but local write failed: {e}"
            )
            raise ReconciliationGap(
                f"{operation} succeeded remotely but could not be saved locally",
                kind="local_write",
                remote_id=remote_id,
            ) from e

    # ==================== Customers ====================

    async def find_or_create_customer(
        self,
        student_id: uuid.UUID,
        tenant_id: uuid.UUID,
        payment_method_id: Optional[str] = None,
    ) -> str:
        """Return the student's customer id on the tenant's account.

        A stored customer id is re-validated on the processor. If it cannot
        be retrieved for any reason a new customer is created and the stored
        id is overwritten.

        Raises:
            PreconditionError: If the tenant has no payment account
        """
        tenant = await self._require_account(tenant_id)
        account = tenant.stripe_account_id
        student = await self._require_student(student_id, tenant_id)

        if student.stripe_customer_id:
            try:
                customer = await self.stripe.retrieve_customer(account, student.stripe_customer_id)
            except ExternalServiceError as e:
                logger.warning(
                    f"Could not retrieve customer {student.stripe_customer_id} "
                    f"for student {student.id}: {e.message}"
                )
                customer = None

            if customer is not None:
                if payment_method_id:
                    await self._ensure_default_payment_method(account, customer, payment_method_id)
                return customer.id

            logger.warning(
                f"Customer {student.stripe_customer_id} for student {student.id} is stale, recreating"
            )

        customer = await self.stripe.create_customer(
            account,
            email=student.email,
            name=student.full_name,
            metadata={"student_id": str(student.id), "tenant_id": str(tenant_id)},
            payment_method_id=payment_method_id,
        )
        await self._persist(
            "customer.create",
            customer.id,
            lambda: self.student_repo.update(student.id, stripe_customer_id=customer.id),
        )
        logger.info(f"Created customer {customer.id} for student {student.id}")
        return customer.id

    async def _ensure_default_payment_method(
        self, account: str, customer: StripeCustomerData, payment_method_id: str
    ) -> bool:
        """Attach a payment method and make it the default.

        Returns False without calling the processor again when it already
        is the default.
        """
        if customer.default_payment_method == payment_method_id:
            return False

        payment_method = await self.stripe.retrieve_payment_method(account, payment_method_id)
        if payment_method is None:
            raise ValidationError(f"Payment method {payment_method_id} not found")
        if payment_method.customer_id != customer.id:
            await self.stripe.attach_payment_method(account, payment_method_id, customer.id)
        await self.stripe.set_default_payment_method(account, customer.id, payment_method_id)
        return True

    # ==================== Subscription Lifecycle ====================

    async def create_subscription(
        self,
        student_id: uuid.UUID,
        price_id: str,
        payment_method_id: Optional[str],
        tenant_id: uuid.UUID,
    ) -> SubscriptionDetails:
        """Subscribe a student to a plan price on the tenant's account.

        The tenant's enrollment fee, when configured, is added to the first
        invoice in the same creation call for students without a previous
        subscription.

        Raises:
            ValidationError: If no price id is given
            PreconditionError: If the tenant has no payment account
            ExternalServiceError: If the processor rejects the subscription
        """
        if not price_id:
            raise ValidationError("A price id is required to create a subscription")

        tenant = await self._require_account(tenant_id)
        account = tenant.stripe_account_id
        customer_id = await self.find_or_create_customer(student_id, tenant_id, payment_method_id)
        student = await self._require_student(student_id, tenant_id)

        billing_settings = await self.settings_store.get_settings(tenant_id)
        add_invoice_items = enrollment_fee_items(student, billing_settings.enrollment_price_id)
        if add_invoice_items:
            logger.info(f"Adding enrollment fee to first subscription of student {student.id}")

        subscription = await self.stripe.create_subscription(
            account,
            customer_id=customer_id,
            price_id=price_id,
            add_invoice_items=add_invoice_items or None,
            application_fee_percent=settings.STRIPE_PLATFORM_FEE_PERCENT,
            metadata={"student_id": str(student.id), "tenant_id": str(tenant_id)},
        )
        logger.info(
            f"Created subscription {subscription.id} ({subscription.status}) for student {student.id}"
        )

        await self._persist(
            "subscription.create",
            subscription.id,
            lambda: self.sync.apply(student, subscription),
        )
        return SubscriptionDetails.from_data(subscription)

    async def _require_subscription_owner(
        self, subscription_id: str, tenant_id: uuid.UUID
    ) -> Student:
        student = await self.student_repo.find_by_subscription_id(subscription_id)
        if not student or student.tenant_id != tenant_id:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return student

    async def update_subscription(
        self, subscription_id: str, new_price_id: str, tenant_id: uuid.UUID
    ) -> SubscriptionDetails:
        """Move a subscription to another price with proration.

        Any pending cancellation is cleared. Calling it again with the
        current price is a no-op on the processor. The tenant is notified
        only when the student moves to a different known plan.
        """
        if not new_price_id:
            raise ValidationError("A new price id is required")

        tenant = await self._require_account(tenant_id)
        account = tenant.stripe_account_id
        student = await self._require_subscription_owner(subscription_id, tenant_id)

        current = await self.stripe.retrieve_subscription(account, subscription_id)
        if current is None:
            raise NotFoundError(f"Subscription {subscription_id} not found on the processor")
        item = current.first_item
        if item is None:
            raise PreconditionError(
                f"Subscription {subscription_id} has no items",
                hint="Cancel the subscription and create a new one.",
            )

        old_plan = student.membership_plan_name
        if current.price_id == new_price_id and not current.cancel_at_period_end:
            updated = current
        else:
            updated = await self.stripe.change_subscription_price(
                account, subscription_id, item.id, new_price_id
            )
            logger.info(f"Changed subscription {subscription_id} to price {new_price_id}")

        student = await self._persist(
            "subscription.modify",
            subscription_id,
            lambda: self.sync.apply(student, updated),
        )
        new_plan = student.membership_plan_name
        if new_plan and new_plan != old_plan:
            await self.notifications.notify_membership_changed(
                tenant_id, student.full_name, old_plan, new_plan
            )
        return SubscriptionDetails.from_data(updated)

    async def cancel_subscription(
        self, student_id: uuid.UUID, subscription_id: str, tenant_id: uuid.UUID
    ) -> SubscriptionDetails:
        """Cancel at the end of the paid period.

        The local status is left as is; it becomes ``canceled`` only when the
        processor reports the subscription ended.
        """
        tenant = await self._require_account(tenant_id)
        student = await self._require_student(student_id, tenant_id)
        if student.stripe_subscription_id != subscription_id:
            raise ValidationError(
                f"Subscription {subscription_id} does not belong to student {student_id}"
            )

        updated = await self.stripe.cancel_at_period_end(tenant.stripe_account_id, subscription_id)
        expires_on = updated.current_period_end.date() if updated.current_period_end else None

        fields = {"cancel_at_period_end": True}
        if expires_on:
            fields["membership_renewal_date"] = expires_on
        await self._persist(
            "subscription.cancel",
            subscription_id,
            lambda: self.student_repo.update(student.id, **fields),
        )
        logger.info(f"Subscription {subscription_id} set to cancel on {expires_on}")

        await self.notifications.notify_subscription_canceled(
            tenant_id, student.full_name, expires_on
        )
        return SubscriptionDetails.from_data(updated)

    async def update_payment_method(
        self, student_id: uuid.UUID, payment_method_id: str, tenant_id: uuid.UUID
    ) -> PaymentMethodUpdateResponse:
        """Attach a payment method and make it the student's default.

        Repeated calls with the same method are no-ops.

        Raises:
            PreconditionError: If the student has no valid customer yet
        """
        if not payment_method_id:
            raise ValidationError("A payment method id is required")

        tenant = await self._require_account(tenant_id)
        account = tenant.stripe_account_id
        student = await self._require_student(student_id, tenant_id)
        if not student.stripe_customer_id:
            raise PreconditionError(
                f"Student {student_id} has no billing customer",
                hint="Create a subscription for the student first.",
            )

        customer = await self.stripe.retrieve_customer(account, student.stripe_customer_id)
        if customer is None:
            raise PreconditionError(
                f"Customer {student.stripe_customer_id} no longer exists",
                hint="Create a new subscription to re-register the student.",
            )

        changed = await self._ensure_default_payment_method(account, customer, payment_method_id)
        if changed:
            await self.notifications.notify_payment_method_updated(tenant_id, student.full_name)
        return PaymentMethodUpdateResponse(
            customer_id=customer.id,
            payment_method_id=payment_method_id,
            changed=changed,
        )

    async def get_student_subscription(
        self, student_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> Optional[SubscriptionDetails]:
        """Re-pull a student's subscription and refresh the local mirror.

        When the processor no longer has the subscription the local id,
        status and renewal date are cleared and None is returned.
        """
        student = await self._require_student(student_id, tenant_id)
        if not student.stripe_subscription_id:
            return None

        tenant = await self._require_account(tenant_id)
        subscription_id = student.stripe_subscription_id
        remote: Optional[StripeSubscriptionData] = await self.stripe.retrieve_subscription(
            tenant.stripe_account_id, subscription_id
        )
        if remote is None:
            record_reconciliation_gap("subscription")
            logger.warning(
                f"Subscription {subscription_id} of student {student.id} is gone, clearing it"
            )
            await self._persist(
                "subscription.refresh", subscription_id, lambda: self.sync.clear(student)
            )
            return None

        await self._persist(
            "subscription.refresh", subscription_id, lambda: self.sync.apply(student, remote)
        )
        return SubscriptionDetails.from_data(remote)

    # ==================== Audition Fee ====================

    async def create_audition_payment_intent(
        self, tenant_id: uuid.UUID, name: str, email: str
    ) -> AuditionPaymentResponse:
        """Start a one-time audition fee payment for a prospect.

        Raises:
            PreconditionError: If the tenant has no audition product and price configured
        """
        tenant = await self._require_account(tenant_id)
        account = tenant.stripe_account_id

        billing_settings = await self.settings_store.get_settings(tenant_id)
        if not billing_settings.has_audition_fee:
            raise PreconditionError(
                "Audition fee is not configured",
                hint="Set the audition product and price ids in billing settings.",
            )
        price = await self.stripe.retrieve_price(account, billing_settings.audition_price_id)
        if price is None or price.unit_amount is None:
            raise PreconditionError(
                f"Audition price {billing_settings.audition_price_id} is not usable",
                hint="Configure a fixed-amount audition price.",
            )

        customer = await self.stripe.create_customer(
            account,
            email=email,
            name=name,
            metadata={"tenant_id": str(tenant_id), "prospect": "audition"},
        )
        intent = await self.stripe.create_payment_intent(
            account,
            amount=price.unit_amount,
            currency=price.currency or settings.DEFAULT_CURRENCY,
            customer_id=customer.id,
            metadata={
                "product_id": billing_settings.audition_product_id,
                "tenant_id": str(tenant_id),
            },
            description=f"Audition fee for {name}",
        )
        logger.info(f"Created audition payment intent {intent.id} for {email}")
        return AuditionPaymentResponse(
            payment_intent_id=intent.id,
            client_secret=intent.client_secret or "",
            amount=round(intent.amount / 100, 2),
            currency=intent.currency,
        )
