"""Webhook event processor.

Verifies the signature of each inbound processor event before anything
else, then dispatches by event type. Every handler is safe to run twice on
the same event: mirrors are upserted by natural key and "already in the
target state" counts as success. Notifications raised by an event are
keyed by its id.

Events referencing entities unknown locally raise ``ReconciliationGap``;
the processor logs and discards them and still acknowledges the event.
"""

import logging
import uuid
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.core.errors import ReconciliationGap
from studio_billing.core.logging import bind_tenant, set_correlation_id
from studio_billing.core.metrics import record_reconciliation_gap, record_webhook_event
from studio_billing.core.tracing import create_span
from studio_billing.modules.billing.notifications import BillingNotificationService
from studio_billing.modules.billing.schemas import WebhookResult
from studio_billing.modules.billing.stripe_client import (
    StripeClient,
    StripeEventData,
    account_from_object,
    get_stripe_client,
    invoice_from_object,
    payment_intent_from_object,
    subscription_from_object,
)
from studio_billing.modules.billing.sync import SubscriptionStateSync
from studio_billing.modules.ledger.models import InvoiceStatus
from studio_billing.modules.ledger.service import LedgerService
from studio_billing.modules.membership.repository import (
    MembershipPlanRepository,
    StudentRepository,
)
from studio_billing.modules.notification.service import NotificationService
from studio_billing.modules.tenant.models import Tenant
from studio_billing.modules.tenant.repository import TenantRepository
from studio_billing.modules.tenant.service import AccountService
from studio_billing.modules.tenant.settings import BillingSettingsStore

logger = logging.getLogger(__name__)

PROCESSED = "processed"
DISCARDED = "discarded"
IGNORED = "ignored"


class WebhookProcessor:
    """Verifies and applies processor webhook events."""

    def __init__(
        self,
        session: AsyncSession,
        stripe_client: Optional[StripeClient] = None,
        settings_store: Optional[BillingSettingsStore] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.session = session
        self.stripe = stripe_client or get_stripe_client()
        self.settings_store = settings_store or BillingSettingsStore(session)
        notification_service = notifications or NotificationService(session)
        self.notifications = BillingNotificationService(session, notification_service)
        self.tenant_repo = TenantRepository(session)
        self.student_repo = StudentRepository(session)
        self.plan_repo = MembershipPlanRepository(session)
        self.sync = SubscriptionStateSync(session, self.notifications)
        self.ledger = LedgerService(session, self.stripe, notification_service)
        self.accounts = AccountService(session, self.stripe, notification_service)

        self.handlers: dict[str, Callable[[StripeEventData], Awaitable[str]]] = {
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_changed,
            "invoice.payment_succeeded": self._handle_invoice_payment_succeeded,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
            "payment_intent.succeeded": self._handle_payment_intent_succeeded,
            "account.updated": self._handle_account_updated,
            "account.application.authorized": self._handle_account_application_authorized,
            "account.external_account.created": self._handle_external_account_created,
        }

    def verify(self, payload: bytes, signature: Optional[str]) -> StripeEventData:
        """Check the signature and parse the event. Nothing is read or written.

        Raises:
            ValueError: If the signature is missing or invalid
            RuntimeError: If no webhook secret is configured
        """
        event = self.stripe.construct_webhook_event(payload, signature)
        set_correlation_id(event.id)
        return event

    async def process(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify and dispatch one event."""
        return await self.dispatch(self.verify(payload, signature))

    async def dispatch(self, event: StripeEventData) -> WebhookResult:
        """Apply an already verified event."""
        handler = self.handlers.get(event.type)
        if handler is None:
            logger.debug(f"Ignoring unhandled event type {event.type}")
            record_webhook_event(event.type, IGNORED)
            return WebhookResult(event_id=event.id, event_type=event.type, outcome=IGNORED)

        attributes = {"stripe.event_id": event.id, "stripe.event_type": event.type}
        if event.account:
            attributes["stripe.account"] = event.account

        with create_span("webhook.dispatch", attributes):
            try:
                outcome = await handler(event)
            except ReconciliationGap as gap:
                record_reconciliation_gap(gap.kind)
                logger.warning(
                    f"Discarding {event.type} {event.id}: {gap.message}",
                    extra={"gap_kind": gap.kind, "remote_id": gap.remote_id},
                )
                outcome = DISCARDED
            except Exception:
                record_webhook_event(event.type, "error")
                raise

        record_webhook_event(event.type, outcome)
        logger.info(f"Webhook {event.type} {event.id}: {outcome}")
        return WebhookResult(event_id=event.id, event_type=event.type, outcome=outcome)

    # ==================== Tenant Resolution ====================

    async def _resolve_tenant(
        self, account_id: Optional[str], metadata: Optional[dict] = None
    ) -> Optional[Tenant]:
        """Tenant from the originating connected account, else from metadata."""
        if account_id:
            tenant = await self.tenant_repo.get_by_account_id(account_id)
            if tenant:
                bind_tenant(tenant.id)
                return tenant
        tenant_id = (metadata or {}).get("tenant_id")
        if tenant_id:
            try:
                tenant = await self.tenant_repo.get_by_id(uuid.UUID(tenant_id))
            except ValueError:
                logger.warning(f"Malformed tenant_id '{tenant_id}' in event metadata")
                return None
            if tenant:
                bind_tenant(tenant.id)
            return tenant
        return None

    # ==================== Subscriptions ====================

    async def _handle_subscription_changed(self, event: StripeEventData) -> str:
        subscription = subscription_from_object(event.data_object)
        student = await self.student_repo.find_by_subscription_id(subscription.id)
        if student is None:
            raise ReconciliationGap(
                f"No student holds subscription {subscription.id}",
                kind="subscription",
                remote_id=subscription.id,
            )

        if event.account:
            tenant = await self.tenant_repo.get_by_id(student.tenant_id)
            if tenant and tenant.stripe_account_id and tenant.stripe_account_id != event.account:
                raise ReconciliationGap(
                    f"Subscription {subscription.id} arrived from account {event.account}, "
                    f"student {student.id} belongs to {tenant.stripe_account_id}",
                    kind="tenant",
                    remote_id=subscription.id,
                )

        await self.sync.apply(student, subscription)
        return PROCESSED

    # ==================== Invoices ====================

    async def _handle_invoice_payment_succeeded(self, event: StripeEventData) -> str:
        invoice = invoice_from_object(event.data_object)
        tenant = await self._resolve_tenant(event.account, invoice.metadata)
        if tenant is None:
            raise ReconciliationGap(
                f"No tenant for invoice {invoice.id}", kind="tenant", remote_id=invoice.id
            )

        billing_settings = await self.settings_store.get_settings(tenant.id)
        audition_product = billing_settings.audition_product_id
        if audition_product and (
            audition_product in invoice.product_ids
            or invoice.metadata.get("product_id") == audition_product
        ):
            logger.info(f"Audition fee invoice {invoice.id} paid for tenant {tenant.id}")
            return PROCESSED

        if not invoice.customer_id:
            raise ReconciliationGap(
                f"Invoice {invoice.id} has no customer", kind="customer", remote_id=invoice.id
            )
        student = await self.student_repo.find_by_customer_id(invoice.customer_id, tenant.id)
        if student is None:
            raise ReconciliationGap(
                f"No student for customer {invoice.customer_id}",
                kind="student",
                remote_id=invoice.customer_id,
            )

        plan = None
        if invoice.subscription_id:
            price_id = next(
                (
                    line.price_id
                    for line in invoice.lines
                    if line.price_id and line.price_id != billing_settings.enrollment_price_id
                ),
                None,
            )
            plan = await self.plan_repo.find_by_external_price_id(tenant.id, price_id)
            if plan is None:
                logger.warning(f"No local plan for price {price_id} on invoice {invoice.id}")

        _, payment, created = await self.ledger.mirror_invoice(
            tenant.id, student, plan, invoice, status=InvoiceStatus.PAID
        )
        if payment is not None and created:
            await self.notifications.notify_payment_succeeded(
                tenant.id, student.full_name, payment.amount_paid
            )

        if invoice.subscription_id and student.stripe_subscription_id in (
            None,
            invoice.subscription_id,
        ):
            remote = await self.stripe.retrieve_subscription(
                tenant.stripe_account_id, invoice.subscription_id
            )
            if remote is not None:
                await self.sync.apply(student, remote)
        return PROCESSED

    async def _handle_invoice_payment_failed(self, event: StripeEventData) -> str:
        """Record the failure. Subscription status changes arrive as subscription events."""
        invoice = invoice_from_object(event.data_object)
        tenant = await self._resolve_tenant(event.account, invoice.metadata)
        if tenant is None:
            raise ReconciliationGap(
                f"No tenant for failed invoice {invoice.id}", kind="tenant", remote_id=invoice.id
            )

        student = None
        if invoice.customer_id:
            student = await self.student_repo.find_by_customer_id(invoice.customer_id, tenant.id)
        logger.warning(
            f"Payment failed for invoice {invoice.id} of customer {invoice.customer_id}",
            extra={"tenant_id": str(tenant.id), "invoice_id": invoice.id},
        )
        await self.notifications.notify_payment_failed(
            tenant.id,
            student.full_name if student else None,
            invoice.amount_due / 100,
            invoice.id,
            event_id=event.id,
        )
        return PROCESSED

    async def _handle_payment_intent_succeeded(self, event: StripeEventData) -> str:
        """Audition fees are paid with a bare payment intent."""
        intent = payment_intent_from_object(event.data_object)
        tenant = await self._resolve_tenant(event.account, intent.metadata)
        if tenant is None:
            return IGNORED
        billing_settings = await self.settings_store.get_settings(tenant.id)
        product_id = intent.metadata.get("product_id")
        if not product_id or product_id != billing_settings.audition_product_id:
            return IGNORED

        logger.info(f"Audition fee {intent.id} paid for tenant {tenant.id}")
        await self.notifications.notify_audition_fee_paid(
            tenant.id, intent.amount / 100, intent.metadata.get("email"), event_id=event.id
        )
        return PROCESSED

    # ==================== Connected Accounts ====================

    async def _handle_account_updated(self, event: StripeEventData) -> str:
        account = account_from_object(event.data_object)
        status = await self.accounts.record_account_update(account, event.account)
        return PROCESSED if status is not None else DISCARDED

    async def _handle_account_application_authorized(self, event: StripeEventData) -> str:
        tenant = await self._resolve_tenant(event.account)
        if tenant is None:
            logger.warning(f"Application authorized on unknown account {event.account}")
            return DISCARDED
        logger.info(f"Platform authorized on account {event.account} of tenant {tenant.id}")
        return PROCESSED

    async def _handle_external_account_created(self, event: StripeEventData) -> str:
        account_id = event.account or event.data_object.get("account")
        tenant = await self._resolve_tenant(account_id)
        if tenant is None:
            logger.warning(f"External account added to unknown account {account_id}")
            return DISCARDED
        logger.info(
            f"Payout destination {event.data_object.get('id')} added for tenant {tenant.id}"
        )
        return PROCESSED
