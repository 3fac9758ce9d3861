"""Local ledger mirror service.

Keeps eventually consistent copies of processor invoices and payments for
reporting without live processor access, and records manual payments.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.core.errors import NotFoundError, PreconditionError, ValidationError
from studio_billing.modules.billing.stripe_client import (
    StripeClient,
    StripeInvoiceData,
    get_stripe_client,
)
from studio_billing.modules.ledger.models import (
    MANUAL_PAYMENT_METHODS,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentMethod,
)
from studio_billing.modules.ledger.repository import InvoiceRepository, PaymentRepository
from studio_billing.modules.ledger.schemas import ManualPaymentCreate
from studio_billing.modules.membership.models import MembershipPlan, Student
from studio_billing.modules.membership.repository import (
    MembershipPlanRepository,
    StudentRepository,
)
from studio_billing.modules.notification.service import NotificationService
from studio_billing.modules.tenant.repository import TenantRepository

logger = logging.getLogger(__name__)


def _to_major(amount: int) -> float:
    return round(amount / 100, 2)


def _duplicate_transaction(transaction_id: str) -> PreconditionError:
    return PreconditionError(
        f"A payment with transaction id '{transaction_id}' is already recorded",
        hint="Check the existing payment or use a different transaction id.",
    )


def invoice_number_for(invoice: StripeInvoiceData) -> str:
    """Processor invoice number, or a stable placeholder derived from its id."""
    return invoice.number or f"STRIPE-{invoice.id[:12].upper()}"


class LedgerService:
    """Service for the invoice and payment mirror."""

    def __init__(
        self,
        session: AsyncSession,
        stripe_client: Optional[StripeClient] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.session = session
        self.invoice_repo = InvoiceRepository(session)
        self.payment_repo = PaymentRepository(session)
        self.student_repo = StudentRepository(session)
        self.plan_repo = MembershipPlanRepository(session)
        self.tenant_repo = TenantRepository(session)
        self.stripe = stripe_client or get_stripe_client()
        self.notifications = notifications or NotificationService(session)

    # ==================== Processor Mirror ====================

    async def mirror_invoice(
        self,
        tenant_id: uuid.UUID,
        student: Student,
        plan: Optional[MembershipPlan],
        invoice: StripeInvoiceData,
        status: Optional[InvoiceStatus] = None,
    ) -> tuple[Invoice, Optional[Payment], bool]:
        """Upsert the local copy of a processor invoice and its payment.

        The invoice is keyed by its processor id and the payment by the
        payment intent id, so mirroring the same invoice twice leaves one
        row of each.

        Returns:
            tuple: (invoice row, payment row or None, whether the invoice was new)
        """
        items = [
            {
                "id": line.id,
                "description": line.description or "N/A",
                "quantity": line.quantity,
                "unit_price": round(line.unit_price, 2),
                "amount": _to_major(line.amount),
            }
            for line in invoice.lines
        ]
        status = status or InvoiceStatus.from_remote(invoice.status, invoice.paid)
        plan_fields = {
            "membership_plan_id": plan.id if plan else None,
            "membership_plan_name": plan.name if plan else None,
        }

        row, created = await self.invoice_repo.upsert_by_external_id(
            invoice.id,
            tenant_id=tenant_id,
            student_id=student.id,
            invoice_number=invoice_number_for(invoice),
            issue_date=invoice.created.date(),
            due_date=(invoice.due_date or invoice.created).date(),
            items=items,
            subtotal=_to_major(invoice.subtotal),
            tax_amount=_to_major(invoice.tax),
            total_amount=_to_major(invoice.total),
            amount_paid=_to_major(invoice.amount_paid),
            amount_due=_to_major(invoice.amount_due),
            status=status.value,
            notes=f"Stripe invoice {invoice.id}",
            **plan_fields,
        )
        logger.info(
            f"{'Created' if created else 'Updated'} local invoice {row.id} for Stripe invoice {invoice.id}"
        )

        payment = None
        if status == InvoiceStatus.PAID and invoice.payment_intent_id:
            method = PaymentMethod.SUBSCRIPTION if invoice.subscription_id else PaymentMethod.CARD
            payment, _ = await self.payment_repo.upsert_by_transaction_id(
                tenant_id,
                invoice.payment_intent_id,
                student_id=student.id,
                student_name=student.full_name,
                amount_paid=_to_major(invoice.amount_paid),
                payment_date=(invoice.paid_at or invoice.created).date(),
                payment_method=method.value,
                invoice_id=row.id,
                notes=f"Payment for Stripe invoice {invoice.id}",
                **plan_fields,
            )
        return row, payment, created

    # ==================== Manual Payments ====================

    async def record_manual_payment(
        self,
        tenant_id: uuid.UUID,
        data: ManualPaymentCreate,
        processed_by_user_id: Optional[uuid.UUID] = None,
    ) -> Payment:
        """Record a payment entered by an administrator.

        Raises:
            ValidationError: If the method is Subscription
            NotFoundError: If the student or plan does not exist for the tenant
            PreconditionError: If the transaction id is already recorded for the tenant
        """
        if data.payment_method not in MANUAL_PAYMENT_METHODS:
            raise ValidationError(
                f"Payment method '{data.payment_method.value}' cannot be recorded manually"
            )

        student = await self.student_repo.get_by_id(data.student_id, tenant_id)
        if not student:
            raise NotFoundError(f"Student {data.student_id} not found")

        plan = None
        if data.membership_plan_id:
            plan = await self.plan_repo.get_by_id(data.membership_plan_id, tenant_id)
            if not plan:
                raise NotFoundError(f"Membership plan {data.membership_plan_id} not found")

        if data.transaction_id and await self.payment_repo.get_by_transaction_id(
            tenant_id, data.transaction_id
        ):
            raise _duplicate_transaction(data.transaction_id)

        try:
            payment = await self.payment_repo.create(
                tenant_id=tenant_id,
                student_id=student.id,
                student_name=student.full_name,
                membership_plan_id=plan.id if plan else None,
                membership_plan_name=plan.name if plan else None,
                amount_paid=round(data.amount_paid, 2),
                payment_date=data.payment_date,
                payment_method=data.payment_method.value,
                transaction_id=data.transaction_id,
                notes=data.notes,
                processed_by_user_id=processed_by_user_id,
            )
        except IntegrityError as e:
            await self.session.rollback()
            if data.transaction_id:
                raise _duplicate_transaction(data.transaction_id) from e
            raise

        logger.info(f"Recorded manual payment {payment.id} for student {student.id}")

        await self.notifications.notify(
            tenant_id,
            title="Payment Received",
            message=(
                f"Received ${payment.amount_paid:,.2f} from {payment.student_name} "
                f"via {payment.payment_method}."
            ),
            severity="success",
            link="/billing",
        )
        return payment

    # ==================== Reads ====================

    async def _require_student(self, student_id: uuid.UUID, tenant_id: uuid.UUID) -> Student:
        student = await self.student_repo.get_by_id(student_id, tenant_id)
        if not student:
            raise NotFoundError(f"Student {student_id} not found")
        return student

    async def list_student_payments(
        self, tenant_id: uuid.UUID, student_id: uuid.UUID
    ) -> list[Payment]:
        await self._require_student(student_id, tenant_id)
        return await self.payment_repo.list_for_student(student_id, tenant_id)

    async def list_student_invoices(
        self, tenant_id: uuid.UUID, student_id: uuid.UUID
    ) -> list[Invoice]:
        await self._require_student(student_id, tenant_id)
        return await self.invoice_repo.list_for_student(student_id, tenant_id)

    async def get_invoice_pdf_url(self, tenant_id: uuid.UUID, invoice_id: uuid.UUID) -> str:
        """Resolve the processor-hosted PDF of a mirrored invoice.

        Raises:
            NotFoundError: If the invoice is unknown or the processor has no PDF for it
            PreconditionError: If the tenant has no payment account
        """
        invoice = await self.invoice_repo.get_by_id(invoice_id, tenant_id)
        if not invoice:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        if not invoice.stripe_invoice_id:
            raise NotFoundError(f"Invoice {invoice_id} has no processor invoice")

        tenant = await self.tenant_repo.get_by_id(tenant_id)
        if not tenant or not tenant.stripe_account_id:
            raise PreconditionError(
                f"Tenant {tenant_id} has no payment account",
                hint="Complete payment account setup first.",
            )

        remote = await self.stripe.retrieve_invoice(tenant.stripe_account_id, invoice.stripe_invoice_id)
        if remote is None or not remote.invoice_pdf:
            raise NotFoundError(f"No PDF available for invoice {invoice_id}")
        return remote.invoice_pdf
