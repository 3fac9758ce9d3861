"""Repositories for the local invoice and payment mirror.

Webhook-derived rows are written through the ``upsert_*`` methods keyed by
their natural keys, so a redelivered event updates the existing row
instead of inserting a second one.
"""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.modules.ledger.models import Invoice, Payment


class InvoiceRepository:
    """Repository for mirrored invoices."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, invoice_id: uuid.UUID, tenant_id: uuid.UUID) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def get_by_external_id(self, stripe_invoice_id: str) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.stripe_invoice_id == stripe_invoice_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert_by_external_id(
        self, stripe_invoice_id: str, **fields
    ) -> tuple[Invoice, bool]:
        """Insert or update the invoice mirrored from a processor invoice.

        Returns:
            tuple[Invoice, bool]: The row and whether it was newly created
        """
        invoice = await self.get_by_external_id(stripe_invoice_id)
        created = invoice is None
        if created:
            invoice = Invoice(stripe_invoice_id=stripe_invoice_id, **fields)
            self.session.add(invoice)
        else:
            _apply(invoice, fields)

        try:
            await self.session.commit()
        except IntegrityError:
            # A concurrent delivery of the same event inserted it first
            await self.session.rollback()
            invoice = await self.get_by_external_id(stripe_invoice_id)
            if invoice is None:
                raise
            _apply(invoice, fields)
            await self.session.commit()
            created = False

        await self.session.refresh(invoice)
        return invoice, created

    async def list_for_student(
        self, student_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> list[Invoice]:
        """Newest first."""
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.student_id == student_id, Invoice.tenant_id == tenant_id)
            .order_by(Invoice.issue_date.desc(), Invoice.created_at.desc())
        )
        return list(result.scalars().all())


class PaymentRepository:
    """Repository for recorded payments."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Payment:
        payment = Payment(**kwargs)
        self.session.add(payment)
        await self.session.commit()
        await self.session.refresh(payment)
        return payment

    async def get_by_transaction_id(
        self, tenant_id: uuid.UUID, transaction_id: str
    ) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.tenant_id == tenant_id, Payment.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert_by_transaction_id(
        self, tenant_id: uuid.UUID, transaction_id: str, **fields
    ) -> tuple[Payment, bool]:
        """Insert or update the payment derived from a paid processor invoice."""
        payment = await self.get_by_transaction_id(tenant_id, transaction_id)
        created = payment is None
        if created:
            payment = Payment(tenant_id=tenant_id, transaction_id=transaction_id, **fields)
            self.session.add(payment)
        else:
            _apply(payment, fields)

        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            payment = await self.get_by_transaction_id(tenant_id, transaction_id)
            if payment is None:
                raise
            _apply(payment, fields)
            await self.session.commit()
            created = False

        await self.session.refresh(payment)
        return payment, created

    async def list_for_student(
        self, student_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> list[Payment]:
        """Newest first."""
        result = await self.session.execute(
            select(Payment)
            .where(Payment.student_id == student_id, Payment.tenant_id == tenant_id)
            .order_by(Payment.payment_date.desc(), Payment.created_at.desc())
        )
        return list(result.scalars().all())


def _apply(row, fields: dict) -> None:
    for key, value in fields.items():
        if hasattr(row, key):
            setattr(row, key, value)
