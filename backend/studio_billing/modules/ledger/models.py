"""Local ledger mirror: invoices and payments.

Subscription invoices are created only from processor events and are keyed
by ``stripe_invoice_id``; payments derived from them are keyed by
``transaction_id`` within the tenant.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from studio_billing.core.database import Base


class InvoiceStatus(str, Enum):
    """Local invoice status values."""
    DRAFT = "Draft"
    SENT = "Sent"
    PAID = "Paid"
    OVERDUE = "Overdue"
    VOID = "Void"
    UNCOLLECTIBLE = "Uncollectible"

    @classmethod
    def from_remote(cls, status: Optional[str], paid: bool = False) -> "InvoiceStatus":
        """Map a processor invoice status onto the local vocabulary."""
        if paid or status == "paid":
            return cls.PAID
        return {
            "draft": cls.DRAFT,
            "open": cls.SENT,
            "void": cls.VOID,
            "uncollectible": cls.UNCOLLECTIBLE,
        }.get(status or "", cls.SENT)


class PaymentMethod(str, Enum):
    """How a payment was made."""
    CASH = "Cash"
    CARD = "Card"
    BANK_TRANSFER = "Bank Transfer"
    SUBSCRIPTION = "Subscription"
    OTHER = "Other"


MANUAL_PAYMENT_METHODS = (
    PaymentMethod.CASH,
    PaymentMethod.CARD,
    PaymentMethod.BANK_TRANSFER,
    PaymentMethod.OTHER,
)


class Invoice(Base):
    """Mirrored invoice."""

    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoices_tenant_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    membership_plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("membership_plans.id", ondelete="SET NULL"), nullable=True
    )
    membership_plan_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    invoice_number: Mapped[str] = mapped_column(String(100), nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    # List of {id, description, quantity, unit_price, amount}
    items: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    subtotal: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    tax_amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)
    total_amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    amount_paid: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)
    amount_due: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)

    status: Mapped[str] = mapped_column(
        String(50), default=InvoiceStatus.DRAFT.value, nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    stripe_invoice_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, number={self.invoice_number}, status={self.status})>"


class Payment(Base):
    """Recorded payment, either entered manually or derived from a paid invoice."""

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("tenant_id", "transaction_id", name="uq_payments_tenant_transaction"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    student_name: Mapped[str] = mapped_column(String(255), nullable=False)
    membership_plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("membership_plans.id", ondelete="SET NULL"), nullable=True
    )
    membership_plan_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    amount_paid: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True, unique=True
    )
    processed_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, amount={self.amount_paid}, method={self.payment_method})>"
