"""Pydantic schemas for the local ledger mirror."""

import uuid
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from studio_billing.modules.ledger.models import InvoiceStatus, PaymentMethod


class InvoiceLineItem(BaseModel):
    id: str
    description: str
    quantity: int
    unit_price: float
    amount: float


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    student_id: uuid.UUID
    membership_plan_id: Optional[uuid.UUID] = None
    membership_plan_name: Optional[str] = None
    invoice_number: str
    issue_date: date
    due_date: date
    items: list[InvoiceLineItem] = []
    subtotal: float
    tax_amount: float
    total_amount: float
    amount_paid: float
    amount_due: float
    status: InvoiceStatus
    notes: Optional[str] = None
    stripe_invoice_id: Optional[str] = None
    created_at: Optional[datetime] = None


class ManualPaymentCreate(BaseModel):
    """Payment recorded by an administrator."""
    student_id: uuid.UUID
    membership_plan_id: Optional[uuid.UUID] = None
    amount_paid: float = Field(..., gt=0)
    payment_date: date
    payment_method: PaymentMethod
    transaction_id: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    student_id: uuid.UUID
    student_name: str
    membership_plan_id: Optional[uuid.UUID] = None
    membership_plan_name: Optional[str] = None
    amount_paid: float
    payment_date: date
    payment_method: PaymentMethod
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    invoice_id: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None


class InvoicePdfResponse(BaseModel):
    invoice_id: uuid.UUID
    pdf_url: str
