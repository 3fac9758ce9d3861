"""API Router for the local ledger mirror."""

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.core.database import get_session
from studio_billing.modules.auth.jwt import CurrentPrincipal, get_current_principal
from studio_billing.modules.billing.stripe_client import StripeClient, get_stripe_client
from studio_billing.modules.ledger.schemas import (
    InvoicePdfResponse,
    InvoiceResponse,
    ManualPaymentCreate,
    PaymentResponse,
)
from studio_billing.modules.ledger.service import LedgerService

router = APIRouter(prefix="/ledger", tags=["ledger"])


@router.post("/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def record_manual_payment(
    data: ManualPaymentCreate,
    principal: CurrentPrincipal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_session),
):
    """Record a cash, card, bank transfer or other payment."""
    payment = await LedgerService(session).record_manual_payment(
        principal.tenant_id, data, processed_by_user_id=principal.user_id
    )
    return PaymentResponse.model_validate(payment)


@router.get("/students/{student_id}/payments", response_model=list[PaymentResponse])
async def list_student_payments(
    student_id: uuid.UUID,
    principal: CurrentPrincipal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_session),
):
    payments = await LedgerService(session).list_student_payments(principal.tenant_id, student_id)
    return [PaymentResponse.model_validate(p) for p in payments]


@router.get("/students/{student_id}/invoices", response_model=list[InvoiceResponse])
async def list_student_invoices(
    student_id: uuid.UUID,
    principal: CurrentPrincipal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_session),
):
    invoices = await LedgerService(session).list_student_invoices(principal.tenant_id, student_id)
    return [InvoiceResponse.model_validate(i) for i in invoices]


@router.get("/invoices/{invoice_id}/pdf-url", response_model=InvoicePdfResponse)
async def get_invoice_pdf_url(
    invoice_id: uuid.UUID,
    principal: CurrentPrincipal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    url = await LedgerService(session, stripe_client).get_invoice_pdf_url(
        principal.tenant_id, invoice_id
    )
    return InvoicePdfResponse(invoice_id=invoice_id, pdf_url=url)
