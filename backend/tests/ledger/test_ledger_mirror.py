"""Tests for the local invoice and payment mirror."""

import uuid
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError as SchemaValidationError

from studio_billing.core.errors import NotFoundError, PreconditionError, ValidationError
from studio_billing.modules.auth.jwt import create_access_token
from studio_billing.modules.billing.stripe_client import StripeInvoiceData, StripeInvoiceLineData
from studio_billing.modules.ledger.models import InvoiceStatus, PaymentMethod
from studio_billing.modules.ledger.schemas import ManualPaymentCreate
from studio_billing.modules.ledger.service import LedgerService, invoice_number_for


def _invoice(invoice_id: str = "in_1", status: str = "open", paid: bool = False, **kwargs):
    return StripeInvoiceData(
        id=invoice_id,
        customer_id="cus_1",
        subscription_id=kwargs.pop("subscription_id", "sub_1"),
        status=status,
        paid=paid,
        created=datetime(2024, 5, 1, tzinfo=timezone.utc),
        subtotal=5000,
        total=5000,
        amount_due=5000,
        lines=[StripeInvoiceLineData(id="il_1", description=None, quantity=2, amount=5000)],
        **kwargs,
    )


class TestInvoiceStatusMapping:

    def test_remote_statuses_map_to_local_vocabulary(self) -> None:
        assert InvoiceStatus.from_remote("paid") == InvoiceStatus.PAID
        assert InvoiceStatus.from_remote("open", paid=True) == InvoiceStatus.PAID
        assert InvoiceStatus.from_remote("open") == InvoiceStatus.SENT
        assert InvoiceStatus.from_remote("draft") == InvoiceStatus.DRAFT
        assert InvoiceStatus.from_remote("void") == InvoiceStatus.VOID
        assert InvoiceStatus.from_remote("uncollectible") == InvoiceStatus.UNCOLLECTIBLE
        assert InvoiceStatus.from_remote(None) == InvoiceStatus.SENT

    def test_invoice_number_placeholder_is_stable(self) -> None:
        invoice = _invoice(invoice_id="in_1PqRsTuVwXyZ")

        assert invoice_number_for(invoice) == "STRIPE-IN_1PQRSTUVW"
        assert invoice_number_for(invoice) == invoice_number_for(invoice)


class TestMirrorInvoice:

    @pytest.mark.asyncio
    async def test_open_invoice_has_no_payment(
        self, session, stripe_mock, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant)
        service = LedgerService(session, stripe_mock)

        row, payment, created = await service.mirror_invoice(tenant.id, student, None, _invoice())

        assert created is True
        assert payment is None
        assert row.status == "Sent"
        assert row.items[0]["description"] == "N/A"
        assert row.items[0]["unit_price"] == pytest.approx(25.0)
        assert row.due_date == date(2024, 5, 1)

    @pytest.mark.asyncio
    async def test_second_mirror_updates_the_same_rows(
        self, session, stripe_mock, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant)
        service = LedgerService(session, stripe_mock)

        first, _, _ = await service.mirror_invoice(tenant.id, student, None, _invoice())
        paid = _invoice(status="paid", paid=True, amount_paid=5000, payment_intent_id="pi_1")
        second, payment, created = await service.mirror_invoice(tenant.id, student, None, paid)
        _, again, _ = await service.mirror_invoice(tenant.id, student, None, paid)

        assert created is False
        assert second.id == first.id
        assert second.status == "Paid"
        assert payment.id == again.id
        assert payment.amount_paid == pytest.approx(50.0)
        assert len(await service.list_student_invoices(tenant.id, student.id)) == 1
        assert len(await service.list_student_payments(tenant.id, student.id)) == 1


class TestManualPayments:

    @pytest.mark.asyncio
    async def test_cash_payment_is_recorded_and_notified(
        self, session, stripe_mock, make_tenant, make_plan, make_student
    ) -> None:
        tenant = await make_tenant()
        plan = await make_plan(tenant)
        student = await make_student(tenant)
        service = LedgerService(session, stripe_mock)
        user_id = uuid.uuid4()

        payment = await service.record_manual_payment(
            tenant.id,
            ManualPaymentCreate(
                student_id=student.id,
                membership_plan_id=plan.id,
                amount_paid=80.456,
                payment_date=date(2024, 5, 3),
                payment_method=PaymentMethod.CASH,
            ),
            processed_by_user_id=user_id,
        )

        assert payment.amount_paid == pytest.approx(80.46)
        assert payment.student_name == "Ada Lovelace"
        assert payment.membership_plan_name == "Monthly"
        assert payment.processed_by_user_id == user_id
        titles = [n.title for n in await service.notifications.list_notifications(tenant.id)]
        assert titles == ["Payment Received"]

    @pytest.mark.asyncio
    async def test_subscription_method_cannot_be_recorded_manually(
        self, session, stripe_mock, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant)

        with pytest.raises(ValidationError):
            await LedgerService(session, stripe_mock).record_manual_payment(
                tenant.id,
                ManualPaymentCreate(
                    student_id=student.id,
                    amount_paid=10,
                    payment_date=date(2024, 5, 3),
                    payment_method=PaymentMethod.SUBSCRIPTION,
                ),
            )

    @pytest.mark.asyncio
    async def test_student_of_another_tenant_is_not_found(
        self, session, stripe_mock, make_tenant, make_student
    ) -> None:
        owner = await make_tenant(account_id="acct_owner")
        other = await make_tenant(account_id="acct_other")
        student = await make_student(owner)

        with pytest.raises(NotFoundError):
            await LedgerService(session, stripe_mock).record_manual_payment(
                other.id,
                ManualPaymentCreate(
                    student_id=student.id,
                    amount_paid=10,
                    payment_date=date(2024, 5, 3),
                    payment_method=PaymentMethod.CARD,
                ),
            )

    @pytest.mark.asyncio
    async def test_duplicate_transaction_id_is_a_conflict(
        self, session, stripe_mock, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant)
        service = LedgerService(session, stripe_mock)
        data = ManualPaymentCreate(
            student_id=student.id,
            amount_paid=45,
            payment_date=date(2024, 5, 3),
            payment_method=PaymentMethod.BANK_TRANSFER,
            transaction_id="wire-778",
        )
        await service.record_manual_payment(tenant.id, data)

        with pytest.raises(PreconditionError) as exc_info:
            await service.record_manual_payment(tenant.id, data)

        assert "wire-778" in exc_info.value.message
        assert len(await service.payment_repo.list_for_student(student.id, tenant.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_insert_is_a_conflict(
        self, session, stripe_mock, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant)
        service = LedgerService(session, stripe_mock)
        data = ManualPaymentCreate(
            student_id=student.id,
            amount_paid=45,
            payment_date=date(2024, 5, 3),
            payment_method=PaymentMethod.OTHER,
            transaction_id="chk-1001",
        )
        await service.record_manual_payment(tenant.id, data)
        service.payment_repo.get_by_transaction_id = AsyncMock(return_value=None)

        with pytest.raises(PreconditionError):
            await service.record_manual_payment(tenant.id, data)

    def test_non_positive_amount_is_rejected_by_schema(self) -> None:
        with pytest.raises(SchemaValidationError):
            ManualPaymentCreate(
                student_id=uuid.uuid4(),
                amount_paid=0,
                payment_date=date(2024, 5, 3),
                payment_method=PaymentMethod.CASH,
            )


class TestInvoicePdf:

    @pytest.mark.asyncio
    async def test_pdf_url_comes_from_processor(
        self, session, stripe_mock, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant)
        service = LedgerService(session, stripe_mock)
        row, _, _ = await service.mirror_invoice(tenant.id, student, None, _invoice())
        stripe_mock.retrieve_invoice.return_value = _invoice(invoice_pdf="https://pay.stripe.test/in_1.pdf")

        url = await service.get_invoice_pdf_url(tenant.id, row.id)

        assert url == "https://pay.stripe.test/in_1.pdf"

    @pytest.mark.asyncio
    async def test_missing_pdf_is_not_found(
        self, session, stripe_mock, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant)
        service = LedgerService(session, stripe_mock)
        row, _, _ = await service.mirror_invoice(tenant.id, student, None, _invoice())
        stripe_mock.retrieve_invoice.return_value = None

        with pytest.raises(NotFoundError):
            await service.get_invoice_pdf_url(tenant.id, row.id)

    @pytest.mark.asyncio
    async def test_tenant_without_account_fails_precondition(
        self, session, stripe_mock, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant(account_id=None)
        student = await make_student(tenant)
        service = LedgerService(session, stripe_mock)
        row, _, _ = await service.mirror_invoice(tenant.id, student, None, _invoice())

        with pytest.raises(PreconditionError):
            await service.get_invoice_pdf_url(tenant.id, row.id)


class TestLedgerApi:

    @pytest.mark.asyncio
    async def test_manual_payment_endpoint(self, client, make_tenant, make_student) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant)
        token = create_access_token(uuid.uuid4(), tenant.id)

        response = await client.post(
            "/api/v1/ledger/payments",
            json={
                "student_id": str(student.id),
                "amount_paid": 45,
                "payment_date": "2024-05-03",
                "payment_method": "Bank Transfer",
                "transaction_id": "wire-778",
            },
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 201
        assert response.json()["payment_method"] == "Bank Transfer"

        response = await client.get(
            f"/api/v1/ledger/students/{student.id}/payments",
            headers={"Authorization": f"Bearer {token}"},
        )
        assert [p["transaction_id"] for p in response.json()] == ["wire-778"]

    @pytest.mark.asyncio
    async def test_subscription_method_is_a_bad_request(self, client, make_tenant, make_student) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant)
        token = create_access_token(uuid.uuid4(), tenant.id)

        response = await client.post(
            "/api/v1/ledger/payments",
            json={
                "student_id": str(student.id),
                "amount_paid": 45,
                "payment_date": "2024-05-03",
                "payment_method": "Subscription",
            },
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_repeated_transaction_id_is_a_conflict(self, client, make_tenant, make_student) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant)
        token = create_access_token(uuid.uuid4(), tenant.id)
        body = {
            "student_id": str(student.id),
            "amount_paid": 45,
            "payment_date": "2024-05-03",
            "payment_method": "Cash",
            "transaction_id": "receipt-12",
        }

        first = await client.post(
            "/api/v1/ledger/payments", json=body, headers={"Authorization": f"Bearer {token}"}
        )
        second = await client.post(
            "/api/v1/ledger/payments", json=body, headers={"Authorization": f"Bearer {token}"}
        )

        assert first.status_code == 201
        assert second.status_code == 409
        assert second.json()["error"] == "precondition_failed"
