"""Tests for the customer and subscription synchronizer."""

import logging
import uuid
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

import pytest
from hypothesis import given, settings, strategies as st
from sqlalchemy.exc import OperationalError

from conftest import ACCOUNT_ID, make_subscription
from studio_billing.core.errors import (
    ExternalServiceError,
    NotFoundError,
    PreconditionError,
    ReconciliationGap,
    ValidationError,
)
from studio_billing.modules.billing.service import SubscriptionService, enrollment_fee_items
from studio_billing.modules.billing.stripe_client import (
    StripeCustomerData,
    StripePaymentIntentData,
    StripePaymentMethodData,
    StripePriceData,
)
from studio_billing.modules.membership.models import Student
from studio_billing.modules.membership.repository import StudentRepository


optional_id = st.one_of(st.none(), st.text(alphabet="abcdef0123456789", min_size=1, max_size=12))


def _service(session, stripe_mock, settings_store) -> SubscriptionService:
    return SubscriptionService(session, stripe_mock, settings_store)


class TestEnrollmentFeeItems:
    """The enrollment fee is billed once, on the first subscription."""

    @given(subscription_id=optional_id, enrollment_price=optional_id)
    @settings(max_examples=100)
    def test_fee_item_count(self, subscription_id, enrollment_price) -> None:
        student = Student(first_name="A", last_name="B", stripe_subscription_id=subscription_id)

        items = enrollment_fee_items(student, enrollment_price)

        expected = 1 if not subscription_id and enrollment_price else 0
        assert len(items) == expected
        if items:
            assert items == [{"price": enrollment_price}]


class TestCreateSubscription:

    @pytest.mark.asyncio
    async def test_missing_price_is_rejected(self, session, stripe_mock, settings_store) -> None:
        service = _service(session, stripe_mock, settings_store)

        with pytest.raises(ValidationError):
            await service.create_subscription(uuid.uuid4(), "", None, uuid.uuid4())
        stripe_mock.create_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_tenant_without_account_fails_precondition(
        self, session, stripe_mock, settings_store, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant(account_id=None)
        student = await make_student(tenant)

        with pytest.raises(PreconditionError) as exc_info:
            await _service(session, stripe_mock, settings_store).create_subscription(
                student.id, "price_monthly", None, tenant.id
            )
        assert exc_info.value.hint

    @pytest.mark.asyncio
    async def test_first_subscription_adds_enrollment_fee_and_mirrors_plan(
        self, session, stripe_mock, settings_store, make_tenant, make_plan, make_student
    ) -> None:
        tenant = await make_tenant()
        plan = await make_plan(tenant)
        student = await make_student(tenant)
        await settings_store.update_settings(tenant.id, enrollment_price_id="price_enroll")
        stripe_mock.create_customer.return_value = StripeCustomerData(id="cus_1")
        stripe_mock.create_subscription.return_value = make_subscription()

        details = await _service(session, stripe_mock, settings_store).create_subscription(
            student.id, "price_monthly", None, tenant.id
        )

        kwargs = stripe_mock.create_subscription.call_args.kwargs
        assert stripe_mock.create_subscription.call_args.args[0] == ACCOUNT_ID
        assert kwargs["add_invoice_items"] == [{"price": "price_enroll"}]
        assert kwargs["price_id"] == "price_monthly"
        assert details.id == "sub_1"

        stored = await StudentRepository(session).get_by_id(student.id, tenant.id)
        assert stored.stripe_customer_id == "cus_1"
        assert stored.stripe_subscription_id == "sub_1"
        assert stored.subscription_status == "active"
        assert stored.membership_plan_id == plan.id
        assert stored.membership_plan_name == "Monthly"
        assert stored.membership_renewal_date == date(2024, 6, 1)

    @pytest.mark.asyncio
    async def test_returning_student_pays_no_enrollment_fee(
        self, session, stripe_mock, settings_store, make_tenant, make_plan, make_student
    ) -> None:
        tenant = await make_tenant()
        await make_plan(tenant)
        student = await make_student(
            tenant, stripe_customer_id="cus_1", stripe_subscription_id="sub_old"
        )
        await settings_store.update_settings(tenant.id, enrollment_price_id="price_enroll")
        stripe_mock.retrieve_customer.return_value = StripeCustomerData(id="cus_1")
        stripe_mock.create_subscription.return_value = make_subscription(subscription_id="sub_2")

        await _service(session, stripe_mock, settings_store).create_subscription(
            student.id, "price_monthly", None, tenant.id
        )

        assert stripe_mock.create_subscription.call_args.kwargs["add_invoice_items"] is None
        stripe_mock.create_customer.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_price_keeps_current_plan(
        self, session, stripe_mock, settings_store, make_tenant, make_plan, make_student, caplog
    ) -> None:
        tenant = await make_tenant()
        plan = await make_plan(tenant)
        student = await make_student(
            tenant, membership_plan_id=plan.id, membership_plan_name="Monthly"
        )
        stripe_mock.create_customer.return_value = StripeCustomerData(id="cus_1")
        stripe_mock.create_subscription.return_value = make_subscription(price_id="price_unknown")

        with caplog.at_level(logging.WARNING, logger="studio_billing.modules.billing.sync"):
            await _service(session, stripe_mock, settings_store).create_subscription(
                student.id, "price_unknown", None, tenant.id
            )

        assert "price_unknown" in caplog.text
        stored = await StudentRepository(session).get_by_id(student.id, tenant.id)
        assert stored.stripe_subscription_id == "sub_1"
        assert stored.subscription_status == "active"
        assert stored.membership_plan_id == plan.id
        assert stored.membership_plan_name == "Monthly"

    @pytest.mark.asyncio
    async def test_stale_customer_is_recreated(
        self, session, stripe_mock, settings_store, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant, stripe_customer_id="cus_gone")
        stripe_mock.retrieve_customer.return_value = None
        stripe_mock.create_customer.return_value = StripeCustomerData(id="cus_new")

        customer_id = await _service(session, stripe_mock, settings_store).find_or_create_customer(
            student.id, tenant.id
        )

        assert customer_id == "cus_new"
        stored = await StudentRepository(session).get_by_id(student.id, tenant.id)
        assert stored.stripe_customer_id == "cus_new"

    @pytest.mark.asyncio
    async def test_local_write_failure_raises_reconciliation_gap(
        self, session, stripe_mock, settings_store, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant)
        stripe_mock.create_customer.return_value = StripeCustomerData(id="cus_1")
        stripe_mock.create_subscription.return_value = make_subscription()
        service = _service(session, stripe_mock, settings_store)
        service.sync.apply = AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("db down")))

        with pytest.raises(ReconciliationGap) as exc_info:
            await service.create_subscription(student.id, "price_monthly", None, tenant.id)

        assert exc_info.value.kind == "local_write"
        assert exc_info.value.remote_id == "sub_1"

    @pytest.mark.asyncio
    async def test_processor_failure_propagates(
        self, session, stripe_mock, settings_store, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant, stripe_customer_id="cus_1")
        stripe_mock.retrieve_customer.return_value = StripeCustomerData(id="cus_1")
        stripe_mock.create_subscription.side_effect = ExternalServiceError(
            "card declined", operation="subscription.create", code="card_declined"
        )

        with pytest.raises(ExternalServiceError):
            await _service(session, stripe_mock, settings_store).create_subscription(
                student.id, "price_monthly", None, tenant.id
            )

        stored = await StudentRepository(session).get_by_id(student.id, tenant.id)
        assert stored.stripe_subscription_id is None


class TestSubscriptionStateSync:

    @pytest.mark.asyncio
    async def test_unmatched_price_keeps_plan_and_logs_warning(
        self, session, stripe_mock, settings_store, make_tenant, make_plan, make_student, caplog
    ) -> None:
        tenant = await make_tenant()
        plan = await make_plan(tenant)
        student = await make_student(
            tenant,
            stripe_subscription_id="sub_1",
            membership_plan_id=plan.id,
            membership_plan_name="Monthly",
        )
        service = _service(session, stripe_mock, settings_store)

        with caplog.at_level(logging.WARNING):
            updated = await service.sync.apply(
                student,
                make_subscription(price_id="price_unknown", period_end=datetime(2024, 7, 1, tzinfo=timezone.utc)),
            )

        assert updated.membership_plan_name == "Monthly"
        assert updated.membership_plan_id == plan.id
        assert updated.membership_renewal_date == date(2024, 7, 1)
        assert "price_unknown" in caplog.text

    @pytest.mark.asyncio
    async def test_transition_to_past_due_notifies_once(
        self, session, stripe_mock, settings_store, make_tenant, make_plan, make_student
    ) -> None:
        tenant = await make_tenant()
        await make_plan(tenant)
        student = await make_student(
            tenant, stripe_subscription_id="sub_1", subscription_status="active"
        )
        service = _service(session, stripe_mock, settings_store)
        service.sync.notifications.notify_payment_overdue = AsyncMock()

        updated = await service.sync.apply(student, make_subscription(status="past_due"))
        await service.sync.apply(updated, make_subscription(status="past_due"))

        assert updated.subscription_status == "past_due"
        service.sync.notifications.notify_payment_overdue.assert_awaited_once()


class TestChangeAndCancel:

    @pytest.mark.asyncio
    async def test_cancel_keeps_status_and_flags_period_end(
        self, session, stripe_mock, settings_store, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(
            tenant,
            stripe_customer_id="cus_1",
            stripe_subscription_id="sub_1",
            subscription_status="active",
        )
        stripe_mock.cancel_at_period_end.return_value = make_subscription(
            cancel_at_period_end=True, period_end=datetime(2024, 6, 30, tzinfo=timezone.utc)
        )

        details = await _service(session, stripe_mock, settings_store).cancel_subscription(
            student.id, "sub_1", tenant.id
        )

        assert details.cancel_at_period_end is True
        stored = await StudentRepository(session).get_by_id(student.id, tenant.id)
        assert stored.subscription_status == "active"
        assert stored.cancel_at_period_end is True
        assert stored.membership_renewal_date == date(2024, 6, 30)

    @pytest.mark.asyncio
    async def test_cancel_of_foreign_subscription_is_rejected(
        self, session, stripe_mock, settings_store, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant, stripe_subscription_id="sub_1")

        with pytest.raises(ValidationError):
            await _service(session, stripe_mock, settings_store).cancel_subscription(
                student.id, "sub_other", tenant.id
            )
        stripe_mock.cancel_at_period_end.assert_not_called()

    @pytest.mark.asyncio
    async def test_change_plan_moves_student_to_new_plan(
        self, session, stripe_mock, settings_store, make_tenant, make_plan, make_student
    ) -> None:
        tenant = await make_tenant()
        monthly = await make_plan(tenant)
        gold = await make_plan(tenant, name="Gold", price_id="price_gold", monthly_price=150.0)
        student = await make_student(
            tenant,
            stripe_subscription_id="sub_1",
            membership_plan_id=monthly.id,
            membership_plan_name="Monthly",
        )
        stripe_mock.retrieve_subscription.return_value = make_subscription()
        stripe_mock.change_subscription_price.return_value = make_subscription(price_id="price_gold")
        service = _service(session, stripe_mock, settings_store)
        service.notifications.notify_membership_changed = AsyncMock()

        details = await service.update_subscription("sub_1", "price_gold", tenant.id)

        stripe_mock.change_subscription_price.assert_awaited_once_with(
            ACCOUNT_ID, "sub_1", "si_1", "price_gold"
        )
        assert details.price_ids == ["price_gold"]
        stored = await StudentRepository(session).get_by_id(student.id, tenant.id)
        assert stored.membership_plan_id == gold.id
        assert stored.membership_plan_name == "Gold"
        service.notifications.notify_membership_changed.assert_awaited_once_with(
            tenant.id, student.full_name, "Monthly", "Gold"
        )

    @pytest.mark.asyncio
    async def test_change_to_current_price_is_a_noop_remotely(
        self, session, stripe_mock, settings_store, make_tenant, make_plan, make_student
    ) -> None:
        tenant = await make_tenant()
        plan = await make_plan(tenant)
        await make_student(
            tenant,
            stripe_subscription_id="sub_1",
            membership_plan_id=plan.id,
            membership_plan_name="Monthly",
        )
        stripe_mock.retrieve_subscription.return_value = make_subscription()
        service = _service(session, stripe_mock, settings_store)
        service.notifications.notify_membership_changed = AsyncMock()

        await service.update_subscription("sub_1", "price_monthly", tenant.id)

        stripe_mock.change_subscription_price.assert_not_called()
        service.notifications.notify_membership_changed.assert_not_called()

    @pytest.mark.asyncio
    async def test_change_to_unknown_price_keeps_plan_silently(
        self, session, stripe_mock, settings_store, make_tenant, make_plan, make_student
    ) -> None:
        tenant = await make_tenant()
        plan = await make_plan(tenant)
        student = await make_student(
            tenant,
            stripe_subscription_id="sub_1",
            membership_plan_id=plan.id,
            membership_plan_name="Monthly",
        )
        stripe_mock.retrieve_subscription.return_value = make_subscription()
        stripe_mock.change_subscription_price.return_value = make_subscription(price_id="price_mystery")
        service = _service(session, stripe_mock, settings_store)
        service.notifications.notify_membership_changed = AsyncMock()

        await service.update_subscription("sub_1", "price_mystery", tenant.id)

        stored = await StudentRepository(session).get_by_id(student.id, tenant.id)
        assert stored.membership_plan_name == "Monthly"
        service.notifications.notify_membership_changed.assert_not_called()

    @pytest.mark.asyncio
    async def test_change_of_other_tenants_subscription_is_not_found(
        self, session, stripe_mock, settings_store, make_tenant, make_student
    ) -> None:
        owner = await make_tenant(account_id="acct_owner")
        other = await make_tenant(account_id="acct_other")
        await make_student(owner, stripe_subscription_id="sub_1")

        with pytest.raises(NotFoundError):
            await _service(session, stripe_mock, settings_store).update_subscription(
                "sub_1", "price_gold", other.id
            )


class TestLiveRefresh:

    @pytest.mark.asyncio
    async def test_missing_remote_subscription_clears_local_fields(
        self, session, stripe_mock, settings_store, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(
            tenant,
            stripe_customer_id="cus_1",
            stripe_subscription_id="sub_1",
            subscription_status="active",
            membership_renewal_date=date(2024, 6, 1),
        )
        stripe_mock.retrieve_subscription.return_value = None

        result = await _service(session, stripe_mock, settings_store).get_student_subscription(
            student.id, tenant.id
        )

        assert result is None
        stored = await StudentRepository(session).get_by_id(student.id, tenant.id)
        assert stored.stripe_subscription_id is None
        assert stored.subscription_status is None
        assert stored.membership_renewal_date is None
        assert stored.stripe_customer_id == "cus_1"

    @pytest.mark.asyncio
    async def test_student_without_subscription_skips_processor(
        self, session, stripe_mock, settings_store, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant)

        result = await _service(session, stripe_mock, settings_store).get_student_subscription(
            student.id, tenant.id
        )

        assert result is None
        stripe_mock.retrieve_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_local_write_failure_on_refresh_raises_reconciliation_gap(
        self, session, stripe_mock, settings_store, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant, stripe_subscription_id="sub_1")
        stripe_mock.retrieve_subscription.return_value = make_subscription(status="past_due")
        service = _service(session, stripe_mock, settings_store)
        service.sync.apply = AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("db down")))

        with pytest.raises(ReconciliationGap) as exc_info:
            await service.get_student_subscription(student.id, tenant.id)

        assert exc_info.value.kind == "local_write"
        assert exc_info.value.remote_id == "sub_1"

    @pytest.mark.asyncio
    async def test_failed_clear_on_refresh_raises_reconciliation_gap(
        self, session, stripe_mock, settings_store, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant, stripe_subscription_id="sub_1")
        stripe_mock.retrieve_subscription.return_value = None
        service = _service(session, stripe_mock, settings_store)
        service.sync.clear = AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("db down")))

        with pytest.raises(ReconciliationGap) as exc_info:
            await service.get_student_subscription(student.id, tenant.id)

        assert exc_info.value.kind == "local_write"


class TestPaymentMethod:

    @pytest.mark.asyncio
    async def test_update_is_idempotent(
        self, session, stripe_mock, settings_store, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant, stripe_customer_id="cus_1")
        stripe_mock.retrieve_customer.return_value = StripeCustomerData(id="cus_1")
        stripe_mock.retrieve_payment_method.return_value = StripePaymentMethodData(id="pm_1")
        service = _service(session, stripe_mock, settings_store)

        first = await service.update_payment_method(student.id, "pm_1", tenant.id)
        stripe_mock.retrieve_customer.return_value = StripeCustomerData(
            id="cus_1", default_payment_method="pm_1"
        )
        second = await service.update_payment_method(student.id, "pm_1", tenant.id)

        assert first.changed is True
        assert second.changed is False
        stripe_mock.attach_payment_method.assert_awaited_once_with(ACCOUNT_ID, "pm_1", "cus_1")
        stripe_mock.set_default_payment_method.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_student_without_customer_fails_precondition(
        self, session, stripe_mock, settings_store, make_tenant, make_student
    ) -> None:
        tenant = await make_tenant()
        student = await make_student(tenant)

        with pytest.raises(PreconditionError):
            await _service(session, stripe_mock, settings_store).update_payment_method(
                student.id, "pm_1", tenant.id
            )


class TestAuditionFee:

    @pytest.mark.asyncio
    async def test_unconfigured_audition_fee_fails_precondition(
        self, session, stripe_mock, settings_store, make_tenant
    ) -> None:
        tenant = await make_tenant()

        with pytest.raises(PreconditionError):
            await _service(session, stripe_mock, settings_store).create_audition_payment_intent(
                tenant.id, "Grace Hopper", "grace@prospects.test"
            )

    @pytest.mark.asyncio
    async def test_creates_intent_for_configured_price(
        self, session, stripe_mock, settings_store, make_tenant
    ) -> None:
        tenant = await make_tenant()
        await settings_store.update_settings(
            tenant.id, audition_product_id="prod_audition", audition_price_id="price_audition"
        )
        stripe_mock.retrieve_price.return_value = StripePriceData(
            id="price_audition", unit_amount=2500, currency="usd"
        )
        stripe_mock.create_customer.return_value = StripeCustomerData(id="cus_prospect")
        stripe_mock.create_payment_intent.return_value = StripePaymentIntentData(
            id="pi_1", client_secret="pi_1_secret", amount=2500, currency="usd", status="requires_payment_method"
        )

        response = await _service(session, stripe_mock, settings_store).create_audition_payment_intent(
            tenant.id, "Grace Hopper", "grace@prospects.test"
        )

        assert response.amount == 25.0
        assert response.client_secret == "pi_1_secret"
        metadata = stripe_mock.create_payment_intent.call_args.kwargs["metadata"]
        assert metadata["product_id"] == "prod_audition"
        assert metadata["tenant_id"] == str(tenant.id)
