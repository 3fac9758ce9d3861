"""Tests for tenant payment accounts and billing settings."""

import uuid

import pytest
from hypothesis import given, settings, strategies as st

from conftest import ACCOUNT_ID
from studio_billing.core.errors import ExternalServiceError, NotFoundError, PreconditionError
from studio_billing.modules.billing.stripe_client import StripeAccountData
from studio_billing.modules.tenant.models import PaymentAccountStatus
from studio_billing.modules.tenant.repository import TenantRepository
from studio_billing.modules.tenant.service import AccountService, derive_account_status
from studio_billing.modules.tenant.settings import BillingSettingsStore, TenantBillingSettings


class TestDeriveAccountStatus:
    """Connected accounts map onto exactly three onboarding states."""

    @given(
        details_submitted=st.booleans(),
        charges_enabled=st.booleans(),
        payouts_enabled=st.booleans(),
    )
    @settings(max_examples=50)
    def test_status_follows_account_flags(
        self, details_submitted: bool, charges_enabled: bool, payouts_enabled: bool
    ) -> None:
        account = StripeAccountData(
            id="acct_1",
            details_submitted=details_submitted,
            charges_enabled=charges_enabled,
            payouts_enabled=payouts_enabled,
        )

        status = derive_account_status(account)

        if not details_submitted:
            assert status == PaymentAccountStatus.UNVERIFIED
        elif charges_enabled and payouts_enabled:
            assert status == PaymentAccountStatus.ACTIVE
        else:
            assert status == PaymentAccountStatus.INCOMPLETE

    def test_missing_account_is_unverified(self) -> None:
        assert derive_account_status(None) == PaymentAccountStatus.UNVERIFIED


class TestCreateAccount:

    @pytest.mark.asyncio
    async def test_existing_valid_account_is_reused(self, session, stripe_mock, make_tenant) -> None:
        tenant = await make_tenant()
        stripe_mock.retrieve_account.return_value = StripeAccountData(id=ACCOUNT_ID)

        result = await AccountService(session, stripe_mock).create_account(tenant.id)

        assert result.account_id == ACCOUNT_ID
        assert result.created is False
        stripe_mock.create_account.assert_not_called()

    @pytest.mark.asyncio
    async def test_stale_account_is_replaced(self, session, stripe_mock, make_tenant) -> None:
        tenant = await make_tenant(account_id="acct_revoked")
        stripe_mock.retrieve_account.return_value = None
        stripe_mock.create_account.return_value = StripeAccountData(id="acct_new")

        result = await AccountService(session, stripe_mock).create_account(tenant.id)

        assert result.created is True
        stored = await TenantRepository(session).get_by_id(tenant.id)
        assert stored.stripe_account_id == "acct_new"
        assert stored.stripe_account_status == "unverified"
        metadata = stripe_mock.create_account.call_args.kwargs["metadata"]
        assert metadata["tenant_id"] == str(tenant.id)

    @pytest.mark.asyncio
    async def test_processor_outage_does_not_provision_a_duplicate(
        self, session, stripe_mock, make_tenant
    ) -> None:
        tenant = await make_tenant()
        stripe_mock.retrieve_account.side_effect = ExternalServiceError(
            "timeout", operation="account.retrieve"
        )

        with pytest.raises(ExternalServiceError):
            await AccountService(session, stripe_mock).create_account(tenant.id)
        stripe_mock.create_account.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_tenant_is_not_found(self, session, stripe_mock) -> None:
        with pytest.raises(NotFoundError):
            await AccountService(session, stripe_mock).create_account(uuid.uuid4())


class TestOnboardingAndStatus:

    @pytest.mark.asyncio
    async def test_onboarding_link_requires_account(self, session, stripe_mock, make_tenant) -> None:
        tenant = await make_tenant(account_id=None)

        with pytest.raises(PreconditionError) as exc_info:
            await AccountService(session, stripe_mock).create_onboarding_link(tenant.id)
        assert "payment account" in exc_info.value.hint

    @pytest.mark.asyncio
    async def test_onboarding_link_is_returned(self, session, stripe_mock, make_tenant) -> None:
        tenant = await make_tenant()
        stripe_mock.create_account_link.return_value = "https://connect.stripe.test/setup/x"

        url = await AccountService(session, stripe_mock).create_onboarding_link(tenant.id)

        assert url == "https://connect.stripe.test/setup/x"
        args = stripe_mock.create_account_link.call_args
        assert args.args[0] == ACCOUNT_ID
        assert "refresh" in args.kwargs["refresh_url"]

    @pytest.mark.asyncio
    async def test_tenant_without_account_is_unverified(self, session, stripe_mock, make_tenant) -> None:
        tenant = await make_tenant(account_id=None)

        status = await AccountService(session, stripe_mock).get_status(tenant.id)

        assert status.status == PaymentAccountStatus.UNVERIFIED
        stripe_mock.retrieve_account.assert_not_called()

    @pytest.mark.asyncio
    async def test_incomplete_account_is_persisted(self, session, stripe_mock, make_tenant) -> None:
        tenant = await make_tenant()
        stripe_mock.retrieve_account.return_value = StripeAccountData(
            id=ACCOUNT_ID, details_submitted=True, charges_enabled=True, payouts_enabled=False
        )

        status = await AccountService(session, stripe_mock).get_status(tenant.id)

        assert status.status == PaymentAccountStatus.INCOMPLETE
        assert status.dashboard_url is None
        stored = await TenantRepository(session).get_by_id(tenant.id)
        assert stored.stripe_account_status == "incomplete"
        stripe_mock.create_login_link.assert_not_called()

    @pytest.mark.asyncio
    async def test_login_link_failure_keeps_active_status(
        self, session, stripe_mock, make_tenant
    ) -> None:
        tenant = await make_tenant()
        stripe_mock.retrieve_account.return_value = StripeAccountData(
            id=ACCOUNT_ID, details_submitted=True, charges_enabled=True, payouts_enabled=True
        )
        stripe_mock.create_login_link.side_effect = ExternalServiceError(
            "login links unavailable", operation="login_link.create"
        )

        status = await AccountService(session, stripe_mock).get_status(tenant.id)

        assert status.status == PaymentAccountStatus.ACTIVE
        assert status.dashboard_url is None


class TestBillingSettingsStore:

    @pytest.mark.asyncio
    async def test_unset_fields_fall_back_to_defaults(self, session, make_tenant) -> None:
        tenant = await make_tenant()
        defaults = TenantBillingSettings(
            enrollment_price_id="price_default_enroll",
            audition_price_id="price_default_audition",
        )
        store = BillingSettingsStore(session, defaults=defaults)

        await store.update_settings(tenant.id, enrollment_price_id="price_studio_enroll")
        resolved = await store.get_settings(tenant.id)

        assert resolved.tenant_id == tenant.id
        assert resolved.enrollment_price_id == "price_studio_enroll"
        assert resolved.audition_price_id == "price_default_audition"
        assert resolved.has_enrollment_fee
        assert not resolved.has_audition_fee

    @pytest.mark.asyncio
    async def test_empty_string_clears_a_field(self, session, make_tenant) -> None:
        tenant = await make_tenant()
        store = BillingSettingsStore(session, defaults=TenantBillingSettings())

        await store.update_settings(tenant.id, enrollment_price_id="price_enroll")
        resolved = await store.update_settings(tenant.id, enrollment_price_id="")

        assert resolved.enrollment_price_id is None
        assert not resolved.has_enrollment_fee

    @pytest.mark.asyncio
    async def test_settings_are_isolated_per_tenant(self, session, make_tenant) -> None:
        first = await make_tenant(account_id="acct_first")
        second = await make_tenant(account_id="acct_second")
        store = BillingSettingsStore(session, defaults=TenantBillingSettings())

        await store.update_settings(first.id, enrollment_price_id="price_first")

        assert (await store.get_settings(second.id)).enrollment_price_id is None
