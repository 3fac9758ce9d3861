"""Tenant payment account manager.

Owns provisioning of each tenant's connected account, onboarding links and
the three-state onboarding status.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.core.config import settings
from studio_billing.core.errors import ExternalServiceError, NotFoundError, PreconditionError
from studio_billing.modules.billing.stripe_client import (
    StripeAccountData,
    StripeClient,
    get_stripe_client,
)
from studio_billing.modules.notification.service import NotificationService
from studio_billing.modules.tenant.models import PaymentAccountStatus, Tenant
from studio_billing.modules.tenant.repository import TenantRepository
from studio_billing.modules.tenant.schemas import (
    PaymentAccountResponse,
    PaymentAccountStatusResponse,
)

logger = logging.getLogger(__name__)


def derive_account_status(account: Optional[StripeAccountData]) -> PaymentAccountStatus:
    """Map a connected account onto unverified / incomplete / active."""
    if account is None or not account.details_submitted:
        return PaymentAccountStatus.UNVERIFIED
    if account.charges_enabled and account.payouts_enabled:
        return PaymentAccountStatus.ACTIVE
    return PaymentAccountStatus.INCOMPLETE


class AccountService:
    """Service for tenant connected accounts."""

    def __init__(
        self,
        session: AsyncSession,
        stripe_client: Optional[StripeClient] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.session = session
        self.tenant_repo = TenantRepository(session)
        self.stripe = stripe_client or get_stripe_client()
        self.notifications = notifications or NotificationService(session)

    async def _get_tenant(self, tenant_id: uuid.UUID) -> Tenant:
        tenant = await self.tenant_repo.get_by_id(tenant_id)
        if not tenant:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        return tenant

    async def create_account(self, tenant_id: uuid.UUID) -> PaymentAccountResponse:
        """Provision the tenant's connected account.

        An existing account that still resolves on the processor is reused.
        A stale id is replaced by a newly created express account.

        Raises:
            ExternalServiceError: If the processor rejects creation
        """
        tenant = await self._get_tenant(tenant_id)

        if tenant.stripe_account_id:
            existing = await self.stripe.retrieve_account(tenant.stripe_account_id)
            if existing is not None:
                logger.info(
                    f"Tenant {tenant.id} already has connected account {existing.id}"
                )
                return PaymentAccountResponse(account_id=existing.id, created=False)
            logger.warning(
                f"Connected account {tenant.stripe_account_id} for tenant {tenant.id} "
                f"no longer resolves, provisioning a new one"
            )

        account = await self.stripe.create_account(
            email=tenant.owner_email,
            metadata={"tenant_id": str(tenant.id), "tenant_name": tenant.name},
        )
        await self.tenant_repo.update(
            tenant.id,
            stripe_account_id=account.id,
            stripe_account_status=derive_account_status(account).value,
        )
        logger.info(f"Created connected account {account.id} for tenant {tenant.id}")
        return PaymentAccountResponse(account_id=account.id, created=True)

    async def create_onboarding_link(self, tenant_id: uuid.UUID) -> str:
        """Create a short-lived onboarding URL for the tenant's account.

        Raises:
            PreconditionError: If the tenant has no connected account yet
        """
        tenant = await self._get_tenant(tenant_id)
        if not tenant.stripe_account_id:
            raise PreconditionError(
                f"Tenant {tenant.id} has no payment account",
                hint="Create the payment account before requesting an onboarding link.",
            )
        base = settings.FRONTEND_URL.rstrip("/")
        return await self.stripe.create_account_link(
            tenant.stripe_account_id,
            refresh_url=f"{base}/settings/payments?refresh=1",
            return_url=f"{base}/settings/payments?onboarding=complete",
        )

    async def get_status(self, tenant_id: uuid.UUID) -> PaymentAccountStatusResponse:
        """Get the onboarding status of the tenant's account.

        For active accounts a dashboard login URL is resolved as well; failing
        to obtain it leaves the status untouched.
        """
        tenant = await self._get_tenant(tenant_id)
        if not tenant.stripe_account_id:
            return PaymentAccountStatusResponse(status=PaymentAccountStatus.UNVERIFIED)

        account = await self.stripe.retrieve_account(tenant.stripe_account_id)
        status = derive_account_status(account)
        if status.value != tenant.stripe_account_status:
            await self.tenant_repo.update(tenant.id, stripe_account_status=status.value)

        if account is None:
            return PaymentAccountStatusResponse(
                status=status, account_id=tenant.stripe_account_id
            )

        dashboard_url = None
        if status == PaymentAccountStatus.ACTIVE:
            try:
                dashboard_url = await self.stripe.create_login_link(account.id)
            except ExternalServiceError as e:
                logger.warning(f"Could not create dashboard link for {account.id}: {e.message}")

        return PaymentAccountStatusResponse(
            status=status,
            account_id=account.id,
            details_submitted=account.details_submitted,
            charges_enabled=account.charges_enabled,
            payouts_enabled=account.payouts_enabled,
            dashboard_url=dashboard_url,
        )

    async def resolve_tenant_for_account(
        self, account: StripeAccountData, event_account: Optional[str] = None
    ) -> Optional[Tenant]:
        """Find the tenant an account event belongs to, by metadata then by id.

        A tenant named in metadata only matches while the account is still
        its current one; events from an account it has since replaced match
        no tenant.
        """
        tenant_id = account.metadata.get("tenant_id")
        if tenant_id:
            try:
                tenant = await self.tenant_repo.get_by_id(uuid.UUID(tenant_id))
            except ValueError:
                tenant = None
            if tenant and tenant.stripe_account_id in (None, account.id):
                return tenant
            if tenant:
                logger.warning(
                    f"Ignoring update for account {account.id}: tenant {tenant.id} now uses "
                    f"{tenant.stripe_account_id}"
                )
                return None
        return await self.tenant_repo.get_by_account_id(event_account or account.id)

    async def record_account_update(
        self, account: StripeAccountData, event_account: Optional[str] = None
    ) -> Optional[PaymentAccountStatus]:
        """Apply an account update pushed by the processor.

        Returns the new status, or None when the tenant cannot be resolved.
        Notifies the tenant when the account becomes active.
        """
        tenant = await self.resolve_tenant_for_account(account, event_account)
        if tenant is None:
            logger.warning(f"Account update for {account.id} matches no tenant, discarding")
            return None

        status = derive_account_status(account)
        previous = tenant.stripe_account_status
        updates = {"stripe_account_status": status.value}
        if not tenant.stripe_account_id:
            updates["stripe_account_id"] = account.id
        await self.tenant_repo.update(tenant.id, **updates)

        logger.info(
            f"Connected account {account.id} for tenant {tenant.id}: {previous} -> {status.value}"
        )
        if status == PaymentAccountStatus.ACTIVE and previous != PaymentAccountStatus.ACTIVE.value:
            await self.notifications.notify(
                tenant.id,
                title="Payments Enabled",
                message="Your payment account is active. You can now accept card payments and receive payouts.",
                severity="success",
                link="/settings/payments",
            )
        return status
