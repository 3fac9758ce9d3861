"""Financial metrics aggregator.

Computes a tenant's recurring revenue metrics from live processor data:
every customer of the connected account is walked and its active and
trialing subscriptions are listed, so cost grows with the number of
customers. There is no batching or caching.
"""

import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.core.config import settings
from studio_billing.core.errors import NotFoundError
from studio_billing.core.tracing import create_span
from studio_billing.modules.billing.schemas import FinancialMetrics, PlanMixItem
from studio_billing.modules.billing.stripe_client import (
    StripeClient,
    StripeInvoiceData,
    StripePriceData,
    StripeSubscriptionData,
    get_stripe_client,
)
from studio_billing.modules.tenant.repository import TenantRepository

logger = logging.getLogger(__name__)

COUNTED_STATUSES = ("active", "trialing")
RENEWAL_BILLING_REASONS = ("subscription_cycle", "subscription_create")
WEEKS_PER_MONTH = 4.33
UNKNOWN_PLAN = "Unknown Plan"


def monthly_value(price: Optional[StripePriceData]) -> float:
    """Normalize a recurring price to a monthly amount in major units.

    One-time prices, prices without a fixed amount and intervals other than
    week, month and year contribute nothing.
    """
    if price is None or price.unit_amount is None or not price.recurring_interval:
        return 0.0
    amount = price.unit_amount / 100
    if price.recurring_interval == "month":
        return amount
    if price.recurring_interval == "year":
        return amount / 12
    if price.recurring_interval == "week":
        return amount * WEEKS_PER_MONTH
    return 0.0


def plan_name_for(price: Optional[StripePriceData], product_names: dict[str, str]) -> str:
    if price is None:
        return UNKNOWN_PLAN
    if price.product_id and price.product_id in product_names:
        return product_names[price.product_id]
    return price.nickname or UNKNOWN_PLAN


def is_failed_renewal(invoice: StripeInvoiceData, now: datetime) -> bool:
    """An open renewal invoice past its due date."""
    return (
        invoice.status == "open"
        and invoice.due_date is not None
        and invoice.due_date < now
    )


def compute_metrics(
    mrr: float,
    active_subscribers: int,
    plan_mix: Iterable[tuple[str, int]],
    canceled_in_window: int,
    succeeded_renewals: int,
    failed_renewals: int,
) -> FinancialMetrics:
    """Derive churn, ARPU, LTV and failure rate from raw counts.

    Churn and failure rate are percentages in [0, 100]. LTV is 0 when churn
    is 0 rather than infinite.
    """
    churn_base = active_subscribers + canceled_in_window
    churn_rate = canceled_in_window / churn_base * 100 if churn_base > 0 else 0.0
    arpu = mrr / active_subscribers if active_subscribers > 0 else 0.0
    ltv = arpu / (churn_rate / 100) if churn_rate > 0 else 0.0
    renewals = succeeded_renewals + failed_renewals
    failure_rate = failed_renewals / renewals * 100 if renewals > 0 else 0.0

    return FinancialMetrics(
        mrr=round(mrr, 2),
        active_subscribers=active_subscribers,
        arpu=round(arpu, 2),
        churn_rate=round(churn_rate, 1),
        ltv=round(ltv, 2),
        plan_mix=[PlanMixItem(name=name, value=count) for name, count in plan_mix],
        payment_failure_rate=round(failure_rate, 1),
    )


class FinancialMetricsService:
    """Aggregates processor data into tenant metrics."""

    def __init__(self, session: AsyncSession, stripe_client: Optional[StripeClient] = None):
        self.session = session
        self.tenant_repo = TenantRepository(session)
        self.stripe = stripe_client or get_stripe_client()

    async def get_metrics(self, tenant_id: uuid.UUID) -> FinancialMetrics:
        """Compute metrics over the trailing window (30 days by default).

        A tenant without a payment account or without customers gets an
        all-zero result.
        """
        tenant = await self.tenant_repo.get_by_id(tenant_id)
        if not tenant:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        if not tenant.stripe_account_id:
            return FinancialMetrics()

        account = tenant.stripe_account_id
        now = datetime.now(timezone.utc)
        window_start = now - timedelta(days=settings.METRICS_WINDOW_DAYS)

        with create_span("metrics.aggregate", {"tenant.id": str(tenant_id)}):
            products = {p.id: p.name for p in await self.stripe.list_products(account)}

            mrr = 0.0
            active_subscribers = 0
            plan_mix: Counter = Counter()
            customers = 0
            async for customer in self.stripe.iter_customers(account):
                customers += 1
                for status in COUNTED_STATUSES:
                    async for subscription in self.stripe.iter_subscriptions(
                        account, customer.id, status
                    ):
                        active_subscribers += 1
                        price = _first_price(subscription)
                        mrr += monthly_value(price)
                        plan_mix[plan_name_for(price, products)] += 1

            if customers == 0:
                return FinancialMetrics()

            canceled = 0
            async for _ in self.stripe.iter_events(
                account, "customer.subscription.deleted", window_start
            ):
                canceled += 1

            succeeded = failed = 0
            async for invoice in self.stripe.iter_invoices(account, window_start):
                if invoice.billing_reason not in RENEWAL_BILLING_REASONS:
                    continue
                if invoice.status == "paid":
                    succeeded += 1
                elif is_failed_renewal(invoice, now):
                    failed += 1

        logger.info(
            f"Metrics for tenant {tenant_id}: {customers} customers, "
            f"{active_subscribers} subscribers, {canceled} canceled"
        )
        return compute_metrics(
            mrr, active_subscribers, plan_mix.items(), canceled, succeeded, failed
        )


def _first_price(subscription: StripeSubscriptionData) -> Optional[StripePriceData]:
    item = subscription.first_item
    return item.price if item else None
