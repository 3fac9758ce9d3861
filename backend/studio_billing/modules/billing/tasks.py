"""Billing background tasks.

Daily reconciliation sweep: every student holding a subscription id is
refreshed from the processor so that events lost while the local record
was missing are eventually reflected.
"""

import asyncio
import logging
import uuid

from studio_billing.core.celery_app import celery_app
from studio_billing.core.database import async_session_maker
from studio_billing.core.errors import ExternalServiceError
from studio_billing.core.logging import bind_tenant

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=300,
    name="billing.reconcile_tenant_subscriptions",
)
def reconcile_tenant_subscriptions_task(self, tenant_id: str) -> dict:
    """Refresh all subscriptions of one tenant.

    Retried later when the processor could not be reached for any of them.

    Args:
        tenant_id: Tenant UUID string
    """
    try:
        return asyncio.run(_reconcile_tenant_subscriptions(uuid.UUID(tenant_id)))
    except ExternalServiceError as exc:
        logger.warning(f"Reconciliation of tenant {tenant_id} deferred: {exc.message}")
        raise self.retry(exc=exc)


async def _reconcile_tenant_subscriptions(tenant_id: uuid.UUID) -> dict:
    async with async_session_maker() as session:
        return await reconcile_tenant_subscriptions(session, tenant_id)


async def reconcile_tenant_subscriptions(session, tenant_id: uuid.UUID, stripe_client=None) -> dict:
    """Refresh every subscribed student of a tenant.

    Per-student failures are logged and counted and do not stop the sweep.

    Raises:
        ExternalServiceError: If the processor failed for every student

    Returns:
        Counts of refreshed, cleared and failed students
    """
    from studio_billing.modules.billing.service import SubscriptionService
    from studio_billing.modules.membership.repository import StudentRepository

    bind_tenant(tenant_id)
    service = SubscriptionService(session, stripe_client)
    students = await StudentRepository(session).list_with_subscription(tenant_id)
    student_ids = [student.id for student in students]

    refreshed = cleared = failed = unreachable = 0
    for student_id in student_ids:
        try:
            details = await service.get_student_subscription(student_id, tenant_id)
        except ExternalServiceError as e:
            failed += 1
            unreachable += 1
            logger.error(f"Processor unavailable refreshing student {student_id}: {e.message}")
            continue
        except Exception:
            await session.rollback()
            failed += 1
            logger.exception(f"Reconciliation failed for student {student_id}")
            continue
        if details is None:
            cleared += 1
        else:
            refreshed += 1

    if student_ids and unreachable == len(student_ids):
        raise ExternalServiceError(
            f"Processor unavailable for all {unreachable} subscriptions of tenant {tenant_id}",
            operation="subscription.retrieve",
        )

    summary = {
        "tenant_id": str(tenant_id),
        "refreshed": refreshed,
        "cleared": cleared,
        "failed": failed,
    }
    logger.info(f"Reconciled tenant {tenant_id}", extra=summary)
    return summary


@celery_app.task(name="billing.reconcile_all_tenants")
def reconcile_all_tenants_task() -> int:
    """Queue a reconciliation sweep for every active tenant with a payment account."""
    return asyncio.run(_queue_tenant_sweeps())


async def _queue_tenant_sweeps() -> int:
    from studio_billing.modules.tenant.repository import TenantRepository

    async with async_session_maker() as session:
        tenants = await TenantRepository(session).list_active()

    queued = 0
    for tenant in tenants:
        if not tenant.stripe_account_id:
            continue
        reconcile_tenant_subscriptions_task.delay(str(tenant.id))
        queued += 1
    logger.info(f"Queued subscription reconciliation for {queued} tenants")
    return queued
