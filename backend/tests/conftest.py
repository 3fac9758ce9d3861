"""Shared test fixtures: in-memory SQLite database, factories, mocked processor."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("LOG_JSON", "false")

import hashlib
import hmac
import json
import time
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from studio_billing.core.database import Base, get_session
from studio_billing.modules.billing.stripe_client import (
    StripeClient,
    StripePriceData,
    StripeSubscriptionData,
    StripeSubscriptionItemData,
    get_stripe_client,
)
from studio_billing.modules.ledger import models as _ledger_models  # noqa: F401
from studio_billing.modules.membership.models import MembershipPlan, Student
from studio_billing.modules.notification import models as _notification_models  # noqa: F401
from studio_billing.modules.tenant.models import Tenant
from studio_billing.modules.tenant.settings import BillingSettingsStore, TenantBillingSettings

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
ACCOUNT_ID = "acct_studio_1"


# ==================== Database ====================

@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def session(engine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as sess:
        yield sess


# ==================== Factories ====================

@pytest.fixture
def make_tenant(session):
    async def _make(account_id: Optional[str] = ACCOUNT_ID, **kwargs) -> Tenant:
        tenant = Tenant(
            name=kwargs.pop("name", f"Studio {uuid.uuid4().hex[:8]}"),
            owner_id=uuid.uuid4(),
            owner_email=kwargs.pop("owner_email", "owner@studio.test"),
            stripe_account_id=account_id,
            **kwargs,
        )
        session.add(tenant)
        await session.commit()
        await session.refresh(tenant)
        return tenant

    return _make


@pytest.fixture
def make_plan(session):
    async def _make(tenant: Tenant, name: str = "Monthly", price_id: str = "price_monthly", **kwargs):
        plan = MembershipPlan(
            tenant_id=tenant.id,
            name=name,
            monthly_price=kwargs.pop("monthly_price", 99.0),
            stripe_price_id=price_id,
            **kwargs,
        )
        session.add(plan)
        await session.commit()
        await session.refresh(plan)
        return plan

    return _make


@pytest.fixture
def make_student(session):
    async def _make(tenant: Tenant, **kwargs) -> Student:
        student = Student(
            tenant_id=tenant.id,
            first_name=kwargs.pop("first_name", "Ada"),
            last_name=kwargs.pop("last_name", "Lovelace"),
            email=kwargs.pop("email", "ada@students.test"),
            **kwargs,
        )
        session.add(student)
        await session.commit()
        await session.refresh(student)
        return student

    return _make


@pytest.fixture
def settings_store(session):
    """Billing settings store without process-wide fallbacks."""
    return BillingSettingsStore(session, defaults=TenantBillingSettings())


# ==================== Processor ====================

def make_subscription(
    subscription_id: str = "sub_1",
    price_id: str = "price_monthly",
    status: str = "active",
    customer_id: str = "cus_1",
    cancel_at_period_end: bool = False,
    period_end: Optional[datetime] = None,
) -> StripeSubscriptionData:
    return StripeSubscriptionData(
        id=subscription_id,
        customer_id=customer_id,
        status=status,
        items=[
            StripeSubscriptionItemData(
                id="si_1",
                price=StripePriceData(
                    id=price_id, unit_amount=9900, currency="usd", recurring_interval="month"
                ),
            )
        ],
        current_period_start=datetime(2024, 5, 1, tzinfo=timezone.utc),
        current_period_end=period_end or datetime(2024, 6, 1, tzinfo=timezone.utc),
        cancel_at_period_end=cancel_at_period_end,
    )


def async_iter(items):
    """Side effect producing a fresh async iterator on every call."""

    async def _gen(*args, **kwargs):
        for item in items:
            yield item

    return _gen


@pytest.fixture
def stripe_mock():
    """Processor client with every round-trip mocked.

    Webhook verification is real so signatures are checked end to end.
    """
    client = AsyncMock(spec=StripeClient)
    client.construct_webhook_event = MagicMock(
        side_effect=StripeClient(webhook_secret=WEBHOOK_SECRET).construct_webhook_event
    )
    for name in ("iter_customers", "iter_subscriptions", "iter_invoices", "iter_events"):
        setattr(client, name, MagicMock(side_effect=async_iter([])))
    return client


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def event_payload(event_type: str, data_object: dict, account: Optional[str] = ACCOUNT_ID) -> bytes:
    event = {
        "id": f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": data_object},
    }
    if account:
        event["account"] = account
    return json.dumps(event).encode("utf-8")


# ==================== HTTP ====================

@pytest.fixture
async def client(session, stripe_mock) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async client with database and processor overrides."""
    from studio_billing.main import app

    async def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_stripe_client] = lambda: stripe_mock

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
