"""Stripe client for connected-account billing.

Every tenant-scoped call is made against the tenant's connected account
(the ``stripe_account`` request option), so charges and payouts are routed
to the studio. Remote objects are converted to the dataclasses below; the
rest of the code base never touches ``stripe`` objects directly.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import stripe

from studio_billing.core.config import settings
from studio_billing.core.errors import ExternalServiceError
from studio_billing.core.metrics import record_processor_call
from studio_billing.core.tracing import processor_span, record_exception

logger = logging.getLogger(__name__)

stripe.api_key = settings.STRIPE_SECRET_KEY
if settings.STRIPE_API_VERSION:
    stripe.api_version = settings.STRIPE_API_VERSION

PAGE_SIZE = 100

# Error codes meaning "this id does not exist for the caller"
MISSING_CODES = ("resource_missing", "account_invalid")


# ==================== DTOs ====================

@dataclass
class StripeAccountData:
    """Data for a connected account."""
    id: str
    email: Optional[str] = None
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False
    metadata: dict = field(default_factory=dict)


@dataclass
class StripeCustomerData:
    """Data for a customer on a connected account."""
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    default_payment_method: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class StripePaymentMethodData:
    """Data for a payment method."""
    id: str
    customer_id: Optional[str] = None
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None


@dataclass
class StripePriceData:
    """Data for a price.

    ``unit_amount`` is in minor units and may be None for tiered or
    metered prices. ``recurring_interval`` is None for one-time prices.
    """
    id: str
    product_id: Optional[str] = None
    unit_amount: Optional[int] = None
    unit_amount_decimal: Optional[str] = None
    currency: Optional[str] = None
    recurring_interval: Optional[str] = None
    nickname: Optional[str] = None


@dataclass
class StripeProductData:
    """Data for a product."""
    id: str
    name: str
    active: bool = True


@dataclass
class StripeSubscriptionItemData:
    """Data for one subscription item."""
    id: str
    price: Optional[StripePriceData] = None
    quantity: int = 1


@dataclass
class StripeSubscriptionData:
    """Data for a subscription."""
    id: str
    customer_id: Optional[str]
    status: str
    items: list[StripeSubscriptionItemData] = field(default_factory=list)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    latest_invoice_client_secret: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def price_ids(self) -> list[str]:
        return [item.price.id for item in self.items if item.price]

    @property
    def price_id(self) -> Optional[str]:
        ids = self.price_ids
        return ids[0] if ids else None

    @property
    def first_item(self) -> Optional[StripeSubscriptionItemData]:
        return self.items[0] if self.items else None


@dataclass
class StripeInvoiceLineData:
    """Data for an invoice line item. Amounts are in minor units."""
    id: str
    description: Optional[str]
    quantity: int
    amount: int
    price_id: Optional[str] = None
    product_id: Optional[str] = None
    unit_amount_decimal: Optional[str] = None

    @property
    def unit_price(self) -> float:
        """Unit price in major units.

        Uses the price's decimal unit amount when present, otherwise
        ``amount / quantity``.
        """
        if self.unit_amount_decimal:
            return float(self.unit_amount_decimal) / 100
        return self.amount / 100 / (self.quantity or 1)


@dataclass
class StripeInvoiceData:
    """Data for an invoice. Amounts are in minor units."""
    id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    status: Optional[str]
    paid: bool
    created: datetime
    subtotal: int = 0
    tax: int = 0
    total: int = 0
    amount_paid: int = 0
    amount_due: int = 0
    currency: Optional[str] = None
    number: Optional[str] = None
    billing_reason: Optional[str] = None
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    invoice_pdf: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    payment_intent_id: Optional[str] = None
    lines: list[StripeInvoiceLineData] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    @property
    def product_ids(self) -> list[str]:
        return [line.product_id for line in self.lines if line.product_id]

    @property
    def first_price_id(self) -> Optional[str]:
        for line in self.lines:
            if line.price_id:
                return line.price_id
        return None


@dataclass
class StripePaymentIntentData:
    """Data for a payment intent."""
    id: str
    client_secret: Optional[str]
    amount: int
    currency: str
    status: str
    metadata: dict = field(default_factory=dict)


@dataclass
class StripeEventData:
    """Verified webhook event.

    ``account`` is the connected account the event originated from;
    ``data_object`` is the raw payload of ``data.object``.
    """
    id: str
    type: str
    account: Optional[str]
    created: Optional[datetime]
    data_object: dict


# ==================== Converters ====================

def _timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _object_id(value: Any) -> Optional[str]:
    """Id of a field that is either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _metadata(obj: Any) -> dict:
    return dict(obj.get("metadata") or {})


def price_from_object(obj: Any) -> Optional[StripePriceData]:
    if not obj:
        return None
    if isinstance(obj, str):
        return StripePriceData(id=obj)
    recurring = obj.get("recurring") or {}
    return StripePriceData(
        id=obj["id"],
        product_id=_object_id(obj.get("product")),
        unit_amount=obj.get("unit_amount"),
        unit_amount_decimal=obj.get("unit_amount_decimal"),
        currency=obj.get("currency"),
        recurring_interval=recurring.get("interval") if recurring else None,
        nickname=obj.get("nickname"),
    )


def account_from_object(obj: Any) -> StripeAccountData:
    return StripeAccountData(
        id=obj["id"],
        email=obj.get("email"),
        details_submitted=bool(obj.get("details_submitted")),
        charges_enabled=bool(obj.get("charges_enabled")),
        payouts_enabled=bool(obj.get("payouts_enabled")),
        metadata=_metadata(obj),
    )


def customer_from_object(obj: Any) -> StripeCustomerData:
    invoice_settings = obj.get("invoice_settings") or {}
    return StripeCustomerData(
        id=obj["id"],
        email=obj.get("email"),
        name=obj.get("name"),
        default_payment_method=_object_id(invoice_settings.get("default_payment_method")),
        metadata=_metadata(obj),
    )


def payment_method_from_object(obj: Any) -> StripePaymentMethodData:
    card = obj.get("card") or {}
    return StripePaymentMethodData(
        id=obj["id"],
        customer_id=_object_id(obj.get("customer")),
        card_brand=card.get("brand"),
        card_last4=card.get("last4"),
    )


def subscription_from_object(obj: Any) -> StripeSubscriptionData:
    """Convert a subscription payload.

    Newer API versions report the billing period on the items rather than
    on the subscription; the first item's period is used as a fallback.
    """
    raw_items = (obj.get("items") or {}).get("data") or []
    items = [
        StripeSubscriptionItemData(
            id=item["id"],
            price=price_from_object(item.get("price")),
            quantity=item.get("quantity") or 1,
        )
        for item in raw_items
    ]
    first = raw_items[0] if raw_items else {}
    period_start = obj.get("current_period_start") or first.get("current_period_start")
    period_end = obj.get("current_period_end") or first.get("current_period_end")

    client_secret = None
    latest_invoice = obj.get("latest_invoice")
    if latest_invoice and not isinstance(latest_invoice, str):
        payment_intent = latest_invoice.get("payment_intent")
        if payment_intent and not isinstance(payment_intent, str):
            client_secret = payment_intent.get("client_secret")

    return StripeSubscriptionData(
        id=obj["id"],
        customer_id=_object_id(obj.get("customer")),
        status=obj.get("status") or "",
        items=items,
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        canceled_at=_timestamp(obj.get("canceled_at")),
        latest_invoice_client_secret=client_secret,
        metadata=_metadata(obj),
    )


def invoice_from_object(obj: Any) -> StripeInvoiceData:
    """Convert an invoice payload, tolerating both old and new API shapes."""
    lines = []
    for line in (obj.get("lines") or {}).get("data") or []:
        price = price_from_object(line.get("price"))
        lines.append(
            StripeInvoiceLineData(
                id=line["id"],
                description=line.get("description"),
                quantity=line.get("quantity") or 1,
                amount=line.get("amount") or 0,
                price_id=price.id if price else None,
                product_id=price.product_id if price else None,
                unit_amount_decimal=price.unit_amount_decimal if price else None,
            )
        )

    subscription_id = _object_id(obj.get("subscription"))
    if not subscription_id:
        parent = obj.get("parent") or {}
        details = parent.get("subscription_details") or {}
        subscription_id = _object_id(details.get("subscription"))

    payment_intent_id = _object_id(obj.get("payment_intent"))
    if not payment_intent_id:
        payments = (obj.get("payments") or {}).get("data") or []
        if payments:
            payment = payments[0].get("payment") or {}
            payment_intent_id = _object_id(payment.get("payment_intent"))

    status = obj.get("status")
    status_transitions = obj.get("status_transitions") or {}
    return StripeInvoiceData(
        id=obj["id"],
        customer_id=_object_id(obj.get("customer")),
        subscription_id=subscription_id,
        status=status,
        paid=bool(obj.get("paid")) or status == "paid",
        created=_timestamp(obj.get("created")) or datetime.now(timezone.utc),
        subtotal=obj.get("subtotal") or 0,
        tax=obj.get("tax") or 0,
        total=obj.get("total") or 0,
        amount_paid=obj.get("amount_paid") or 0,
        amount_due=obj.get("amount_due") or 0,
        currency=obj.get("currency"),
        number=obj.get("number"),
        billing_reason=obj.get("billing_reason"),
        due_date=_timestamp(obj.get("due_date")),
        paid_at=_timestamp(status_transitions.get("paid_at")),
        invoice_pdf=obj.get("invoice_pdf"),
        hosted_invoice_url=obj.get("hosted_invoice_url"),
        payment_intent_id=payment_intent_id,
        lines=lines,
        metadata=_metadata(obj),
    )


def payment_intent_from_object(obj: Any) -> StripePaymentIntentData:
    return StripePaymentIntentData(
        id=obj["id"],
        client_secret=obj.get("client_secret"),
        amount=obj.get("amount") or 0,
        currency=obj.get("currency") or settings.DEFAULT_CURRENCY,
        status=obj.get("status") or "",
        metadata=_metadata(obj),
    )


def event_from_object(obj: Any) -> StripeEventData:
    data = obj.get("data") or {}
    return StripeEventData(
        id=obj["id"],
        type=obj["type"],
        account=obj.get("account"),
        created=_timestamp(obj.get("created")),
        data_object=data.get("object") or {},
    )


# ==================== Client ====================

class StripeClient:
    """Async client for Stripe Connect operations.

    Processor failures are raised as ``ExternalServiceError`` and are
    never retried here. Retrieve-style calls return None when the remote
    object does not exist.
    """

    def __init__(self, webhook_secret: Optional[str] = None):
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        )

    async def _call(
        self,
        operation: str,
        func: Callable[[], Awaitable[Any]],
        account: Optional[str] = None,
        missing_ok: bool = False,
    ) -> Any:
        """Run one processor round-trip with tracing, metrics and error mapping."""
        start = time.perf_counter()
        with processor_span(operation, account):
            try:
                result = await func()
            except (stripe.InvalidRequestError, stripe.PermissionError) as e:
                if missing_ok and (
                    e.code in MISSING_CODES or isinstance(e, stripe.PermissionError)
                ):
                    record_processor_call(operation, "missing", time.perf_counter() - start)
                    return None
                record_processor_call(operation, "error", time.perf_counter() - start)
                raise self._external_error(operation, e, account) from e
            except stripe.StripeError as e:
                record_processor_call(operation, "error", time.perf_counter() - start)
                raise self._external_error(operation, e, account) from e
            record_processor_call(operation, "success", time.perf_counter() - start)
            return result

    @staticmethod
    def _external_error(
        operation: str, error: stripe.StripeError, account: Optional[str]
    ) -> ExternalServiceError:
        record_exception(error)
        logger.error(
            f"Stripe {operation} failed: {error.user_message or error}",
            extra={
                "operation": operation,
                "stripe_account": account,
                "stripe_code": error.code,
                "http_status": error.http_status,
                "request_id": error.request_id,
            },
        )
        return ExternalServiceError(
            f"Payment processor error during {operation}: {error.user_message or error}",
            operation=operation,
            code=error.code,
            http_status=error.http_status,
        )

    async def _iterate(
        self,
        operation: str,
        first_page: Callable[[], Awaitable[Any]],
        account: Optional[str] = None,
    ) -> AsyncIterator[Any]:
        """Iterate every page of a list call."""
        page = await self._call(operation, first_page, account=account)
        try:
            async for item in page.auto_paging_iter():
                yield item
        except stripe.StripeError as e:
            raise self._external_error(operation, e, account) from e

    # ==================== Connected Accounts ====================

    async def create_account(self, email: str, metadata: dict) -> StripeAccountData:
        """Create an express connected account."""
        account = await self._call(
            "account.create",
            lambda: stripe.Account.create_async(
                type="express",
                email=email,
                metadata=metadata,
                capabilities={
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
            ),
        )
        return account_from_object(account)

    async def retrieve_account(self, account_id: str) -> Optional[StripeAccountData]:
        """Get a connected account, or None if it is missing or no longer connected."""
        account = await self._call(
            "account.retrieve",
            lambda: stripe.Account.retrieve_async(account_id),
            account=account_id,
            missing_ok=True,
        )
        if account is None or account.get("deleted"):
            return None
        return account_from_object(account)

    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> str:
        """Create a short-lived onboarding URL."""
        link = await self._call(
            "account_link.create",
            lambda: stripe.AccountLink.create_async(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            ),
            account=account_id,
        )
        return link["url"]

    async def create_login_link(self, account_id: str) -> str:
        """Create an express dashboard login URL."""
        link = await self._call(
            "login_link.create",
            lambda: stripe.Account.create_login_link_async(account_id),
            account=account_id,
        )
        return link["url"]

    # ==================== Customers ====================

    async def create_customer(
        self,
        account: str,
        email: Optional[str],
        name: Optional[str],
        metadata: dict,
        payment_method_id: Optional[str] = None,
    ) -> StripeCustomerData:
        """Create a customer on a connected account."""
        params: dict[str, Any] = {"email": email, "name": name, "metadata": metadata}
        if payment_method_id:
            params["payment_method"] = payment_method_id
            params["invoice_settings"] = {"default_payment_method": payment_method_id}
        customer = await self._call(
            "customer.create",
            lambda: stripe.Customer.create_async(stripe_account=account, **params),
            account=account,
        )
        return customer_from_object(customer)

    async def retrieve_customer(
        self, account: str, customer_id: str
    ) -> Optional[StripeCustomerData]:
        """Get a customer, or None if it is missing or deleted."""
        customer = await self._call(
            "customer.retrieve",
            lambda: stripe.Customer.retrieve_async(customer_id, stripe_account=account),
            account=account,
            missing_ok=True,
        )
        if customer is None or customer.get("deleted"):
            return None
        return customer_from_object(customer)

    async def set_default_payment_method(
        self, account: str, customer_id: str, payment_method_id: str
    ) -> StripeCustomerData:
        customer = await self._call(
            "customer.modify",
            lambda: stripe.Customer.modify_async(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
                stripe_account=account,
            ),
            account=account,
        )
        return customer_from_object(customer)

    async def iter_customers(self, account: str) -> AsyncIterator[StripeCustomerData]:
        """Iterate all customers of a connected account."""
        async for customer in self._iterate(
            "customer.list",
            lambda: stripe.Customer.list_async(limit=PAGE_SIZE, stripe_account=account),
            account=account,
        ):
            yield customer_from_object(customer)

    # ==================== Payment Methods ====================

    async def retrieve_payment_method(
        self, account: str, payment_method_id: str
    ) -> Optional[StripePaymentMethodData]:
        pm = await self._call(
            "payment_method.retrieve",
            lambda: stripe.PaymentMethod.retrieve_async(
                payment_method_id, stripe_account=account
            ),
            account=account,
            missing_ok=True,
        )
        return payment_method_from_object(pm) if pm is not None else None

    async def attach_payment_method(
        self, account: str, payment_method_id: str, customer_id: str
    ) -> StripePaymentMethodData:
        pm = await self._call(
            "payment_method.attach",
            lambda: stripe.PaymentMethod.attach_async(
                payment_method_id, customer=customer_id, stripe_account=account
            ),
            account=account,
        )
        return payment_method_from_object(pm)

    # ==================== Products and Prices ====================

    async def create_product(
        self, account: str, name: str, description: Optional[str] = None
    ) -> StripeProductData:
        params: dict[str, Any] = {"name": name}
        if description:
            params["description"] = description
        product = await self._call(
            "product.create",
            lambda: stripe.Product.create_async(stripe_account=account, **params),
            account=account,
        )
        return StripeProductData(id=product["id"], name=product["name"], active=product.get("active", True))

    async def create_price(
        self,
        account: str,
        product_id: str,
        unit_amount: int,
        currency: str,
        interval: Optional[str] = "month",
        nickname: Optional[str] = None,
    ) -> StripePriceData:
        """Create a price; ``interval=None`` creates a one-time price."""
        params: dict[str, Any] = {
            "product": product_id,
            "unit_amount": unit_amount,
            "currency": currency,
        }
        if interval:
            params["recurring"] = {"interval": interval}
        if nickname:
            params["nickname"] = nickname
        price = await self._call(
            "price.create",
            lambda: stripe.Price.create_async(stripe_account=account, **params),
            account=account,
        )
        return price_from_object(price)

    async def retrieve_price(self, account: str, price_id: str) -> Optional[StripePriceData]:
        price = await self._call(
            "price.retrieve",
            lambda: stripe.Price.retrieve_async(price_id, stripe_account=account),
            account=account,
            missing_ok=True,
        )
        return price_from_object(price) if price is not None else None

    async def list_products(self, account: str) -> list[StripeProductData]:
        """List active products of a connected account."""
        products = []
        async for product in self._iterate(
            "product.list",
            lambda: stripe.Product.list_async(
                active=True, limit=PAGE_SIZE, stripe_account=account
            ),
            account=account,
        ):
            products.append(
                StripeProductData(id=product["id"], name=product["name"], active=True)
            )
        return products

    # ==================== Subscriptions ====================

    async def create_subscription(
        self,
        account: str,
        customer_id: str,
        price_id: str,
        add_invoice_items: Optional[list[dict]] = None,
        application_fee_percent: Optional[float] = None,
        metadata: Optional[dict] = None,
    ) -> StripeSubscriptionData:
        """Create a subscription on a connected account.

        One-time ``add_invoice_items`` are billed on the first invoice of
        the same creation call.
        """
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
            "metadata": metadata or {},
        }
        if add_invoice_items:
            params["add_invoice_items"] = add_invoice_items
        if application_fee_percent:
            params["application_fee_percent"] = application_fee_percent
        subscription = await self._call(
            "subscription.create",
            lambda: stripe.Subscription.create_async(stripe_account=account, **params),
            account=account,
        )
        return subscription_from_object(subscription)

    async def retrieve_subscription(
        self, account: str, subscription_id: str
    ) -> Optional[StripeSubscriptionData]:
        """Get a subscription, or None if the processor reports it missing."""
        subscription = await self._call(
            "subscription.retrieve",
            lambda: stripe.Subscription.retrieve_async(
                subscription_id,
                expand=["latest_invoice.payment_intent"],
                stripe_account=account,
            ),
            account=account,
            missing_ok=True,
        )
        return subscription_from_object(subscription) if subscription is not None else None

    async def change_subscription_price(
        self, account: str, subscription_id: str, item_id: str, new_price_id: str
    ) -> StripeSubscriptionData:
        """Swap the price of an item with proration and clear any pending cancellation."""
        subscription = await self._call(
            "subscription.modify",
            lambda: stripe.Subscription.modify_async(
                subscription_id,
                items=[{"id": item_id, "price": new_price_id}],
                proration_behavior="create_prorations",
                cancel_at_period_end=False,
                expand=["latest_invoice.payment_intent"],
                stripe_account=account,
            ),
            account=account,
        )
        return subscription_from_object(subscription)

    async def cancel_at_period_end(
        self, account: str, subscription_id: str
    ) -> StripeSubscriptionData:
        """Schedule cancellation at the end of the paid period."""
        subscription = await self._call(
            "subscription.modify",
            lambda: stripe.Subscription.modify_async(
                subscription_id,
                cancel_at_period_end=True,
                stripe_account=account,
            ),
            account=account,
        )
        return subscription_from_object(subscription)

    async def iter_subscriptions(
        self, account: str, customer_id: str, status: str
    ) -> AsyncIterator[StripeSubscriptionData]:
        """Iterate a customer's subscriptions with the given status."""
        async for subscription in self._iterate(
            "subscription.list",
            lambda: stripe.Subscription.list_async(
                customer=customer_id,
                status=status,
                limit=PAGE_SIZE,
                stripe_account=account,
            ),
            account=account,
        ):
            yield subscription_from_object(subscription)

    # ==================== Invoices and Events ====================

    async def retrieve_invoice(self, account: str, invoice_id: str) -> Optional[StripeInvoiceData]:
        invoice = await self._call(
            "invoice.retrieve",
            lambda: stripe.Invoice.retrieve_async(invoice_id, stripe_account=account),
            account=account,
            missing_ok=True,
        )
        return invoice_from_object(invoice) if invoice is not None else None

    async def iter_invoices(
        self, account: str, created_gte: datetime
    ) -> AsyncIterator[StripeInvoiceData]:
        """Iterate invoices created at or after ``created_gte``."""
        async for invoice in self._iterate(
            "invoice.list",
            lambda: stripe.Invoice.list_async(
                created={"gte": int(created_gte.timestamp())},
                limit=PAGE_SIZE,
                stripe_account=account,
            ),
            account=account,
        ):
            yield invoice_from_object(invoice)

    async def iter_events(
        self, account: str, event_type: str, created_gte: datetime
    ) -> AsyncIterator[StripeEventData]:
        """Iterate events of one type created at or after ``created_gte``."""
        async for event in self._iterate(
            "event.list",
            lambda: stripe.Event.list_async(
                type=event_type,
                created={"gte": int(created_gte.timestamp())},
                limit=PAGE_SIZE,
                stripe_account=account,
            ),
            account=account,
        ):
            yield event_from_object(event)

    # ==================== Payment Intents ====================

    async def create_payment_intent(
        self,
        account: str,
        amount: int,
        currency: str,
        customer_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        description: Optional[str] = None,
    ) -> StripePaymentIntentData:
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata or {},
        }
        if customer_id:
            params["customer"] = customer_id
        if description:
            params["description"] = description
        intent = await self._call(
            "payment_intent.create",
            lambda: stripe.PaymentIntent.create_async(stripe_account=account, **params),
            account=account,
        )
        return payment_intent_from_object(intent)

    # ==================== Webhooks ====================

    def construct_webhook_event(self, payload: bytes, sig_header: Optional[str]) -> StripeEventData:
        """Verify a webhook signature and parse the event.

        Raises:
            RuntimeError: If no webhook secret is configured
            ValueError: If the signature is missing or does not verify
        """
        if not self.webhook_secret:
            raise RuntimeError("STRIPE_WEBHOOK_SECRET is not configured")
        if not sig_header:
            raise ValueError("Missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                sig_header,
                self.webhook_secret,
                tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError as e:
            raise ValueError(f"Invalid webhook signature: {e}") from e
        try:
            return event_from_object(json.loads(payload))
        except (ValueError, KeyError) as e:
            raise ValueError(f"Malformed webhook payload: {e}") from e


# Singleton instance
_stripe_client: Optional[StripeClient] = None


def get_stripe_client() -> StripeClient:
    """Get the Stripe client singleton."""
    global _stripe_client
    if _stripe_client is None:
        _stripe_client = StripeClient()
    return _stripe_client
