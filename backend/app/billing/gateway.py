"""Payment processor gateway: async Stripe API wrapper behind a narrow protocol."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

import stripe
from stripe import StripeClient

from app.billing.errors import GatewayError, NotFoundError, TransientUpstreamError
from app.billing.money import from_minor_units, to_minor_units
from app.billing.periods import ts_to_naive

logger = logging.getLogger(__name__)


@dataclass
class ExternalCustomer:
    id: str
    email: str | None
    name: str | None
    deleted: bool = False
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class ExternalSubscription:
    id: str
    customer_id: str | None
    status: str
    price_id: str | None = None
    unit_amount: Decimal | None = None
    currency: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    item_id: str | None = None


@dataclass
class ExternalProduct:
    id: str
    name: str
    description: str | None
    active: bool


@dataclass
class ExternalPrice:
    id: str
    product_id: str | None
    unit_amount: Decimal | None
    currency: str
    active: bool
    interval_months: int | None = None


@dataclass
class ChargeResult:
    """Outcome of charging a customer for one invoice.

    ``status`` is ``paid``, ``failed`` or ``requires_action``.
    """

    invoice_id: str
    status: str
    amount: Decimal
    currency: str
    payment_intent_id: str | None = None
    failure_reason: str | None = None
    attempt: int = 1
    period_end: datetime | None = None


@dataclass
class RefundResult:
    id: str
    amount: Decimal
    status: str


@dataclass
class PaymentMethodInfo:
    id: str
    brand: str | None
    last4: str | None
    exp_month: int | None
    exp_year: int | None


class PaymentGateway(Protocol):
    """Operations the billing engine needs from the payment processor."""

    async def create_customer(self, email: str, name: str, user_id: str) -> ExternalCustomer: ...

    async def retrieve_customer(self, customer_id: str) -> ExternalCustomer | None: ...

    async def update_customer(
        self, customer_id: str, *, email: str | None = None, name: str | None = None
    ) -> ExternalCustomer: ...

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        *,
        trial_days: int = 0,
        metadata: dict[str, str] | None = None,
    ) -> ExternalSubscription: ...

    async def retrieve_subscription(self, subscription_id: str) -> ExternalSubscription | None: ...

    async def cancel_subscription(self, subscription_id: str) -> ExternalSubscription: ...

    async def change_subscription_price(
        self, subscription_id: str, new_price_id: str
    ) -> ExternalSubscription: ...

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethodInfo]: ...

    async def charge_invoice(
        self,
        customer_id: str,
        amount: Decimal,
        currency: str,
        *,
        description: str,
        metadata: dict[str, str] | None = None,
    ) -> ChargeResult: ...

    async def create_invoice_item(
        self,
        customer_id: str,
        amount: Decimal,
        currency: str,
        *,
        description: str,
        subscription_id: str | None = None,
    ) -> str: ...

    async def delete_invoice_item(self, item_id: str) -> None: ...

    async def refund(self, payment_intent_id: str, amount: Decimal) -> RefundResult: ...

    async def retrieve_product(self, product_id: str) -> ExternalProduct | None: ...

    async def create_product(self, name: str, description: str | None) -> ExternalProduct: ...

    async def update_product(
        self, product_id: str, *, name: str | None = None, description: str | None = None
    ) -> ExternalProduct: ...

    async def retrieve_price(self, price_id: str) -> ExternalPrice | None: ...

    async def create_price(
        self, product_id: str, amount: Decimal, currency: str, interval_months: int
    ) -> ExternalPrice: ...

    def verify_event_signature(self, payload: bytes, signature_header: str, secret: str) -> bool: ...


def verify_event_signature(
    payload: bytes, signature_header: str, secret: str, tolerance: int = 300
) -> bool:
    """Check a ``Stripe-Signature`` header against the raw request body."""
    if not secret or not signature_header:
        return False
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"), signature_header, secret, tolerance
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError):
        return False
    return True


# ---------------------------------------------------------------------------
# Stripe object -> dataclass conversion
# ---------------------------------------------------------------------------


def _id_of(value: Any) -> str | None:
    """Stripe fields may hold an id or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


def _first_item(stripe_sub: Any):
    # Bracket notation: ``.items`` collides with dict.items() on StripeObject.
    sub_items = stripe_sub["items"]
    if sub_items and sub_items.data:
        return sub_items.data[0]
    return None


def _interval_months(recurring: Any) -> int | None:
    if not recurring:
        return None
    count = getattr(recurring, "interval_count", 1) or 1
    if recurring.interval == "year":
        return 12 * count
    if recurring.interval == "month":
        return count
    return None


def to_external_subscription(stripe_sub: Any) -> ExternalSubscription:
    item = _first_item(stripe_sub)
    price = item.price if item else None
    # Since API 2025-08-27 the current period lives on the subscription item.
    period_start = getattr(item, "current_period_start", None) if item else None
    period_end = getattr(item, "current_period_end", None) if item else None
    return ExternalSubscription(
        id=stripe_sub.id,
        customer_id=_id_of(stripe_sub.customer),
        status=stripe_sub.status,
        price_id=price.id if price else None,
        unit_amount=from_minor_units(price.unit_amount) if price else None,
        currency=price.currency if price else getattr(stripe_sub, "currency", None),
        current_period_start=ts_to_naive(period_start),
        current_period_end=ts_to_naive(period_end),
        trial_end=ts_to_naive(getattr(stripe_sub, "trial_end", None)),
        cancel_at_period_end=bool(getattr(stripe_sub, "cancel_at_period_end", False)),
        item_id=item.id if item else None,
    )


def _to_external_customer(customer: Any) -> ExternalCustomer:
    return ExternalCustomer(
        id=customer.id,
        email=getattr(customer, "email", None),
        name=getattr(customer, "name", None),
        deleted=bool(getattr(customer, "deleted", False)),
        metadata=dict(getattr(customer, "metadata", None) or {}),
    )


def _to_external_product(product: Any) -> ExternalProduct:
    return ExternalProduct(
        id=product.id,
        name=product.name,
        description=getattr(product, "description", None),
        active=bool(product.active),
    )


def _to_external_price(price: Any) -> ExternalPrice:
    return ExternalPrice(
        id=price.id,
        product_id=_id_of(price.product),
        unit_amount=from_minor_units(price.unit_amount),
        currency=price.currency,
        active=bool(price.active),
        interval_months=_interval_months(getattr(price, "recurring", None)),
    )


class StripeGateway:
    """``PaymentGateway`` backed by ``stripe.StripeClient`` with async HTTPX transport.

    Every call is bounded by ``timeout_seconds``. Connection problems, rate
    limits, 5xx responses and timeouts raise ``TransientUpstreamError``;
    ``resource_missing`` raises ``NotFoundError``; any other Stripe rejection
    raises ``GatewayError``.
    """

    def __init__(
        self,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        max_network_retries: int = 0,
        webhook_tolerance_seconds: int = 300,
    ) -> None:
        self._client = StripeClient(
            api_key,
            http_client=stripe.HTTPXClient(),
            max_network_retries=max_network_retries,
        )
        self._timeout = timeout_seconds
        self._tolerance = webhook_tolerance_seconds

    @classmethod
    def from_settings(cls, settings) -> "StripeGateway":
        return cls(
            settings.stripe_secret_key,
            timeout_seconds=settings.stripe_timeout_seconds,
            max_network_retries=settings.stripe_max_network_retries,
            webhook_tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )

    async def _call(self, operation: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.warning("Stripe %s timed out after %.1fs", operation, self._timeout)
            raise TransientUpstreamError(f"Stripe {operation} timed out") from e
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning("Stripe %s transient failure: %s", operation, e)
            raise TransientUpstreamError(f"Stripe {operation} failed: {e.user_message or e}") from e
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                raise NotFoundError(f"Stripe {operation}: {e.user_message or e}") from e
            logger.error("Stripe %s rejected: %s", operation, e)
            raise GatewayError(f"Stripe {operation} rejected: {e.user_message or e}") from e
        except stripe.APIError as e:
            logger.warning("Stripe %s server error: %s", operation, e)
            raise TransientUpstreamError(f"Stripe {operation} failed: {e}") from e
        except stripe.StripeError as e:
            logger.error("Stripe %s error: %s", operation, e)
            raise GatewayError(f"Stripe {operation} failed: {e.user_message or e}") from e

    async def _retrieve_or_none(self, operation: str, awaitable):
        try:
            return await self._call(operation, awaitable)
        except NotFoundError:
            return None

    # --- Customers ---

    async def create_customer(self, email: str, name: str, user_id: str) -> ExternalCustomer:
        logger.info("Creating Stripe customer for user %s (%s)", user_id, email)
        customer = await self._call(
            "create_customer",
            self._client.v1.customers.create_async(
                params={"email": email, "name": name, "metadata": {"user_id": user_id}}
            ),
        )
        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return _to_external_customer(customer)

    async def retrieve_customer(self, customer_id: str) -> ExternalCustomer | None:
        customer = await self._retrieve_or_none(
            "retrieve_customer", self._client.v1.customers.retrieve_async(customer_id)
        )
        return _to_external_customer(customer) if customer is not None else None

    async def update_customer(
        self, customer_id: str, *, email: str | None = None, name: str | None = None
    ) -> ExternalCustomer:
        params: dict[str, Any] = {}
        if email is not None:
            params["email"] = email
        if name is not None:
            params["name"] = name
        customer = await self._call(
            "update_customer", self._client.v1.customers.update_async(customer_id, params=params)
        )
        return _to_external_customer(customer)

    # --- Subscriptions ---

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        *,
        trial_days: int = 0,
        metadata: dict[str, str] | None = None,
    ) -> ExternalSubscription:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "metadata": metadata or {},
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        logger.info("Creating Stripe subscription for customer %s, price %s", customer_id, price_id)
        stripe_sub = await self._call(
            "create_subscription", self._client.v1.subscriptions.create_async(params=params)
        )
        return to_external_subscription(stripe_sub)

    async def retrieve_subscription(self, subscription_id: str) -> ExternalSubscription | None:
        stripe_sub = await self._retrieve_or_none(
            "retrieve_subscription", self._client.v1.subscriptions.retrieve_async(subscription_id)
        )
        return to_external_subscription(stripe_sub) if stripe_sub is not None else None

    async def cancel_subscription(self, subscription_id: str) -> ExternalSubscription:
        logger.info("Cancelling Stripe subscription %s", subscription_id)
        stripe_sub = await self._call(
            "cancel_subscription", self._client.v1.subscriptions.cancel_async(subscription_id)
        )
        return to_external_subscription(stripe_sub)

    async def change_subscription_price(
        self, subscription_id: str, new_price_id: str
    ) -> ExternalSubscription:
        current = await self.retrieve_subscription(subscription_id)
        if current is None:
            raise NotFoundError(f"Stripe subscription {subscription_id} not found")
        # Proration is computed locally and billed as an invoice item.
        stripe_sub = await self._call(
            "change_subscription_price",
            self._client.v1.subscriptions.update_async(
                subscription_id,
                params={
                    "items": [{"id": current.item_id, "price": new_price_id}],
                    "proration_behavior": "none",
                },
            ),
        )
        logger.info("Stripe subscription %s moved to price %s", subscription_id, new_price_id)
        return to_external_subscription(stripe_sub)

    # --- Payments ---

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethodInfo]:
        result = await self._call(
            "list_payment_methods",
            self._client.v1.payment_methods.list_async(
                params={"customer": customer_id, "type": "card"}
            ),
        )
        methods = []
        for pm in result.data:
            card = getattr(pm, "card", None)
            methods.append(
                PaymentMethodInfo(
                    id=pm.id,
                    brand=getattr(card, "brand", None),
                    last4=getattr(card, "last4", None),
                    exp_month=getattr(card, "exp_month", None),
                    exp_year=getattr(card, "exp_year", None),
                )
            )
        return methods

    async def create_invoice_item(
        self,
        customer_id: str,
        amount: Decimal,
        currency: str,
        *,
        description: str,
        subscription_id: str | None = None,
    ) -> str:
        params: dict[str, Any] = {
            "customer": customer_id,
            "amount": to_minor_units(amount),
            "currency": currency,
            "description": description,
        }
        if subscription_id:
            params["subscription"] = subscription_id
        item = await self._call(
            "create_invoice_item", self._client.v1.invoice_items.create_async(params=params)
        )
        logger.info("Created invoice item %s (%s %s) for %s", item.id, amount, currency, customer_id)
        return item.id

    async def delete_invoice_item(self, item_id: str) -> None:
        """Remove a pending invoice item before it lands on an invoice."""
        await self._call("delete_invoice_item", self._client.v1.invoice_items.delete_async(item_id))
        logger.info("Deleted invoice item %s", item_id)

    async def charge_invoice(
        self,
        customer_id: str,
        amount: Decimal,
        currency: str,
        *,
        description: str,
        metadata: dict[str, str] | None = None,
    ) -> ChargeResult:
        """Invoice ``amount`` to the customer and attempt payment immediately.

        Card declines are a normal outcome and come back as ``failed`` or
        ``requires_action`` rather than raising.
        """
        invoice = await self._call(
            "create_invoice",
            self._client.v1.invoices.create_async(
                params={
                    "customer": customer_id,
                    "currency": currency,
                    "auto_advance": False,
                    "description": description,
                    "metadata": metadata or {},
                }
            ),
        )
        await self._call(
            "create_invoice_item",
            self._client.v1.invoice_items.create_async(
                params={
                    "customer": customer_id,
                    "invoice": invoice.id,
                    "amount": to_minor_units(amount),
                    "currency": currency,
                    "description": description,
                }
            ),
        )
        await self._call("finalize_invoice", self._client.v1.invoices.finalize_invoice_async(invoice.id))
        try:
            paid = await self._call("pay_invoice", self._client.v1.invoices.pay_async(invoice.id))
        except GatewayError as e:
            cause = e.__cause__
            if isinstance(cause, stripe.CardError):
                status = "requires_action" if cause.code == "authentication_required" else "failed"
                logger.info("Invoice %s payment %s: %s", invoice.id, status, cause.user_message)
                return ChargeResult(
                    invoice_id=invoice.id,
                    status=status,
                    amount=amount,
                    currency=currency,
                    failure_reason=cause.user_message or str(cause),
                )
            raise
        return ChargeResult(
            invoice_id=paid.id,
            status="paid" if paid.status == "paid" else "failed",
            amount=from_minor_units(paid.amount_paid) or amount,
            currency=paid.currency,
            payment_intent_id=_id_of(getattr(paid, "payment_intent", None)),
            attempt=getattr(paid, "attempt_count", 1) or 1,
        )

    async def refund(self, payment_intent_id: str, amount: Decimal) -> RefundResult:
        logger.info("Refunding %s on payment intent %s", amount, payment_intent_id)
        refund = await self._call(
            "refund",
            self._client.v1.refunds.create_async(
                params={"payment_intent": payment_intent_id, "amount": to_minor_units(amount)}
            ),
        )
        return RefundResult(id=refund.id, amount=from_minor_units(refund.amount), status=refund.status)

    # --- Catalog ---

    async def retrieve_product(self, product_id: str) -> ExternalProduct | None:
        product = await self._retrieve_or_none(
            "retrieve_product", self._client.v1.products.retrieve_async(product_id)
        )
        return _to_external_product(product) if product is not None else None

    async def create_product(self, name: str, description: str | None) -> ExternalProduct:
        params: dict[str, Any] = {"name": name}
        if description:
            params["description"] = description
        product = await self._call("create_product", self._client.v1.products.create_async(params=params))
        logger.info("Created Stripe product %s (%s)", product.id, name)
        return _to_external_product(product)

    async def update_product(
        self, product_id: str, *, name: str | None = None, description: str | None = None
    ) -> ExternalProduct:
        params: dict[str, Any] = {}
        if name is not None:
            params["name"] = name
        if description is not None:
            params["description"] = description
        product = await self._call(
            "update_product", self._client.v1.products.update_async(product_id, params=params)
        )
        return _to_external_product(product)

    async def retrieve_price(self, price_id: str) -> ExternalPrice | None:
        price = await self._retrieve_or_none(
            "retrieve_price", self._client.v1.prices.retrieve_async(price_id)
        )
        return _to_external_price(price) if price is not None else None

    async def create_price(
        self, product_id: str, amount: Decimal, currency: str, interval_months: int
    ) -> ExternalPrice:
        recurring = (
            {"interval": "year", "interval_count": interval_months // 12}
            if interval_months % 12 == 0
            else {"interval": "month", "interval_count": interval_months}
        )
        price = await self._call(
            "create_price",
            self._client.v1.prices.create_async(
                params={
                    "product": product_id,
                    "unit_amount": to_minor_units(amount),
                    "currency": currency,
                    "recurring": recurring,
                }
            ),
        )
        logger.info("Created Stripe price %s for product %s", price.id, product_id)
        return _to_external_price(price)

    def verify_event_signature(self, payload: bytes, signature_header: str, secret: str) -> bool:
        return verify_event_signature(payload, signature_header, secret, self._tolerance)
