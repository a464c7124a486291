"""Shared test configuration and fixtures.

Each test gets a fresh file-backed SQLite database (aiosqlite) under
``tmp_path``, or the database named by ``TEST_DATABASE_URL`` (tables are
created and dropped around every test). Stripe is replaced by ``FakeGateway``
and the notification/audit sinks by recording fakes.
"""

import hashlib
import hmac
import itertools
import json
import os
import time
import uuid
from collections.abc import AsyncGenerator
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.auth.jwt import create_access_token
from app.billing.dependencies import (
    get_audit_sink,
    get_gateway,
    get_notification_sink,
    get_pipeline,
)
from app.billing.errors import NotFoundError
from app.billing.gateway import (
    ChargeResult,
    ExternalCustomer,
    ExternalPrice,
    ExternalProduct,
    ExternalSubscription,
    PaymentMethodInfo,
    RefundResult,
    verify_event_signature,
)
from app.billing.lifecycle import BillingPolicy
from app.billing.orchestrator import BillingOrchestrator
from app.billing.periods import add_months, utcnow
from app.billing.pipeline import PipelineConfig, WebhookIngestionPipeline
from app.billing.sinks import AuditEntry, Notification
from app.billing.status import SubscriptionStatus
from app.database import Base, get_db, get_session_factory
from app.main import app
from app.models.plan import PlanPrivilege, Privilege, SubscriptionPlan
from app.models.subscription import Subscription
from app.models.user import User

WEBHOOK_SECRET = "whsec_test_secret"


# ---------------------------------------------------------------------------
# Fakes: payment processor and side-effect sinks
# ---------------------------------------------------------------------------


class FakeGateway:
    """In-memory Stripe stand-in.

    ``charge_outcomes`` is a queue of ``paid`` / ``failed`` / ``requires_action``
    consumed by ``charge_invoice`` (default ``paid``). ``fail_with`` maps an
    operation name to exceptions raised, in order, before it succeeds.
    """

    def __init__(self) -> None:
        self.customers: dict[str, ExternalCustomer] = {}
        self.subscriptions: dict[str, ExternalSubscription] = {}
        self.products: dict[str, ExternalProduct] = {}
        self.prices: dict[str, ExternalPrice] = {}
        self.payment_methods: dict[str, list[PaymentMethodInfo]] = {}
        self.invoice_items: list[dict] = []
        self.charges: list[dict] = []
        self.refunds: list[RefundResult] = []
        self.charge_outcomes: list[str] = []
        self.fail_with: dict[str, list[Exception]] = {}
        self.calls: list[str] = []
        self._ids = itertools.count(1)

    def _id(self, prefix: str) -> str:
        return f"{prefix}_fake_{next(self._ids)}"

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        errors = self.fail_with.get(operation)
        if errors:
            raise errors.pop(0)

    # --- customers ---

    async def create_customer(self, email: str, name: str, user_id: str) -> ExternalCustomer:
        self._enter("create_customer")
        customer = ExternalCustomer(self._id("cus"), email, name, metadata={"user_id": user_id})
        self.customers[customer.id] = customer
        return customer

    async def retrieve_customer(self, customer_id: str) -> ExternalCustomer | None:
        self._enter("retrieve_customer")
        return self.customers.get(customer_id)

    async def update_customer(
        self, customer_id: str, *, email: str | None = None, name: str | None = None
    ) -> ExternalCustomer:
        self._enter("update_customer")
        customer = self.customers[customer_id]
        if email is not None:
            customer.email = email
        if name is not None:
            customer.name = name
        return customer

    # --- subscriptions ---

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        *,
        trial_days: int = 0,
        metadata: dict[str, str] | None = None,
    ) -> ExternalSubscription:
        self._enter("create_subscription")
        price = self.prices.get(price_id)
        now = utcnow().replace(microsecond=0)
        interval = (price.interval_months if price else None) or 1
        trial_end = now + timedelta(days=trial_days) if trial_days else None
        subscription = ExternalSubscription(
            id=self._id("sub"),
            customer_id=customer_id,
            status="trialing" if trial_days else "active",
            price_id=price_id,
            unit_amount=price.unit_amount if price else None,
            currency=price.currency if price else "usd",
            current_period_start=now,
            current_period_end=trial_end or add_months(now, interval),
            trial_end=trial_end,
            item_id=self._id("si"),
        )
        self.subscriptions[subscription.id] = subscription
        return subscription

    async def retrieve_subscription(self, subscription_id: str) -> ExternalSubscription | None:
        self._enter("retrieve_subscription")
        return self.subscriptions.get(subscription_id)

    async def cancel_subscription(self, subscription_id: str) -> ExternalSubscription:
        self._enter("cancel_subscription")
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFoundError(f"Stripe subscription {subscription_id} not found")
        subscription.status = "canceled"
        return subscription

    async def change_subscription_price(self, subscription_id: str, new_price_id: str) -> ExternalSubscription:
        self._enter("change_subscription_price")
        subscription = self.subscriptions[subscription_id]
        subscription.price_id = new_price_id
        price = self.prices.get(new_price_id)
        if price is not None:
            subscription.unit_amount = price.unit_amount
        return subscription

    # --- payments ---

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethodInfo]:
        self._enter("list_payment_methods")
        return self.payment_methods.get(customer_id, [])

    async def charge_invoice(
        self,
        customer_id: str,
        amount: Decimal,
        currency: str,
        *,
        description: str,
        metadata: dict[str, str] | None = None,
    ) -> ChargeResult:
        self._enter("charge_invoice")
        status = self.charge_outcomes.pop(0) if self.charge_outcomes else "paid"
        invoice_id = self._id("in")
        self.charges.append(
            {
                "invoice_id": invoice_id,
                "customer_id": customer_id,
                "amount": amount,
                "status": status,
                "metadata": metadata or {},
            }
        )
        return ChargeResult(
            invoice_id=invoice_id,
            status=status,
            amount=amount,
            currency=currency,
            payment_intent_id=self._id("pi") if status == "paid" else None,
            failure_reason={"failed": "Your card was declined.", "requires_action": "Authentication required."}.get(
                status
            ),
        )

    async def create_invoice_item(
        self,
        customer_id: str,
        amount: Decimal,
        currency: str,
        *,
        description: str,
        subscription_id: str | None = None,
    ) -> str:
        self._enter("create_invoice_item")
        item_id = self._id("ii")
        self.invoice_items.append(
            {"id": item_id, "customer_id": customer_id, "amount": amount, "description": description}
        )
        return item_id

    async def delete_invoice_item(self, item_id: str) -> None:
        self._enter("delete_invoice_item")
        self.invoice_items = [item for item in self.invoice_items if item["id"] != item_id]

    async def refund(self, payment_intent_id: str, amount: Decimal) -> RefundResult:
        self._enter("refund")
        refund = RefundResult(self._id("re"), amount, "succeeded")
        self.refunds.append(refund)
        return refund

    # --- catalog ---

    async def retrieve_product(self, product_id: str) -> ExternalProduct | None:
        self._enter("retrieve_product")
        return self.products.get(product_id)

    async def create_product(self, name: str, description: str | None) -> ExternalProduct:
        self._enter("create_product")
        product = ExternalProduct(self._id("prod"), name, description, True)
        self.products[product.id] = product
        return product

    async def update_product(
        self, product_id: str, *, name: str | None = None, description: str | None = None
    ) -> ExternalProduct:
        self._enter("update_product")
        product = self.products[product_id]
        if name is not None:
            product.name = name
        if description is not None:
            product.description = description or None
        return product

    async def retrieve_price(self, price_id: str) -> ExternalPrice | None:
        self._enter("retrieve_price")
        return self.prices.get(price_id)

    async def create_price(
        self, product_id: str, amount: Decimal, currency: str, interval_months: int
    ) -> ExternalPrice:
        self._enter("create_price")
        price = ExternalPrice(self._id("price"), product_id, amount, currency, True, interval_months)
        self.prices[price.id] = price
        return price

    def verify_event_signature(self, payload: bytes, signature_header: str, secret: str) -> bool:
        return verify_event_signature(payload, signature_header, secret)

    # --- test helpers ---

    def add_catalog(self, plan: SubscriptionPlan) -> None:
        """Register Stripe objects matching a plan's stored ids."""
        if plan.stripe_product_id:
            self.products[plan.stripe_product_id] = ExternalProduct(
                plan.stripe_product_id, plan.name, plan.description, plan.is_active
            )
        if plan.stripe_price_id:
            self.prices[plan.stripe_price_id] = ExternalPrice(
                plan.stripe_price_id,
                plan.stripe_product_id,
                plan.price,
                plan.currency,
                True,
                plan.billing_interval_months,
            )

    def mirror(self, subscription: Subscription, status: str = "active", **changes) -> ExternalSubscription:
        """Register a Stripe subscription that agrees with the local row."""
        external = ExternalSubscription(
            id=subscription.external_subscription_id,
            customer_id=subscription.external_customer_id,
            status=status,
            price_id=subscription.plan.stripe_price_id,
            unit_amount=subscription.current_price,
            currency=subscription.currency,
            current_period_start=subscription.start_date,
            current_period_end=subscription.next_billing_date,
            trial_end=subscription.trial_end_date,
            item_id=self._id("si"),
        )
        external = replace(external, **changes)
        self.subscriptions[external.id] = external
        return external


class RecordingNotificationSink:
    def __init__(self) -> None:
        self.sent: list[Notification] = []
        self.fail = False

    async def notify(self, notification: Notification) -> None:
        if self.fail:
            raise RuntimeError("notification service down")
        self.sent.append(notification)

    def kinds(self) -> list[str]:
        return [n.template_kind for n in self.sent]


class RecordingAuditSink:
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def record(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def actions(self) -> list[str]:
        return [e.action for e in self.entries]


# ---------------------------------------------------------------------------
# Webhook helpers
# ---------------------------------------------------------------------------


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, data_object: dict, *, created: int | None = None, event_id: str | None = None) -> bytes:
    """Serialize a Stripe event envelope."""
    return json.dumps(
        {
            "id": event_id or f"evt_test_{uuid.uuid4().hex[:12]}",
            "object": "event",
            "type": event_type,
            "created": created or int(time.time()),
            "data": {"object": data_object},
        }
    ).encode("utf-8")


def invoice_object(
    subscription: Subscription,
    *,
    invoice_id: str | None = None,
    amount_cents: int = 1000,
    attempt: int = 1,
    failure: str | None = None,
) -> dict:
    obj = {
        "id": invoice_id or f"in_test_{uuid.uuid4().hex[:10]}",
        "object": "invoice",
        "customer": subscription.external_customer_id,
        "subscription": subscription.external_subscription_id,
        "amount_due": amount_cents,
        "amount_paid": amount_cents if failure is None else 0,
        "currency": "usd",
        "attempt_count": attempt,
        "payment_intent": f"pi_test_{uuid.uuid4().hex[:10]}",
    }
    if failure:
        obj["last_finalization_error"] = {"message": failure}
    return obj


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path):
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"
    engine = create_async_engine(url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    if os.getenv("TEST_DATABASE_URL"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Engine components
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifications() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def policy() -> BillingPolicy:
    return BillingPolicy()


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig(webhook_secret=WEBHOOK_SECRET, max_attempts=3, retry_delay_seconds=0)


@pytest.fixture
def pipeline(session_factory, pipeline_config, notifications, audit, policy) -> WebhookIngestionPipeline:
    return WebhookIngestionPipeline(
        session_factory, pipeline_config, notifications=notifications, audit=audit, policy=policy
    )


@pytest.fixture
def orchestrator(session_factory, gateway, pipeline, notifications, audit, policy) -> BillingOrchestrator:
    return BillingOrchestrator(
        session_factory, gateway, pipeline, notifications=notifications, audit=audit, policy=policy
    )


# ---------------------------------------------------------------------------
# Factories (each commits in its own session)
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(session_factory):
    async def _make_user(*, role: str = "patient", is_active: bool = True, stripe_customer_id: str | None = None) -> User:
        unique = uuid.uuid4().hex[:8]
        async with session_factory() as session:
            user = User(
                email=f"{role}-{unique}@test.com",
                name=f"Test {role.title()}",
                role=role,
                is_active=is_active,
                stripe_customer_id=stripe_customer_id,
            )
            session.add(user)
            await session.commit()
            return user

    return _make_user


@pytest.fixture
def make_plan(session_factory, gateway):
    """Create a plan; ``privileges`` maps a name to PlanPrivilege fields."""

    async def _make_plan(
        *,
        name: str | None = None,
        price: str = "10.00",
        interval_months: int = 1,
        trial_days: int = 0,
        is_active: bool = True,
        with_stripe: bool = True,
        privileges: dict[str, dict] | None = None,
    ) -> SubscriptionPlan:
        unique = uuid.uuid4().hex[:8]
        async with session_factory() as session:
            plan = SubscriptionPlan(
                name=name or f"Plan {unique}",
                description=f"Test plan {unique}",
                price=Decimal(price),
                currency="usd",
                billing_interval_months=interval_months,
                trial_days=trial_days,
                is_active=is_active,
                stripe_product_id=f"prod_{unique}" if with_stripe else None,
                stripe_price_id=f"price_{unique}" if with_stripe else None,
            )
            grants = []
            for privilege_name, limits in (privileges or {}).items():
                privilege = await session.scalar(select(Privilege).where(Privilege.name == privilege_name))
                grants.append(PlanPrivilege(privilege=privilege or Privilege(name=privilege_name), **limits))
            plan.privileges = grants
            session.add(plan)
            await session.commit()
        gateway.add_catalog(plan)
        return plan

    return _make_plan


@pytest.fixture
def make_subscription(session_factory, make_user, make_plan, gateway):
    async def _make_subscription(
        *,
        user: User | None = None,
        plan: SubscriptionPlan | None = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        start_date: datetime | None = None,
        next_billing_date: datetime | None = None,
        failed_payment_attempts: int = 0,
        last_payment_failed_at: datetime | None = None,
        external: bool = True,
        mirror: bool = True,
    ) -> Subscription:
        user = user or await make_user(stripe_customer_id=f"cus_{uuid.uuid4().hex[:10]}")
        plan = plan or await make_plan()
        start = start_date or utcnow().replace(microsecond=0) - timedelta(days=10)
        async with session_factory() as session:
            plan = await session.get(SubscriptionPlan, plan.id)
            subscription = Subscription(
                user_id=user.id,
                plan_id=plan.id,
                plan=plan,
                status=status.value,
                current_price=plan.price,
                currency=plan.currency,
                start_date=start,
                next_billing_date=next_billing_date or add_months(start, plan.billing_interval_months),
                failed_payment_attempts=failed_payment_attempts,
                last_payment_failed_at=last_payment_failed_at,
                external_customer_id=user.stripe_customer_id,
                external_subscription_id=f"sub_{uuid.uuid4().hex[:10]}" if external else None,
            )
            session.add(subscription)
            await session.commit()
        if external and mirror:
            gateway.mirror(subscription)
        return subscription

    return _make_subscription


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(session_factory, gateway, notifications, audit, pipeline) -> AsyncGenerator[AsyncClient, None]:
    """httpx AsyncClient with the database, Stripe and sinks replaced by test doubles."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notification_sink] = lambda: notifications
    app.dependency_overrides[get_audit_sink] = lambda: audit
    app.dependency_overrides[get_pipeline] = lambda: pipeline

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


def bearer(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


@pytest_asyncio.fixture
async def patient(make_user) -> User:
    return await make_user(stripe_customer_id=f"cus_{uuid.uuid4().hex[:10]}")


@pytest_asyncio.fixture
async def admin(make_user) -> User:
    return await make_user(role="admin")


@pytest.fixture
def patient_headers(patient: User) -> dict[str, str]:
    return bearer(patient)


@pytest.fixture
def admin_headers(admin: User) -> dict[str, str]:
    return bearer(admin)
