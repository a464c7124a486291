"""Reconciliation: detect and repair drift between local records and Stripe.

Ownership rules:
- Financial and status fields belong to Stripe; repairs pull them locally.
- Descriptive fields (names, descriptions, email) belong to us; repairs push them.
- Missing Stripe resources are created from the local record.

Each discrepancy is repaired on its own and successes are kept even when a
later field fails.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.billing.errors import (
    BillingError,
    NotFoundError,
    TransientUpstreamError,
    UpstreamUnavailable,
    ValidationError,
)
from app.billing.gateway import ExternalSubscription, PaymentGateway
from app.billing.lifecycle import BillingPolicy, LifecycleStateMachine
from app.billing.retry import retrying
from app.billing.sinks import SideEffectBuffer
from app.billing.status import SubscriptionStatus, map_external_status
from app.models.plan import SubscriptionPlan
from app.models.subscription import Subscription
from app.models.user import User
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("plan", "subscription", "customer")

INFO = "info"
WARNING = "warning"
CRITICAL = "critical"

PULLED = "pulled"
PUSHED = "pushed"
CREATED = "created"

# Local escalations Stripe has no separate status for.
_EQUIVALENT_STATUSES = {
    SubscriptionStatus.PAYMENT_ACTION_REQUIRED: SubscriptionStatus.PAYMENT_FAILED,
    SubscriptionStatus.SUSPENDED: SubscriptionStatus.PAYMENT_FAILED,
}


@dataclass
class SyncDiscrepancy:
    entity_type: str
    entity_id: str
    field: str
    local_value: Any
    external_value: Any
    severity: str


@dataclass
class FieldRepair:
    field: str
    action: str
    success: bool
    error: str | None = None


@dataclass
class RepairResult:
    entity_type: str
    entity_id: str
    status: str
    repairs: list[FieldRepair] = field(default_factory=list)
    discrepancies: list[SyncDiscrepancy] = field(default_factory=list)


def _same_moment(local: datetime | None, external: datetime | None) -> bool:
    if local is None or external is None:
        return local is external
    return abs((local - external).total_seconds()) < 1


def _status_matches(local: SubscriptionStatus, external_status: str | None) -> bool:
    mapped = map_external_status(external_status)
    if local is mapped:
        return True
    if local is SubscriptionStatus.PAUSED:
        # Pauses are local; Stripe keeps billing state as active.
        return external_status in ("active", "paused")
    return _EQUIVALENT_STATUSES.get(local) is mapped


class ReconciliationService:
    def __init__(
        self,
        repository: SubscriptionRepository,
        gateway: PaymentGateway,
        effects: SideEffectBuffer,
        *,
        policy: BillingPolicy | None = None,
        max_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self._effects = effects
        self._machine = LifecycleStateMachine(repository, effects, policy)
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay_seconds

    async def _fetch(self, operation: str, fetch, *args):
        """Call a gateway read with retries; exhausted retries never look like "no drift"."""
        try:
            async for attempt in retrying(self._max_attempts, self._retry_delay, (TransientUpstreamError,)):
                with attempt:
                    return await fetch(*args)
        except TransientUpstreamError as e:
            logger.error("Stripe unreachable during %s: %s", operation, e.message)
            raise UpstreamUnavailable(f"Payment processor unavailable during {operation}") from e

    # ------------------------------------------------------------------
    # validate
    # ------------------------------------------------------------------

    async def validate(self, entity_type: str, entity_id: str | uuid.UUID) -> list[SyncDiscrepancy]:
        """Compare the local entity with Stripe. Never mutates."""
        if entity_type == "subscription":
            subscription = await self._load_subscription(entity_id)
            discrepancies, _ = await self._validate_subscription(subscription)
        elif entity_type == "plan":
            plan = await self._load_plan(entity_id)
            discrepancies, _ = await self._validate_plan(plan)
        elif entity_type == "customer":
            user = await self._load_user(entity_id)
            discrepancies, _ = await self._validate_customer(user)
        else:
            raise ValidationError(f"Unknown entity type {entity_type!r}; expected one of {', '.join(ENTITY_TYPES)}")
        if discrepancies:
            logger.info("%s %s has %d discrepancies", entity_type, entity_id, len(discrepancies))
        return discrepancies

    async def _validate_subscription(
        self, subscription: Subscription
    ) -> tuple[list[SyncDiscrepancy], ExternalSubscription | None]:
        entity_id = str(subscription.id)

        def drift(name: str, local: Any, external: Any, severity: str) -> SyncDiscrepancy:
            return SyncDiscrepancy("subscription", entity_id, name, local, external, severity)

        if not subscription.external_subscription_id:
            return [drift("external_subscription_id", None, None, CRITICAL)], None

        external = await self._fetch(
            "subscription fetch", self._gateway.retrieve_subscription, subscription.external_subscription_id
        )
        if external is None:
            return [drift("external_subscription_id", subscription.external_subscription_id, None, CRITICAL)], None

        discrepancies = []
        if not _status_matches(subscription.status_enum, external.status):
            discrepancies.append(drift("status", subscription.status, external.status, CRITICAL))
        if external.unit_amount is not None and external.unit_amount != subscription.current_price:
            discrepancies.append(drift("current_price", subscription.current_price, external.unit_amount, WARNING))
        if external.current_period_end is not None and not _same_moment(
            subscription.next_billing_date, external.current_period_end
        ):
            discrepancies.append(
                drift("next_billing_date", subscription.next_billing_date, external.current_period_end, WARNING)
            )
        return discrepancies, external

    async def _validate_plan(self, plan: SubscriptionPlan) -> tuple[list[SyncDiscrepancy], Any]:
        entity_id = str(plan.id)

        def drift(name: str, local: Any, external: Any, severity: str) -> SyncDiscrepancy:
            return SyncDiscrepancy("plan", entity_id, name, local, external, severity)

        product = None
        if plan.stripe_product_id:
            product = await self._fetch("product fetch", self._gateway.retrieve_product, plan.stripe_product_id)
        if product is None:
            return [drift("stripe_product_id", plan.stripe_product_id, None, CRITICAL)], None

        discrepancies = []
        if product.name != plan.name:
            discrepancies.append(drift("name", plan.name, product.name, INFO))
        if (product.description or None) != (plan.description or None):
            discrepancies.append(drift("description", plan.description, product.description, INFO))
        if product.active != plan.is_active:
            discrepancies.append(drift("is_active", plan.is_active, product.active, WARNING))

        price = None
        if plan.stripe_price_id:
            price = await self._fetch("price fetch", self._gateway.retrieve_price, plan.stripe_price_id)
        if price is None:
            discrepancies.append(drift("stripe_price_id", plan.stripe_price_id, None, CRITICAL))
        elif price.unit_amount is not None and price.unit_amount != plan.price:
            discrepancies.append(drift("price", plan.price, price.unit_amount, WARNING))
        return discrepancies, product

    async def _validate_customer(self, user: User) -> tuple[list[SyncDiscrepancy], Any]:
        entity_id = str(user.id)

        def drift(name: str, local: Any, external: Any, severity: str) -> SyncDiscrepancy:
            return SyncDiscrepancy("customer", entity_id, name, local, external, severity)

        customer = None
        if user.stripe_customer_id:
            customer = await self._fetch("customer fetch", self._gateway.retrieve_customer, user.stripe_customer_id)
        if customer is None or customer.deleted:
            return [drift("stripe_customer_id", user.stripe_customer_id, None, CRITICAL)], None

        discrepancies = []
        if customer.email != user.email:
            discrepancies.append(drift("email", user.email, customer.email, INFO))
        if customer.name != user.name:
            discrepancies.append(drift("name", user.name, customer.name, INFO))
        return discrepancies, customer

    # ------------------------------------------------------------------
    # repair
    # ------------------------------------------------------------------

    async def repair(self, entity_type: str, entity_id: str | uuid.UUID, actor: str) -> RepairResult:
        """Re-validate, then fix each discrepancy independently. The caller commits."""
        if entity_type == "subscription":
            subscription = await self._load_subscription(entity_id)
            discrepancies, external = await self._validate_subscription(subscription)
            repairs = await self._repair_subscription(subscription, discrepancies, external, actor)
        elif entity_type == "plan":
            plan = await self._load_plan(entity_id)
            discrepancies, _ = await self._validate_plan(plan)
            repairs = await self._repair_plan(plan, discrepancies, actor)
        elif entity_type == "customer":
            user = await self._load_user(entity_id)
            discrepancies, _ = await self._validate_customer(user)
            repairs = await self._repair_customer(user, discrepancies, actor)
        else:
            raise ValidationError(f"Unknown entity type {entity_type!r}; expected one of {', '.join(ENTITY_TYPES)}")

        result = RepairResult(
            entity_type=entity_type,
            entity_id=str(entity_id),
            status=_overall_status(repairs, discrepancies),
            repairs=repairs,
            discrepancies=discrepancies,
        )
        logger.info(
            "Repair of %s %s by %s: %s (%d field(s))", entity_type, entity_id, actor, result.status, len(repairs)
        )
        return result

    async def _run(
        self,
        repairs: list[FieldRepair],
        actor: str,
        entity_type: str,
        entity_id: str,
        name: str,
        action: str,
        before: Any,
        fix,
    ) -> None:
        try:
            after = await fix()
        except BillingError as e:
            logger.warning("Repair of %s %s field %s failed: %s", entity_type, entity_id, name, e.message)
            repairs.append(FieldRepair(name, action, False, e.message))
            return
        repairs.append(FieldRepair(name, action, True))
        self._effects.audit(
            actor, f"reconciliation.{action}", entity_type, entity_id, {name: before}, {name: after}
        )

    async def _repair_subscription(
        self,
        subscription: Subscription,
        discrepancies: list[SyncDiscrepancy],
        external: ExternalSubscription | None,
        actor: str,
    ) -> list[FieldRepair]:
        repairs: list[FieldRepair] = []
        entity_id = str(subscription.id)

        for d in discrepancies:
            if d.field == "external_subscription_id" and d.local_value is None:

                async def create() -> str:
                    nonlocal external
                    external = await self._create_external_subscription(subscription)
                    return external.id

                await self._run(repairs, actor, "subscription", entity_id, d.field, CREATED, None, create)
                if external is not None:
                    # A new Stripe subscription has its own status and period; adopt them too.
                    remaining, _ = await self._validate_subscription(subscription)
                    for follow_up in remaining:
                        await self._pull_subscription_field(repairs, subscription, follow_up, external, actor)
            elif d.field == "external_subscription_id":

                async def missing() -> str:
                    raise NotFoundError(
                        f"Stripe subscription {d.local_value} no longer exists; a new subscription is required"
                    )

                await self._run(repairs, actor, "subscription", entity_id, d.field, CREATED, d.local_value, missing)
            else:
                await self._pull_subscription_field(repairs, subscription, d, external, actor)
        return repairs

    async def _pull_subscription_field(
        self,
        repairs: list[FieldRepair],
        subscription: Subscription,
        d: SyncDiscrepancy,
        external: ExternalSubscription,
        actor: str,
    ) -> None:
        async def pull():
            if d.field == "status":
                await self._machine.apply(
                    subscription, map_external_status(external.status), "reconciled with processor", actor=actor
                )
                return subscription.status
            if d.field == "current_price":
                subscription.current_price = external.unit_amount
            elif d.field == "next_billing_date":
                subscription.next_billing_date = external.current_period_end
            await self._repository.save(subscription)
            return getattr(subscription, d.field)

        await self._run(repairs, actor, "subscription", str(subscription.id), d.field, PULLED, d.local_value, pull)

    async def _create_external_subscription(self, subscription: Subscription) -> ExternalSubscription:
        plan = subscription.plan
        if not plan.stripe_price_id:
            raise ValidationError(f"Plan {plan.id} has no Stripe price; repair the plan first")
        user = await self._repository.get_user(subscription.user_id)
        customer_id = subscription.external_customer_id or user.stripe_customer_id
        if not customer_id:
            customer = await self._gateway.create_customer(user.email, user.name, str(user.id))
            user.stripe_customer_id = customer.id
            customer_id = customer.id
        external = await self._gateway.create_subscription(
            customer_id,
            plan.stripe_price_id,
            metadata={"subscription_id": str(subscription.id), "user_id": str(user.id)},
        )
        subscription.external_subscription_id = external.id
        subscription.external_customer_id = customer_id
        await self._repository.save(subscription, user)
        return external

    async def _repair_plan(
        self, plan: SubscriptionPlan, discrepancies: list[SyncDiscrepancy], actor: str
    ) -> list[FieldRepair]:
        repairs: list[FieldRepair] = []
        entity_id = str(plan.id)

        for d in discrepancies:
            if d.field == "stripe_product_id":

                async def create_product() -> str:
                    product = await self._gateway.create_product(plan.name, plan.description)
                    price = await self._gateway.create_price(
                        product.id, plan.price, plan.currency, plan.billing_interval_months
                    )
                    plan.stripe_product_id = product.id
                    plan.stripe_price_id = price.id
                    await self._repository.save(plan)
                    return product.id

                await self._run(repairs, actor, "plan", entity_id, d.field, CREATED, d.local_value, create_product)
            elif d.field == "stripe_price_id":

                async def create_price() -> str:
                    price = await self._gateway.create_price(
                        plan.stripe_product_id, plan.price, plan.currency, plan.billing_interval_months
                    )
                    plan.stripe_price_id = price.id
                    await self._repository.save(plan)
                    return price.id

                await self._run(repairs, actor, "plan", entity_id, d.field, CREATED, d.local_value, create_price)
            elif d.field in ("name", "description"):

                async def push(name=d.field) -> Any:
                    await self._gateway.update_product(plan.stripe_product_id, **{name: getattr(plan, name) or ""})
                    return getattr(plan, name)

                await self._run(repairs, actor, "plan", entity_id, d.field, PUSHED, d.external_value, push)
            else:

                async def pull(d=d) -> Any:
                    setattr(plan, d.field, d.external_value)
                    await self._repository.save(plan)
                    return d.external_value

                await self._run(repairs, actor, "plan", entity_id, d.field, PULLED, d.local_value, pull)
        return repairs

    async def _repair_customer(self, user: User, discrepancies: list[SyncDiscrepancy], actor: str) -> list[FieldRepair]:
        repairs: list[FieldRepair] = []
        entity_id = str(user.id)

        for d in discrepancies:
            if d.field == "stripe_customer_id":

                async def create() -> str:
                    customer = await self._gateway.create_customer(user.email, user.name, str(user.id))
                    user.stripe_customer_id = customer.id
                    await self._repository.save(user)
                    return customer.id

                await self._run(repairs, actor, "customer", entity_id, d.field, CREATED, d.local_value, create)
            else:

                async def push(name=d.field) -> Any:
                    await self._gateway.update_customer(user.stripe_customer_id, **{name: getattr(user, name)})
                    return getattr(user, name)

                await self._run(repairs, actor, "customer", entity_id, d.field, PUSHED, d.external_value, push)
        return repairs

    # ------------------------------------------------------------------
    # loading
    # ------------------------------------------------------------------

    async def _load_subscription(self, entity_id: str | uuid.UUID) -> Subscription:
        subscription = await self._repository.get(_as_uuid(entity_id))
        if subscription is None:
            raise NotFoundError(f"Subscription {entity_id} not found")
        return subscription

    async def _load_plan(self, entity_id: str | uuid.UUID) -> SubscriptionPlan:
        plan = await self._repository.get_plan(_as_uuid(entity_id))
        if plan is None:
            raise NotFoundError(f"Plan {entity_id} not found")
        return plan

    async def _load_user(self, entity_id: str | uuid.UUID) -> User:
        user = await self._repository.get_user(_as_uuid(entity_id))
        if user is None:
            raise NotFoundError(f"Customer {entity_id} not found")
        return user


def _as_uuid(value: str | uuid.UUID) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(value)
    except ValueError as e:
        raise ValidationError(f"Invalid id {value!r}") from e


def _overall_status(repairs: list[FieldRepair], discrepancies: list[SyncDiscrepancy]) -> str:
    if not discrepancies:
        return "clean"
    succeeded = sum(1 for r in repairs if r.success)
    if succeeded == len(repairs):
        return "repaired"
    if succeeded:
        return "partial"
    return "failed"

