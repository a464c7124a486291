"""Subscription service: purchase flow and Stripe customer linking."""

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import BillingError, ConflictError, ValidationError
from app.billing.gateway import PaymentGateway
from app.billing.periods import add_months
from app.billing.retry import retrying
from app.billing.status import TERMINAL_STATUSES, SubscriptionStatus
from app.models.subscription import Subscription
from app.models.user import User
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


async def ensure_stripe_customer(db: AsyncSession, gateway: PaymentGateway, user: User) -> str:
    """Ensure the user has a Stripe customer ID. Create one if missing."""
    if user.stripe_customer_id:
        return user.stripe_customer_id

    customer = await gateway.create_customer(
        email=user.email,
        name=user.name or user.email,
        user_id=str(user.id),
    )
    user.stripe_customer_id = customer.id
    await db.flush()
    logger.info("Linked Stripe customer %s to user %s", customer.id, user.id)
    return customer.id


async def _link_external_subscription(
    repository: SubscriptionRepository, subscription: Subscription, external_id: str
) -> None:
    """Store the Stripe subscription id unless a webhook already linked it."""
    async for attempt in retrying(3, 0, (ConflictError,)):
        with attempt:
            await repository.session.refresh(subscription)
            if subscription.external_subscription_id is None:
                subscription.external_subscription_id = external_id
            try:
                await repository.commit()
            except ConflictError:
                await repository.session.rollback()
                raise


async def purchase_subscription(
    db: AsyncSession,
    gateway: PaymentGateway,
    user: User,
    plan_id: uuid.UUID,
    now: datetime,
) -> Subscription:
    """Create a Pending subscription and its Stripe counterpart.

    The subscription becomes Active (or TrialActive) when Stripe reports the
    first successful payment or trial start through webhooks.
    """
    repository = SubscriptionRepository(db)
    plan = await repository.get_plan_or_raise(plan_id)
    if not plan.is_active:
        raise ValidationError(f"Plan {plan.name} is not available for purchase")

    for existing in await repository.list_for_user(user.id):
        if existing.status_enum not in TERMINAL_STATUSES:
            raise ValidationError(
                f"User already has a {existing.status} subscription ({existing.id}); change plan instead"
            )

    customer_id = await ensure_stripe_customer(db, gateway, user)

    trial_end = now + timedelta(days=plan.trial_days) if plan.trial_days else None
    subscription = Subscription(
        user_id=user.id,
        plan_id=plan.id,
        plan=plan,
        status=SubscriptionStatus.PENDING.value,
        current_price=plan.price,
        currency=plan.currency,
        start_date=now,
        next_billing_date=trial_end or add_months(now, plan.billing_interval_months),
        trial_end_date=trial_end,
        external_customer_id=customer_id,
    )
    await repository.save(subscription)
    # Stripe's subscription webhooks can arrive before create_subscription
    # returns; they find this row through metadata.subscription_id.
    await repository.commit()

    if plan.stripe_price_id:
        try:
            external = await gateway.create_subscription(
                customer_id,
                plan.stripe_price_id,
                trial_days=plan.trial_days,
                metadata={"subscription_id": str(subscription.id), "user_id": str(user.id)},
            )
        except BillingError as e:
            logger.error("Stripe rejected subscription %s: %s (%s)", subscription.id, e.message, e.kind)
            await db.delete(subscription)
            await repository.commit()
            raise
        await _link_external_subscription(repository, subscription, external.id)
    else:
        logger.warning("Plan %s has no Stripe price; subscription %s is local only", plan.name, subscription.id)

    logger.info(
        "Created pending subscription %s for user %s on plan %s", subscription.id, user.id, plan.name
    )
    return subscription
