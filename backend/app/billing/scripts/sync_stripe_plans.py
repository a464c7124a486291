"""Create or repair the Stripe products and prices behind every local plan.

Run inside the backend container after seeding plans:
    python -m app.billing.scripts.sync_stripe_plans

Plans without a Stripe product get one (plus a recurring price); existing
products get their name and description pushed from the local plan.
"""

import asyncio

from sqlalchemy import select

from app.billing.gateway import StripeGateway
from app.billing.lifecycle import BillingPolicy
from app.billing.reconciliation import ReconciliationService
from app.billing.sinks import DatabaseAuditSink, LoggingNotificationSink, SideEffectBuffer
from app.config import settings
from app.database import async_session_factory, engine
from app.models.plan import SubscriptionPlan
from app.services.subscription_repository import SubscriptionRepository


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    gateway = StripeGateway.from_settings(settings)
    policy = BillingPolicy.from_settings(settings)

    async with async_session_factory() as db:
        plans = (await db.execute(select(SubscriptionPlan).order_by(SubscriptionPlan.price))).scalars().all()
        if not plans:
            print("No plans found. Run: python -m scripts.seed_data")
            return

        effects = SideEffectBuffer(LoggingNotificationSink(), DatabaseAuditSink(async_session_factory))
        repository = SubscriptionRepository(db)
        service = ReconciliationService(
            repository,
            gateway,
            effects,
            policy=policy,
            max_attempts=settings.reconciliation_max_attempts,
            retry_delay_seconds=settings.reconciliation_retry_delay_seconds,
        )

        for plan in plans:
            result = await service.repair("plan", plan.id, actor="script:sync_stripe_plans")
            print(f"{plan.name}: {result.status}")
            for repair in result.repairs:
                marker = "ok" if repair.success else f"FAILED ({repair.error})"
                print(f"  {repair.action} {repair.field}: {marker}")
            print(f"  product={plan.stripe_product_id} price={plan.stripe_price_id}")

        await repository.commit()
        await effects.flush()

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
