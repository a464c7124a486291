"""Run one billing cycle: charge due subscriptions, then retry failed payments.

Schedule it (cron, k8s CronJob) inside the backend container:
    python -m app.billing.scripts.run_billing_cycle
"""

import asyncio
import logging

from app.billing.dependencies import get_gateway, get_notification_sink, get_policy
from app.billing.orchestrator import BillingOrchestrator
from app.billing.periods import utcnow
from app.billing.pipeline import PipelineConfig, WebhookIngestionPipeline
from app.billing.sinks import DatabaseAuditSink
from app.config import settings
from app.database import async_session_factory, engine

logger = logging.getLogger(__name__)


async def main() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    notifications = get_notification_sink()
    audit = DatabaseAuditSink(async_session_factory)
    policy = get_policy()
    pipeline = WebhookIngestionPipeline(
        async_session_factory,
        PipelineConfig.from_settings(settings),
        notifications=notifications,
        audit=audit,
        policy=policy,
    )
    orchestrator = BillingOrchestrator(
        async_session_factory,
        get_gateway(),
        pipeline,
        notifications=notifications,
        audit=audit,
        policy=policy,
    )

    now = utcnow()
    recurring = await orchestrator.process_recurring_billing(now)
    retries = await orchestrator.retry_failed_payments(now)
    logger.info("Billing cycle at %s done: recurring=%s retries=%s", now, recurring, retries)

    print(
        f"Recurring: {recurring.processed} processed, {recurring.succeeded} paid, "
        f"{recurring.failed} failed, {recurring.skipped} skipped, {recurring.errored} errored"
    )
    print(
        f"Retries:   {retries.processed} processed, {retries.succeeded} paid, "
        f"{retries.failed} failed, {retries.skipped} skipped, {retries.errored} errored"
    )

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
