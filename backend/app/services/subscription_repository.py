"""Subscription repository: loads and persists subscriptions and their records.

Flush and commit failures are translated into the billing error taxonomy:
a version mismatch or a unique-key race is a ``ConflictError``, a lost
connection is a ``TransientUpstreamError``.
"""

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.billing.errors import ConflictError, NotFoundError, TransientUpstreamError
from app.billing.status import BILLABLE_STATUSES, SubscriptionStatus
from app.models.billing_record import BillingRecord
from app.models.history import ProcessedWebhookEvent, SubscriptionStatusHistory
from app.models.plan import SubscriptionPlan
from app.models.subscription import Subscription
from app.models.user import User

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """Data access for one session. Callers own the transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # --- Subscriptions ---

    async def get(self, subscription_id: uuid.UUID) -> Subscription | None:
        return await self.session.get(Subscription, subscription_id)

    async def get_or_raise(self, subscription_id: uuid.UUID) -> Subscription:
        subscription = await self.get(subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    async def get_for_update(self, subscription_id: uuid.UUID) -> Subscription:
        """Load a subscription with a row lock (no-op on SQLite), refreshing any cached copy."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    async def find_by_external_id(self, external_subscription_id: str) -> Subscription | None:
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.external_subscription_id == external_subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: uuid.UUID) -> Sequence[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        return result.scalars().all()

    async def list_due_for_billing(self, now: datetime) -> list[uuid.UUID]:
        result = await self.session.execute(
            select(Subscription.id)
            .where(
                Subscription.next_billing_date <= now,
                Subscription.status.in_([s.value for s in BILLABLE_STATUSES]),
            )
            .order_by(Subscription.next_billing_date)
        )
        return list(result.scalars().all())

    async def list_failed_payments(self) -> Sequence[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.status == SubscriptionStatus.PAYMENT_FAILED.value)
            .order_by(Subscription.last_payment_failed_at)
        )
        return result.scalars().all()

    def add_history(
        self,
        subscription: Subscription,
        from_status: str,
        to_status: str,
        reason: str | None,
        actor: str,
        changed_at: datetime,
    ) -> None:
        self.session.add(
            SubscriptionStatusHistory(
                subscription_id=subscription.id,
                from_status=from_status,
                to_status=to_status,
                reason=reason,
                actor=actor,
                changed_at=changed_at,
            )
        )

    async def list_history(self, subscription_id: uuid.UUID) -> Sequence[SubscriptionStatusHistory]:
        result = await self.session.execute(
            select(SubscriptionStatusHistory)
            .where(SubscriptionStatusHistory.subscription_id == subscription_id)
            .order_by(SubscriptionStatusHistory.changed_at)
        )
        return result.scalars().all()

    # --- Billing records ---

    async def get_billing_record(self, record_id: uuid.UUID) -> BillingRecord | None:
        return await self.session.get(BillingRecord, record_id)

    async def find_billing_record(
        self, external_invoice_id: str, status: str, payment_attempt: int | None = None
    ) -> BillingRecord | None:
        stmt = select(BillingRecord).where(
            BillingRecord.external_invoice_id == external_invoice_id,
            BillingRecord.status == status,
        )
        if payment_attempt is not None:
            stmt = stmt.where(BillingRecord.payment_attempt == payment_attempt)
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def list_billing_records(self, subscription_id: uuid.UUID) -> Sequence[BillingRecord]:
        result = await self.session.execute(
            select(BillingRecord)
            .where(BillingRecord.subscription_id == subscription_id)
            .order_by(BillingRecord.billed_at, BillingRecord.created_at)
        )
        return result.scalars().all()

    def add_billing_record(self, record: BillingRecord) -> BillingRecord:
        self.session.add(record)
        return record

    # --- Plans & users ---

    async def get_plan(self, plan_id: uuid.UUID) -> SubscriptionPlan | None:
        return await self.session.get(SubscriptionPlan, plan_id)

    async def get_plan_or_raise(self, plan_id: uuid.UUID) -> SubscriptionPlan:
        plan = await self.get_plan(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found")
        return plan

    async def get_plan_by_price_id(self, stripe_price_id: str) -> SubscriptionPlan | None:
        result = await self.session.execute(
            select(SubscriptionPlan).where(SubscriptionPlan.stripe_price_id == stripe_price_id)
        )
        return result.scalars().first()

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        return await self.session.get(User, user_id)

    # --- Webhook deliveries ---

    async def get_webhook_event(self, delivery_id: str) -> ProcessedWebhookEvent | None:
        result = await self.session.execute(
            select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.delivery_id == delivery_id)
        )
        return result.scalar_one_or_none()

    async def mark_webhook_event(
        self,
        delivery_id: str,
        event_type: str,
        *,
        received_at: datetime,
        processed_at: datetime,
        is_success: bool,
        outcome: str,
        attempt_count: int,
        duration_ms: int,
        error_kind: str | None = None,
        error_message: str | None = None,
    ) -> ProcessedWebhookEvent:
        marker = await self.get_webhook_event(delivery_id)
        if marker is None:
            marker = ProcessedWebhookEvent(delivery_id=delivery_id, event_type=event_type, received_at=received_at)
            self.session.add(marker)
        marker.processed_at = processed_at
        marker.is_success = is_success
        marker.outcome = outcome
        marker.attempt_count = attempt_count
        marker.processing_duration_ms = duration_ms
        marker.error_kind = error_kind
        marker.error_message = error_message
        return marker

    async def webhook_stats(self, since: datetime | None = None) -> dict[str, object]:
        stmt = select(
            ProcessedWebhookEvent.event_type,
            ProcessedWebhookEvent.outcome,
            func.count(),
            func.avg(ProcessedWebhookEvent.processing_duration_ms),
        ).group_by(ProcessedWebhookEvent.event_type, ProcessedWebhookEvent.outcome)
        if since is not None:
            stmt = stmt.where(ProcessedWebhookEvent.received_at >= since)
        rows = (await self.session.execute(stmt)).all()

        total = sum(count for _, _, count, _ in rows)
        failed = sum(count for _, outcome, count, _ in rows if outcome in ("rejected", "failed"))
        by_type: dict[str, dict[str, int]] = {}
        durations = []
        for event_type, outcome, count, avg_ms in rows:
            by_type.setdefault(event_type, {})[outcome or "unknown"] = count
            if avg_ms is not None:
                durations.append((float(avg_ms), count))
        weight = sum(count for _, count in durations)
        return {
            "total": total,
            "failed": failed,
            "success_rate": round((total - failed) / total, 4) if total else 1.0,
            "avg_processing_ms": round(sum(avg * count for avg, count in durations) / weight, 1) if weight else None,
            "by_type": by_type,
        }

    # --- Persistence ---

    async def save(self, *objects) -> None:
        """Flush pending changes, mapping database failures to billing errors."""
        for obj in objects:
            self.session.add(obj)
        try:
            await self.session.flush()
        except (StaleDataError, IntegrityError, OperationalError) as e:
            raise _translate(e) from e

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except (StaleDataError, IntegrityError, OperationalError) as e:
            raise _translate(e) from e


def _translate(error: Exception) -> Exception:
    if isinstance(error, StaleDataError):
        logger.info("Concurrent update detected: %s", error)
        return ConflictError("Subscription was modified concurrently; re-read and retry")
    if isinstance(error, IntegrityError):
        logger.info("Integrity conflict: %s", error.orig)
        return ConflictError(f"Conflicting write: {error.orig}")
    logger.warning("Database unavailable: %s", error)
    return TransientUpstreamError("Database temporarily unavailable")
