"""Billing orchestrator: recurring charges, renewals, plan changes, retries, refunds.

Charges go through the gateway outside any database transaction; their
outcome is then fed through the webhook pipeline as a synthetic invoice event
so local and Stripe-initiated payments share one code path.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.billing.errors import BillingError, NotFoundError, ValidationError
from app.billing.events import EventKind, InvoicePayload, WebhookEvent
from app.billing.gateway import ChargeResult, PaymentGateway
from app.billing.ledger import PrivilegeLedger
from app.billing.lifecycle import BillingPolicy, snapshot
from app.billing.money import CENT, round_money
from app.billing.periods import period_start_for, utcnow
from app.billing.pipeline import WebhookIngestionPipeline
from app.billing.sinks import AuditSink, NotificationSink, SideEffectBuffer
from app.billing.status import BILLABLE_STATUSES, SubscriptionStatus
from app.models.billing_record import BillingRecord, BillingStatus, BillingType
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"

_CHARGE_EVENT_KINDS = {
    "paid": EventKind.INVOICE_PAYMENT_SUCCEEDED,
    "failed": EventKind.INVOICE_PAYMENT_FAILED,
    "requires_action": EventKind.INVOICE_PAYMENT_ACTION_REQUIRED,
}


@dataclass
class BillingRunSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errored: int = 0

    def count(self, outcome: str) -> None:
        self.processed += 1
        if outcome == SUCCEEDED:
            self.succeeded += 1
        elif outcome == FAILED:
            self.failed += 1
        else:
            self.skipped += 1


@dataclass
class PlanChangeResult:
    subscription_id: uuid.UUID
    old_plan_id: uuid.UUID
    new_plan_id: uuid.UUID
    proration_amount: Decimal
    adjustment_record_id: uuid.UUID | None


@dataclass
class RenewResult:
    subscription_id: uuid.UUID
    outcome: str
    next_billing_date: datetime


@dataclass
class RefundOutcome:
    billing_record_id: uuid.UUID
    refund_id: str
    amount: Decimal
    refunded_total: Decimal


def calculate_proration(
    old_price: Decimal,
    new_price: Decimal,
    next_billing_date: datetime,
    interval_months: int,
    now: datetime,
    rounding: str,
) -> Decimal:
    """Linear proration of a price change over the rest of the current period.

    ``remaining / period_length * (new_price - old_price)``, where the period
    length is the real calendar length of the period ending at
    ``next_billing_date``. Negative amounts are credits.
    """
    period_start = period_start_for(next_billing_date, interval_months)
    period_seconds = Decimal((next_billing_date - period_start).total_seconds())
    remaining_seconds = Decimal(max((next_billing_date - now).total_seconds(), 0))
    if period_seconds <= 0 or remaining_seconds == 0:
        return Decimal("0.00")
    fraction = min(remaining_seconds / period_seconds, Decimal(1))
    return round_money(fraction * (new_price - old_price), rounding)


class BillingOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        pipeline: WebhookIngestionPipeline,
        *,
        notifications: NotificationSink,
        audit: AuditSink,
        policy: BillingPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._pipeline = pipeline
        self._notifications = notifications
        self._audit = audit
        self._policy = policy or BillingPolicy()
        self._clock = clock

    # ------------------------------------------------------------------
    # Recurring billing
    # ------------------------------------------------------------------

    async def process_recurring_billing(self, now: datetime | None = None) -> BillingRunSummary:
        """Charge every Active/TrialActive subscription whose billing date has passed."""
        now = now or self._clock()
        async with self._session_factory() as session:
            due = await SubscriptionRepository(session).list_due_for_billing(now)

        logger.info("Recurring billing run at %s: %d subscription(s) due", now, len(due))
        summary = BillingRunSummary()
        for subscription_id in due:
            try:
                summary.count(await self._charge(subscription_id, now, allowed=BILLABLE_STATUSES))
            except BillingError as e:
                summary.processed += 1
                summary.errored += 1
                logger.error("Recurring charge for %s failed: %s (%s)", subscription_id, e.message, e.kind)
        logger.info("Recurring billing run finished: %s", summary)
        return summary

    async def renew(self, subscription_id: uuid.UUID, now: datetime | None = None) -> RenewResult:
        """Charge one subscription if its billing date has passed; otherwise do nothing."""
        now = now or self._clock()
        async with self._session_factory() as session:
            subscription = await SubscriptionRepository(session).get_or_raise(subscription_id)
            next_billing_date = subscription.next_billing_date
        if next_billing_date > now:
            return RenewResult(subscription_id, "not_due", next_billing_date)

        outcome = await self._charge(subscription_id, now, allowed=BILLABLE_STATUSES)
        async with self._session_factory() as session:
            subscription = await SubscriptionRepository(session).get_or_raise(subscription_id)
            return RenewResult(subscription_id, outcome, subscription.next_billing_date)

    async def retry_failed_payments(self, now: datetime | None = None) -> BillingRunSummary:
        """Re-charge PaymentFailed subscriptions whose exponential backoff has elapsed."""
        now = now or self._clock()
        async with self._session_factory() as session:
            candidates = [
                (s.id, s.failed_payment_attempts, s.last_payment_failed_at)
                for s in await SubscriptionRepository(session).list_failed_payments()
            ]

        summary = BillingRunSummary()
        for subscription_id, attempts, failed_at in candidates:
            backoff = timedelta(hours=self._policy.retry_backoff_hours * 2 ** max(attempts - 1, 0))
            if failed_at is not None and failed_at + backoff > now:
                summary.count(SKIPPED)
                continue
            try:
                summary.count(
                    await self._charge(subscription_id, now, allowed={SubscriptionStatus.PAYMENT_FAILED})
                )
            except BillingError as e:
                summary.processed += 1
                summary.errored += 1
                logger.error("Payment retry for %s failed: %s (%s)", subscription_id, e.message, e.kind)
        logger.info("Failed-payment retry run finished: %s", summary)
        return summary

    async def _charge(self, subscription_id: uuid.UUID, now: datetime, *, allowed) -> str:
        async with self._session_factory() as session:
            repository = SubscriptionRepository(session)
            subscription = await repository.get_or_raise(subscription_id)
            if subscription.status_enum not in allowed:
                logger.info("Skipping charge for %s in status %s", subscription_id, subscription.status)
                return SKIPPED
            user = await repository.get_user(subscription.user_id)
            customer_id = subscription.external_customer_id or (user.stripe_customer_id if user else None)
            if not customer_id:
                raise ValidationError(f"Subscription {subscription_id} has no Stripe customer to charge")
            amount = subscription.current_price
            currency = subscription.currency
            description = f"{subscription.plan.name} subscription"
            external_id = subscription.external_subscription_id

        result = await self._gateway.charge_invoice(
            customer_id,
            amount,
            currency,
            description=description,
            metadata={"subscription_id": str(subscription_id)},
        )
        event = self._charge_event(subscription_id, external_id, customer_id, result)
        await self._pipeline.process(event)
        return SUCCEEDED if result.status == "paid" else FAILED

    def _charge_event(
        self, subscription_id: uuid.UUID, external_id: str | None, customer_id: str, result: ChargeResult
    ) -> WebhookEvent:
        payload = InvoicePayload(
            id=result.invoice_id,
            customer_id=customer_id,
            subscription_id=external_id,
            local_subscription_id=subscription_id,
            amount=result.amount,
            currency=result.currency,
            payment_intent_id=result.payment_intent_id,
            attempt=result.attempt,
            period_end=result.period_end,
            failure_reason=result.failure_reason,
        )
        return WebhookEvent.synthetic(_CHARGE_EVENT_KINDS[result.status], payload, self._clock())

    # ------------------------------------------------------------------
    # Plan change
    # ------------------------------------------------------------------

    async def change_plan(
        self,
        subscription_id: uuid.UUID,
        new_plan_id: uuid.UUID,
        now: datetime | None = None,
        *,
        actor: str = "system",
    ) -> PlanChangeResult:
        """Move a subscription to another plan, billing the prorated difference."""
        now = now or self._clock()
        effects = SideEffectBuffer(self._notifications, self._audit)
        async with self._session_factory() as session:
            repository = SubscriptionRepository(session)
            subscription = await repository.get_or_raise(subscription_id)
            new_plan = await repository.get_plan_or_raise(new_plan_id)
            if subscription.status_enum not in BILLABLE_STATUSES:
                raise ValidationError(f"Cannot change plan while subscription is {subscription.status}")
            if not new_plan.is_active:
                raise ValidationError(f"Plan {new_plan.name} is not available")
            if new_plan.id == subscription.plan_id:
                raise ValidationError("Subscription is already on this plan")

            old_plan_id = subscription.plan_id
            before = snapshot(subscription)
            proration = calculate_proration(
                subscription.current_price,
                new_plan.price,
                subscription.next_billing_date,
                subscription.plan.billing_interval_months,
                now,
                self._policy.proration_rounding,
            )

            if subscription.external_subscription_id and new_plan.stripe_price_id:
                await self._gateway.change_subscription_price(
                    subscription.external_subscription_id, new_plan.stripe_price_id
                )

            description = f"Proration: {subscription.plan.name} -> {new_plan.name}"
            subscription.plan_id = new_plan.id
            subscription.plan = new_plan
            subscription.current_price = new_plan.price
            await repository.save(subscription)
            await PrivilegeLedger(session, self._clock).reset_for_plan(subscription, new_plan)

            record = None
            item_id = None
            if abs(proration) >= CENT:
                record = repository.add_billing_record(
                    BillingRecord(
                        subscription_id=subscription.id,
                        user_id=subscription.user_id,
                        amount=proration,
                        currency=subscription.currency,
                        type=BillingType.ADJUSTMENT,
                        status=BillingStatus.PENDING,
                        description=description,
                        billed_at=now,
                    )
                )
                await repository.save(record)
                if subscription.external_customer_id:
                    try:
                        item_id = await self._gateway.create_invoice_item(
                            subscription.external_customer_id,
                            proration,
                            subscription.currency,
                            description=description,
                            subscription_id=subscription.external_subscription_id,
                        )
                    except BillingError as e:
                        # The price already moved; the pending record keeps the amount owed.
                        logger.error(
                            "Proration item for %s not created, left pending: %s", subscription.id, e.message
                        )
                    else:
                        record.description = f"{description} ({item_id})"

            effects.audit(
                actor, "subscription.plan_changed", "subscription", subscription.id, before, snapshot(subscription)
            )
            effects.notify(
                subscription.user_id,
                "plan_changed",
                subscription_id=subscription.id,
                plan=new_plan.name,
                proration_amount=proration,
            )
            try:
                await repository.commit()
            except BillingError:
                if item_id is not None:
                    await self._gateway.delete_invoice_item(item_id)
                raise
            result = PlanChangeResult(
                subscription_id=subscription.id,
                old_plan_id=old_plan_id,
                new_plan_id=new_plan.id,
                proration_amount=proration,
                adjustment_record_id=record.id if record is not None else None,
            )

        await effects.flush()
        logger.info(
            "Subscription %s moved to plan %s (proration %s)", subscription_id, new_plan_id, result.proration_amount
        )
        return result

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def refund(
        self, billing_record_id: uuid.UUID, amount: Decimal | None = None, *, actor: str = "system"
    ) -> RefundOutcome:
        """Refund a paid record in full or in part."""
        effects = SideEffectBuffer(self._notifications, self._audit)
        async with self._session_factory() as session:
            repository = SubscriptionRepository(session)
            record = await repository.get_billing_record(billing_record_id)
            if record is None:
                raise NotFoundError(f"Billing record {billing_record_id} not found")
            if record.status not in (BillingStatus.PAID, BillingStatus.REFUNDED):
                raise ValidationError(f"Only paid records can be refunded (record is {record.status})")
            refund_amount = round_money(amount) if amount is not None else record.refundable_amount
            if refund_amount <= 0 or refund_amount > record.refundable_amount:
                raise ValidationError(
                    f"Refund amount {refund_amount} must be between 0.01 and {record.refundable_amount}"
                )
            if not record.external_payment_intent_id:
                raise ValidationError(f"Billing record {billing_record_id} has no payment to refund")

            refund = await self._gateway.refund(record.external_payment_intent_id, refund_amount)
            before = {"status": record.status, "refunded_amount": record.refunded_amount}
            record.refunded_amount = record.refunded_amount + refund_amount
            record.status = BillingStatus.REFUNDED
            await repository.save(record)
            effects.audit(
                actor,
                "billing.refund",
                "billing_record",
                record.id,
                before,
                {"status": record.status, "refunded_amount": record.refunded_amount, "refund_id": refund.id},
            )
            effects.notify(record.user_id, "payment_refunded", amount=refund_amount, currency=record.currency)
            await repository.commit()
            outcome = RefundOutcome(record.id, refund.id, refund_amount, record.refunded_amount)

        await effects.flush()
        logger.info("Refunded %s on billing record %s", refund_amount, billing_record_id)
        return outcome
