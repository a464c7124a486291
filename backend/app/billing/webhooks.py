"""Stripe webhook event handlers: apply decoded events to local subscriptions.

Handlers run inside one pipeline attempt: they mutate through the repository
and the state machine, buffer side effects on the context, and return an
outcome string. They never commit.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from app.billing.events import (
    INVOICE_KINDS,
    CustomerPayload,
    EventKind,
    InvoicePayload,
    SubscriptionPayload,
    WebhookEvent,
)
from app.billing.lifecycle import LifecycleStateMachine, snapshot
from app.billing.periods import add_months
from app.billing.sinks import SideEffectBuffer
from app.billing.status import (
    PAYMENT_PROBLEM_STATUSES,
    TERMINAL_STATUSES,
    SubscriptionStatus,
    map_external_status,
)
from app.models.billing_record import BillingRecord, BillingStatus, BillingType
from app.models.subscription import Subscription
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

WEBHOOK_ACTOR = "stripe-webhook"

PROCESSED = "processed"
NOOP = "noop"
STALE = "stale"
UNTRACKED = "untracked"
IGNORED = "ignored"


@dataclass
class HandlerContext:
    repository: SubscriptionRepository
    machine: LifecycleStateMachine
    effects: SideEffectBuffer


Handler = Callable[[HandlerContext, WebhookEvent], Awaitable[str]]


def _is_stale(subscription: Subscription, event: WebhookEvent) -> bool:
    """Older than the newest applied event of the same family.

    Invoice events are only compared with other invoice events: Stripe sends
    the matching ``customer.subscription.updated`` alongside them in no
    particular order.
    """
    watermark = subscription.last_payment_event_at if event.kind in INVOICE_KINDS else subscription.last_event_at
    return watermark is not None and event.created_at < watermark


def _advance_watermark(subscription: Subscription, event: WebhookEvent) -> None:
    if subscription.last_event_at is None or event.created_at > subscription.last_event_at:
        subscription.last_event_at = event.created_at
    if event.kind in INVOICE_KINDS and (
        subscription.last_payment_event_at is None or event.created_at > subscription.last_payment_event_at
    ):
        subscription.last_payment_event_at = event.created_at


async def _find_invoice_subscription(ctx: HandlerContext, invoice: InvoicePayload) -> Subscription | None:
    if invoice.local_subscription_id is not None:
        subscription = await ctx.repository.get(invoice.local_subscription_id)
        if subscription is not None:
            return subscription
    if invoice.subscription_id:
        return await ctx.repository.find_by_external_id(invoice.subscription_id)
    return None


async def _find_payload_subscription(
    ctx: HandlerContext, payload: SubscriptionPayload
) -> tuple[Subscription | None, bool]:
    """Resolve by Stripe id, then by the id the purchase flow stamped in metadata.

    The second lookup covers webhooks that beat the purchase flow storing the
    Stripe id; the Stripe id is linked here and ``True`` is returned.
    """
    subscription = await ctx.repository.find_by_external_id(payload.id)
    if subscription is not None or payload.local_subscription_id is None:
        return subscription, False
    subscription = await ctx.repository.get(payload.local_subscription_id)
    if subscription is None:
        return None, False
    if subscription.external_subscription_id is not None:
        logger.warning(
            "Stripe subscription %s names %s in metadata, which is linked to %s",
            payload.id,
            subscription.id,
            subscription.external_subscription_id,
        )
        return None, False
    subscription.external_subscription_id = payload.id
    logger.info("Linked Stripe subscription %s to %s from webhook", payload.id, subscription.id)
    return subscription, True


# ---------------------------------------------------------------------------
# Subscription events
# ---------------------------------------------------------------------------


async def handle_subscription_changed(ctx: HandlerContext, event: WebhookEvent) -> str:
    """Handle customer.subscription.created / .updated: sync price, dates and status."""
    payload: SubscriptionPayload = event.payload
    subscription, linked = await _find_payload_subscription(ctx, payload)
    if subscription is None:
        logger.warning("No local subscription for Stripe subscription %s (%s)", payload.id, event.event_type)
        return UNTRACKED
    if _is_stale(subscription, event):
        logger.info(
            "Discarding stale %s for %s (event %s < watermark %s)",
            event.event_type,
            payload.id,
            event.created_at,
            subscription.last_event_at,
        )
        return STALE

    before = snapshot(subscription)
    changed = linked

    if payload.customer_id and subscription.external_customer_id != payload.customer_id:
        subscription.external_customer_id = payload.customer_id
        changed = True
    if payload.price_id and payload.price_id != subscription.plan.stripe_price_id:
        plan = await ctx.repository.get_plan_by_price_id(payload.price_id)
        if plan is not None and plan.id != subscription.plan_id:
            subscription.plan_id = plan.id
            subscription.plan = plan
            changed = True
        elif plan is None:
            logger.warning("Unknown price ID %s on subscription %s", payload.price_id, payload.id)
    if payload.unit_amount is not None and payload.unit_amount != subscription.current_price:
        subscription.current_price = payload.unit_amount
        changed = True
    if payload.current_period_end is not None and payload.current_period_end != subscription.next_billing_date:
        subscription.next_billing_date = payload.current_period_end
        changed = True
    if payload.trial_end != subscription.trial_end_date and payload.trial_end is not None:
        subscription.trial_end_date = payload.trial_end
        changed = True

    target = map_external_status(payload.status)
    current = subscription.status_enum
    # Payment-problem statuses are driven by invoice events, which carry the failure details.
    apply_status = target not in PAYMENT_PROBLEM_STATUSES and target is not current
    # Pending never re-enters, and a pause is local until the user resumes.
    if apply_status and (
        target is SubscriptionStatus.PENDING
        or (current is SubscriptionStatus.PAUSED and target is SubscriptionStatus.ACTIVE)
    ):
        logger.info("Ignoring Stripe status %s for %s in status %s", payload.status, payload.id, current.value)
        apply_status = False

    # Only an event that changed something moves the watermark.
    if not changed and not apply_status:
        return NOOP

    _advance_watermark(subscription, event)
    await ctx.repository.save(subscription)
    if changed:
        ctx.effects.audit(
            WEBHOOK_ACTOR, "subscription.synced", "subscription", subscription.id, before, snapshot(subscription)
        )
    if apply_status:
        await ctx.machine.apply(subscription, target, f"stripe status {payload.status}", actor=WEBHOOK_ACTOR)
    return PROCESSED


async def handle_subscription_deleted(ctx: HandlerContext, event: WebhookEvent) -> str:
    """Handle customer.subscription.deleted: cancel locally."""
    payload: SubscriptionPayload = event.payload
    subscription, _ = await _find_payload_subscription(ctx, payload)
    if subscription is None:
        logger.warning("No local subscription for Stripe subscription %s (delete event)", payload.id)
        return UNTRACKED
    if subscription.status_enum is SubscriptionStatus.CANCELLED:
        return NOOP
    if subscription.status_enum is SubscriptionStatus.EXPIRED:
        logger.info("Subscription %s already expired, ignoring delete", subscription.id)
        return NOOP

    _advance_watermark(subscription, event)
    await ctx.machine.apply(
        subscription, SubscriptionStatus.CANCELLED, "cancelled via processor", actor=WEBHOOK_ACTOR
    )
    return PROCESSED


async def handle_trial_will_end(ctx: HandlerContext, event: WebhookEvent) -> str:
    """Handle customer.subscription.trial_will_end: remind the user, no state change."""
    payload: SubscriptionPayload = event.payload
    subscription, _ = await _find_payload_subscription(ctx, payload)
    if subscription is None:
        return UNTRACKED
    ctx.effects.notify(
        subscription.user_id,
        "trial_will_end",
        subscription_id=subscription.id,
        trial_end=payload.trial_end or subscription.trial_end_date,
    )
    return PROCESSED


# ---------------------------------------------------------------------------
# Invoice events
# ---------------------------------------------------------------------------


async def handle_payment_succeeded(ctx: HandlerContext, event: WebhookEvent) -> str:
    """Handle invoice.payment_succeeded / invoice.paid: record payment and activate."""
    invoice: InvoicePayload = event.payload
    subscription = await _find_invoice_subscription(ctx, invoice)
    if subscription is None:
        logger.info("Invoice %s has no tracked subscription, skipping", invoice.id)
        return UNTRACKED
    if await ctx.repository.find_billing_record(invoice.id, BillingStatus.PAID) is not None:
        logger.info("Invoice %s already recorded as paid", invoice.id)
        return NOOP

    ctx.repository.add_billing_record(
        BillingRecord(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            amount=invoice.amount,
            currency=invoice.currency,
            type=BillingType.SUBSCRIPTION,
            status=BillingStatus.PAID,
            external_invoice_id=invoice.id,
            external_payment_intent_id=invoice.payment_intent_id,
            payment_attempt=invoice.attempt,
            description=f"{subscription.plan.name} subscription",
            billed_at=event.created_at,
            paid_at=event.created_at,
        )
    )

    if subscription.status_enum in TERMINAL_STATUSES:
        await ctx.repository.save(subscription)
        logger.warning(
            "Payment %s received for %s subscription %s", invoice.id, subscription.status, subscription.id
        )
        ctx.effects.audit(
            WEBHOOK_ACTOR,
            "billing.payment_on_terminal_subscription",
            "subscription",
            subscription.id,
            None,
            {"invoice_id": invoice.id, "amount": invoice.amount, "status": subscription.status},
        )
        return PROCESSED

    if _is_stale(subscription, event):
        await ctx.repository.save(subscription)
        logger.info("Stale payment event %s for %s: recorded without status change", invoice.id, subscription.id)
        return STALE

    before = snapshot(subscription)
    subscription.failed_payment_attempts = 0
    subscription.last_payment_date = event.created_at
    subscription.last_payment_error = None
    if invoice.period_end is not None and invoice.period_end > subscription.next_billing_date:
        subscription.next_billing_date = invoice.period_end
    else:
        subscription.next_billing_date = add_months(
            subscription.next_billing_date, subscription.plan.billing_interval_months
        )
    _advance_watermark(subscription, event)
    await ctx.repository.save(subscription)
    ctx.effects.audit(
        WEBHOOK_ACTOR, "billing.payment_succeeded", "subscription", subscription.id, before, snapshot(subscription)
    )
    ctx.effects.notify(
        subscription.user_id,
        "payment_succeeded",
        subscription_id=subscription.id,
        amount=invoice.amount,
        currency=invoice.currency,
    )

    if subscription.status_enum is not SubscriptionStatus.ACTIVE:
        await ctx.machine.apply(subscription, SubscriptionStatus.ACTIVE, "payment succeeded", actor=WEBHOOK_ACTOR)
    return PROCESSED


async def handle_payment_failed(ctx: HandlerContext, event: WebhookEvent) -> str:
    """Handle invoice.payment_failed: record the failure and escalate."""
    invoice: InvoicePayload = event.payload
    subscription = await _find_invoice_subscription(ctx, invoice)
    if subscription is None:
        logger.info("Invoice %s has no tracked subscription, skipping payment failure", invoice.id)
        return UNTRACKED
    if await ctx.repository.find_billing_record(invoice.id, BillingStatus.FAILED, invoice.attempt) is not None:
        logger.info("Invoice %s attempt %d already recorded as failed", invoice.id, invoice.attempt)
        return NOOP

    reason = invoice.failure_reason or "payment failed"
    ctx.repository.add_billing_record(
        BillingRecord(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            amount=invoice.amount,
            currency=invoice.currency,
            type=BillingType.SUBSCRIPTION,
            status=BillingStatus.FAILED,
            external_invoice_id=invoice.id,
            external_payment_intent_id=invoice.payment_intent_id,
            payment_attempt=invoice.attempt,
            description=f"{subscription.plan.name} subscription",
            failure_reason=reason,
            billed_at=event.created_at,
        )
    )

    if subscription.status_enum in TERMINAL_STATUSES or _is_stale(subscription, event):
        await ctx.repository.save(subscription)
        logger.info("Payment failure %s recorded without status change for %s", invoice.id, subscription.id)
        return STALE if _is_stale(subscription, event) else PROCESSED

    subscription.last_payment_error = reason
    _advance_watermark(subscription, event)
    await ctx.machine.register_payment_failure(subscription, reason, actor=WEBHOOK_ACTOR)
    ctx.effects.notify(
        subscription.user_id,
        "payment_failed",
        subscription_id=subscription.id,
        amount=invoice.amount,
        reason=reason,
        attempts=subscription.failed_payment_attempts,
    )
    return PROCESSED


async def handle_payment_action_required(ctx: HandlerContext, event: WebhookEvent) -> str:
    """Handle invoice.payment_action_required: ask the user to authenticate the payment."""
    invoice: InvoicePayload = event.payload
    subscription = await _find_invoice_subscription(ctx, invoice)
    if subscription is None:
        return UNTRACKED
    if _is_stale(subscription, event) or subscription.status_enum in TERMINAL_STATUSES:
        return STALE if _is_stale(subscription, event) else NOOP

    ctx.effects.notify(
        subscription.user_id,
        "payment_action_required",
        subscription_id=subscription.id,
        invoice_id=invoice.id,
        hosted_invoice_url=invoice.hosted_invoice_url,
    )
    if subscription.status_enum is SubscriptionStatus.PAYMENT_ACTION_REQUIRED:
        return NOOP
    _advance_watermark(subscription, event)
    await ctx.machine.apply(
        subscription,
        SubscriptionStatus.PAYMENT_ACTION_REQUIRED,
        invoice.failure_reason or "payment requires customer action",
        actor=WEBHOOK_ACTOR,
    )
    return PROCESSED


# ---------------------------------------------------------------------------
# Customer events
# ---------------------------------------------------------------------------


async def handle_customer_event(ctx: HandlerContext, event: WebhookEvent) -> str:
    """Handle customer.*: audit only."""
    customer: CustomerPayload = event.payload
    ctx.effects.audit(
        WEBHOOK_ACTOR,
        event.event_type,
        "customer",
        customer.id,
        None,
        {"email": customer.email, "name": customer.name, "deleted": customer.deleted},
    )
    return PROCESSED


EVENT_HANDLERS: dict[EventKind, Handler] = {
    EventKind.SUBSCRIPTION_CREATED: handle_subscription_changed,
    EventKind.SUBSCRIPTION_UPDATED: handle_subscription_changed,
    EventKind.SUBSCRIPTION_DELETED: handle_subscription_deleted,
    EventKind.SUBSCRIPTION_TRIAL_WILL_END: handle_trial_will_end,
    EventKind.INVOICE_PAYMENT_SUCCEEDED: handle_payment_succeeded,
    EventKind.INVOICE_PAID: handle_payment_succeeded,
    EventKind.INVOICE_PAYMENT_FAILED: handle_payment_failed,
    EventKind.INVOICE_PAYMENT_ACTION_REQUIRED: handle_payment_action_required,
    EventKind.CUSTOMER_CREATED: handle_customer_event,
    EventKind.CUSTOMER_UPDATED: handle_customer_event,
    EventKind.CUSTOMER_DELETED: handle_customer_event,
}
