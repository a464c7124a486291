"""Tests for webhook ingestion: authentication, idempotency, ordering, retries."""

import time
from decimal import Decimal

import pytest

from app.billing.errors import (
    SignatureVerificationError,
    TransientUpstreamError,
    UpstreamUnavailable,
    ValidationError,
)
from app.billing.events import EventKind
from app.billing.pipeline import DUPLICATE, REJECTED, PipelineConfig, WebhookIngestionPipeline
from app.billing.status import SubscriptionStatus
from app.billing.webhooks import EVENT_HANDLERS, IGNORED, NOOP, PROCESSED, STALE, UNTRACKED
from app.models.billing_record import BillingRecord
from app.models.history import ProcessedWebhookEvent
from app.services.subscription_repository import SubscriptionRepository
from conftest import WEBHOOK_SECRET, invoice_object, sign_payload, stripe_event

S = SubscriptionStatus


async def deliver(pipeline: WebhookIngestionPipeline, payload: bytes):
    return await pipeline.ingest(payload, sign_payload(payload))


async def load(session_factory, subscription_id):
    async with session_factory() as session:
        return await SubscriptionRepository(session).get(subscription_id)


async def records(session_factory, subscription_id) -> list[BillingRecord]:
    async with session_factory() as session:
        return list(await SubscriptionRepository(session).list_billing_records(subscription_id))


async def marker(session_factory, delivery_id) -> ProcessedWebhookEvent | None:
    async with session_factory() as session:
        return await SubscriptionRepository(session).get_webhook_event(delivery_id)


def subscription_object(subscription, status: str = "active", **fields) -> dict:
    return {
        "id": subscription.external_subscription_id,
        "customer": subscription.external_customer_id,
        "status": status,
        **fields,
    }


class TestAuthentication:
    async def test_invalid_signature_rejected(self, pipeline, make_subscription, session_factory):
        subscription = await make_subscription()
        payload = stripe_event("invoice.payment_failed", invoice_object(subscription), event_id="evt_badsig")

        with pytest.raises(SignatureVerificationError):
            await pipeline.ingest(payload, sign_payload(payload, secret="whsec_wrong"))
        assert await marker(session_factory, "evt_badsig") is None
        assert (await load(session_factory, subscription.id)).status == "Active"

    async def test_tampered_body_rejected(self, pipeline):
        payload = stripe_event("customer.updated", {"id": "cus_1"})
        header = sign_payload(payload)
        with pytest.raises(SignatureVerificationError):
            await pipeline.ingest(payload.replace(b"cus_1", b"cus_2"), header)

    async def test_missing_secret_rejects_everything(self, session_factory, notifications, audit):
        pipeline = WebhookIngestionPipeline(
            session_factory, PipelineConfig(webhook_secret=""), notifications=notifications, audit=audit
        )
        payload = stripe_event("customer.updated", {"id": "cus_1"})
        with pytest.raises(SignatureVerificationError):
            await pipeline.ingest(payload, sign_payload(payload))

    async def test_malformed_envelope(self, pipeline):
        payload = b'{"type": "invoice.paid"}'
        with pytest.raises(ValidationError):
            await pipeline.ingest(payload, sign_payload(payload, WEBHOOK_SECRET))


class TestIdempotency:
    async def test_replay_is_duplicate(self, pipeline, make_subscription, session_factory, notifications):
        subscription = await make_subscription()
        payload = stripe_event("invoice.payment_failed", invoice_object(subscription, failure="Card declined"))

        first = await deliver(pipeline, payload)
        second = await deliver(pipeline, payload)

        assert first.outcome == PROCESSED
        assert second.outcome == DUPLICATE
        reloaded = await load(session_factory, subscription.id)
        assert reloaded.failed_payment_attempts == 1
        assert len(await records(session_factory, subscription.id)) == 1
        assert notifications.kinds().count("payment_failed") == 1

    async def test_same_invoice_attempt_under_new_delivery_is_noop(self, pipeline, make_subscription, session_factory):
        subscription = await make_subscription()
        invoice = invoice_object(subscription, invoice_id="in_same")

        await deliver(pipeline, stripe_event("invoice.payment_failed", invoice))
        result = await deliver(pipeline, stripe_event("invoice.payment_failed", invoice))

        assert result.outcome == NOOP
        assert (await load(session_factory, subscription.id)).failed_payment_attempts == 1


class TestPaymentEvents:
    async def test_single_failure(self, pipeline, make_subscription, session_factory, notifications, audit):
        subscription = await make_subscription()
        payload = stripe_event("invoice.payment_failed", invoice_object(subscription, failure="Card declined"))

        result = await deliver(pipeline, payload)

        assert result.outcome == PROCESSED
        assert result.attempts == 1
        reloaded = await load(session_factory, subscription.id)
        assert reloaded.status == "PaymentFailed"
        assert reloaded.failed_payment_attempts == 1
        assert reloaded.last_payment_error == "Card declined"
        [record] = await records(session_factory, subscription.id)
        assert record.status == "failed"
        assert record.failure_reason == "Card declined"
        assert record.amount == Decimal("10.00")
        assert notifications.kinds() == ["subscription_payment_failed", "payment_failed"]
        assert "subscription.transition" in audit.actions()

    async def test_three_failures_suspend(self, pipeline, make_subscription, session_factory, notifications):
        subscription = await make_subscription()
        for attempt in (1, 2, 3):
            invoice = invoice_object(subscription, invoice_id="in_retry", attempt=attempt, failure="Card declined")
            await deliver(pipeline, stripe_event("invoice.payment_failed", invoice))

        reloaded = await load(session_factory, subscription.id)
        assert reloaded.status == "Suspended"
        assert reloaded.failed_payment_attempts == 3
        assert reloaded.suspended_at is not None
        assert sorted(r.payment_attempt for r in await records(session_factory, subscription.id)) == [1, 2, 3]
        assert "subscription_suspended" in notifications.kinds()

    async def test_payment_success_recovers(self, pipeline, make_subscription, session_factory):
        subscription = await make_subscription(status=S.PAYMENT_FAILED, failed_payment_attempts=2)

        result = await deliver(pipeline, stripe_event("invoice.payment_succeeded", invoice_object(subscription)))

        assert result.outcome == PROCESSED
        reloaded = await load(session_factory, subscription.id)
        assert reloaded.status == "Active"
        assert reloaded.failed_payment_attempts == 0
        assert reloaded.last_payment_date is not None
        assert reloaded.next_billing_date > subscription.next_billing_date
        [record] = await records(session_factory, subscription.id)
        assert record.status == "paid"
        assert record.external_payment_intent_id is not None

    async def test_locally_created_invoice_matched_by_metadata(self, pipeline, make_subscription, session_factory):
        subscription = await make_subscription(external=False)
        invoice = invoice_object(subscription)
        invoice["subscription"] = None
        invoice["metadata"] = {"subscription_id": str(subscription.id)}

        result = await deliver(pipeline, stripe_event("invoice.payment_succeeded", invoice))

        assert result.outcome == PROCESSED
        [record] = await records(session_factory, subscription.id)
        assert record.status == "paid"
        assert record.external_invoice_id == invoice["id"]

    async def test_malformed_metadata_falls_back_to_stripe_subscription(
        self, pipeline, make_subscription, session_factory
    ):
        subscription = await make_subscription()
        invoice = invoice_object(subscription)
        invoice["metadata"] = {"subscription_id": "not-a-uuid"}

        result = await deliver(pipeline, stripe_event("invoice.paid", invoice))

        assert result.outcome == PROCESSED
        assert len(await records(session_factory, subscription.id)) == 1

    async def test_payment_on_cancelled_subscription_is_recorded_only(
        self, pipeline, make_subscription, session_factory, audit
    ):
        subscription = await make_subscription(status=S.CANCELLED)

        await deliver(pipeline, stripe_event("invoice.paid", invoice_object(subscription)))

        assert (await load(session_factory, subscription.id)).status == "Cancelled"
        assert len(await records(session_factory, subscription.id)) == 1
        assert "billing.payment_on_terminal_subscription" in audit.actions()

    async def test_action_required(self, pipeline, make_subscription, session_factory, notifications):
        subscription = await make_subscription()

        await deliver(pipeline, stripe_event("invoice.payment_action_required", invoice_object(subscription)))

        assert (await load(session_factory, subscription.id)).status == "PaymentActionRequired"
        assert "payment_action_required" in notifications.kinds()


class TestSubscriptionEvents:
    async def test_trialing_activates_pending(self, pipeline, make_subscription, session_factory):
        subscription = await make_subscription(status=S.PENDING)

        result = await deliver(
            pipeline, stripe_event("customer.subscription.created", subscription_object(subscription, "trialing"))
        )

        assert result.outcome == PROCESSED
        assert (await load(session_factory, subscription.id)).status == "TrialActive"

    async def test_unlinked_row_found_by_metadata(self, pipeline, make_subscription, session_factory):
        subscription = await make_subscription(status=S.PENDING, external=False)
        obj = {"id": "sub_created_elsewhere", "status": "trialing", "metadata": {"subscription_id": str(subscription.id)}}

        result = await deliver(pipeline, stripe_event("customer.subscription.created", obj))

        assert result.outcome == PROCESSED
        reloaded = await load(session_factory, subscription.id)
        assert reloaded.external_subscription_id == "sub_created_elsewhere"
        assert reloaded.status == "TrialActive"

    async def test_metadata_naming_a_linked_row_is_untracked(self, pipeline, make_subscription, session_factory):
        subscription = await make_subscription(status=S.PENDING)
        obj = {"id": "sub_someone_else", "status": "active", "metadata": {"subscription_id": str(subscription.id)}}

        result = await deliver(pipeline, stripe_event("customer.subscription.updated", obj))

        assert result.outcome == UNTRACKED
        reloaded = await load(session_factory, subscription.id)
        assert reloaded.external_subscription_id == subscription.external_subscription_id
        assert reloaded.status == "Pending"

    async def test_price_and_period_sync(self, pipeline, make_subscription, make_plan, session_factory):
        subscription = await make_subscription()
        other_plan = await make_plan(price="20.00")
        period_end = int(time.time()) + 40 * 86400
        obj = subscription_object(
            subscription,
            items={"data": [{"price": {"id": other_plan.stripe_price_id, "unit_amount": 2000, "currency": "usd"},
                             "current_period_end": period_end}]},
        )

        await deliver(pipeline, stripe_event("customer.subscription.updated", obj))

        reloaded = await load(session_factory, subscription.id)
        assert reloaded.plan_id == other_plan.id
        assert reloaded.current_price == Decimal("20.00")
        assert reloaded.status == "Active"

    async def test_unchanged_update_is_noop(self, pipeline, make_subscription):
        subscription = await make_subscription()
        result = await deliver(
            pipeline, stripe_event("customer.subscription.updated", subscription_object(subscription))
        )
        assert result.outcome == NOOP

    async def test_older_event_is_stale(self, pipeline, make_subscription, session_factory):
        subscription = await make_subscription()
        now = int(time.time())

        await deliver(
            pipeline,
            stripe_event("customer.subscription.updated", subscription_object(subscription, "past_due"), created=now),
        )
        await deliver(
            pipeline,
            stripe_event("invoice.payment_failed", invoice_object(subscription), created=now),
        )
        result = await deliver(
            pipeline,
            stripe_event("customer.subscription.deleted", subscription_object(subscription), created=now + 5),
        )
        assert result.outcome == PROCESSED
        stale = await deliver(
            pipeline,
            stripe_event("customer.subscription.updated", subscription_object(subscription), created=now - 60),
        )

        assert stale.outcome == STALE
        assert (await load(session_factory, subscription.id)).status == "Cancelled"

    async def test_past_due_update_before_payment_failure(self, pipeline, make_subscription, session_factory):
        subscription = await make_subscription()
        now = int(time.time())

        update = await deliver(
            pipeline,
            stripe_event("customer.subscription.updated", subscription_object(subscription, "past_due"), created=now),
        )
        failure = await deliver(
            pipeline,
            stripe_event(
                "invoice.payment_failed", invoice_object(subscription, failure="Card declined"), created=now - 5
            ),
        )

        assert update.outcome == NOOP
        assert failure.outcome == PROCESSED
        reloaded = await load(session_factory, subscription.id)
        assert reloaded.status == "PaymentFailed"
        assert reloaded.failed_payment_attempts == 1

    async def test_synced_update_does_not_outdate_invoice_events(self, pipeline, make_subscription, session_factory):
        subscription = await make_subscription()
        now = int(time.time())
        obj = subscription_object(
            subscription,
            "past_due",
            items={"data": [{"price": {"id": "price_other", "unit_amount": 1200, "currency": "usd"}}]},
        )

        update = await deliver(pipeline, stripe_event("customer.subscription.updated", obj, created=now))
        failure = await deliver(
            pipeline, stripe_event("invoice.payment_failed", invoice_object(subscription), created=now - 5)
        )

        assert update.outcome == PROCESSED
        assert failure.outcome == PROCESSED
        reloaded = await load(session_factory, subscription.id)
        assert reloaded.current_price == Decimal("12.00")
        assert reloaded.status == "PaymentFailed"

    async def test_older_payment_failure_after_success_is_stale(self, pipeline, make_subscription, session_factory):
        subscription = await make_subscription()
        now = int(time.time())

        await deliver(pipeline, stripe_event("invoice.paid", invoice_object(subscription), created=now))
        stale = await deliver(
            pipeline, stripe_event("invoice.payment_failed", invoice_object(subscription), created=now - 5)
        )

        assert stale.outcome == STALE
        reloaded = await load(session_factory, subscription.id)
        assert reloaded.status == "Active"
        assert reloaded.failed_payment_attempts == 0

    async def test_deleted_twice_is_noop(self, pipeline, make_subscription, session_factory):
        subscription = await make_subscription()
        obj = subscription_object(subscription, "canceled")

        first = await deliver(pipeline, stripe_event("customer.subscription.deleted", obj))
        second = await deliver(pipeline, stripe_event("customer.subscription.deleted", obj))

        assert first.outcome == PROCESSED
        assert second.outcome == NOOP
        assert (await load(session_factory, subscription.id)).cancelled_at is not None

    async def test_paused_subscription_stays_paused(self, pipeline, make_subscription, session_factory):
        subscription = await make_subscription(status=S.PAUSED)
        await deliver(pipeline, stripe_event("customer.subscription.updated", subscription_object(subscription)))
        assert (await load(session_factory, subscription.id)).status == "Paused"

    async def test_unknown_subscription_is_untracked(self, pipeline):
        result = await deliver(
            pipeline, stripe_event("customer.subscription.updated", {"id": "sub_unknown", "status": "active"})
        )
        assert result.outcome == UNTRACKED

    async def test_trial_will_end_notifies(self, pipeline, make_subscription, notifications):
        subscription = await make_subscription(status=S.TRIAL_ACTIVE)
        await deliver(
            pipeline,
            stripe_event("customer.subscription.trial_will_end", subscription_object(subscription, "trialing")),
        )
        assert notifications.kinds() == ["trial_will_end"]


class TestUnhandledAndFailures:
    async def test_unknown_event_type_ignored_and_marked(self, pipeline, session_factory):
        payload = stripe_event("charge.refunded", {"id": "ch_1"}, event_id="evt_ignored")

        result = await deliver(pipeline, payload)

        assert result.outcome == IGNORED
        row = await marker(session_factory, "evt_ignored")
        assert row.is_success
        assert row.outcome == IGNORED

    async def test_transient_errors_exhaust_retries(
        self, pipeline, make_subscription, session_factory, notifications, monkeypatch
    ):
        subscription = await make_subscription()
        calls = 0

        async def flaky(ctx, event):
            nonlocal calls
            calls += 1
            ctx.effects.notify(subscription.user_id, "should_not_send")
            raise TransientUpstreamError("database hiccup")

        monkeypatch.setitem(EVENT_HANDLERS, EventKind.INVOICE_PAYMENT_FAILED, flaky)
        payload = stripe_event("invoice.payment_failed", invoice_object(subscription), event_id="evt_flaky")

        with pytest.raises(UpstreamUnavailable):
            await deliver(pipeline, payload)

        assert calls == 3
        assert notifications.sent == []
        row = await marker(session_factory, "evt_flaky")
        assert not row.is_success
        assert row.outcome == "failed"
        assert row.attempt_count == 3
        assert row.error_kind == "transient_upstream_error"

        # Stripe redelivers later; a failed marker does not count as processed.
        monkeypatch.undo()
        result = await deliver(pipeline, payload)
        assert result.outcome == PROCESSED
        assert (await load(session_factory, subscription.id)).status == "PaymentFailed"

    async def test_recovers_before_attempts_run_out(self, pipeline, make_subscription, monkeypatch):
        subscription = await make_subscription()
        original = EVENT_HANDLERS[EventKind.INVOICE_PAYMENT_FAILED]
        failures = [TransientUpstreamError("blip")]

        async def flaky_once(ctx, event):
            if failures:
                raise failures.pop()
            return await original(ctx, event)

        monkeypatch.setitem(EVENT_HANDLERS, EventKind.INVOICE_PAYMENT_FAILED, flaky_once)
        result = await deliver(pipeline, stripe_event("invoice.payment_failed", invoice_object(subscription)))

        assert result.outcome == PROCESSED
        assert result.attempts == 2

    async def test_permanent_error_rejected(self, pipeline, session_factory, audit, monkeypatch):
        async def invalid(ctx, event):
            raise ValidationError("payload refers to a different currency")

        monkeypatch.setitem(EVENT_HANDLERS, EventKind.CUSTOMER_UPDATED, invalid)
        payload = stripe_event("customer.updated", {"id": "cus_1"}, event_id="evt_rejected")

        result = await deliver(pipeline, payload)

        assert result.outcome == REJECTED
        assert result.error_kind == "validation_error"
        assert result.attempts == 1
        assert "webhook.rejected" in audit.actions()
        row = await marker(session_factory, "evt_rejected")
        assert not row.is_success
        assert row.outcome == REJECTED

    async def test_customer_event_audited(self, pipeline, audit):
        await deliver(pipeline, stripe_event("customer.updated", {"id": "cus_1", "email": "new@test.com"}))
        assert audit.entries[-1].action == "customer.updated"
        assert audit.entries[-1].after["email"] == "new@test.com"
