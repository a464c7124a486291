"""Unit tests for decoding Stripe event envelopes into typed events."""

import json
import uuid
from datetime import datetime
from decimal import Decimal

import pytest

from app.billing.errors import ValidationError
from app.billing.events import (
    CustomerPayload,
    EventKind,
    InvoicePayload,
    SubscriptionPayload,
    WebhookEvent,
    decode_event,
)

CREATED = 1767225600  # 2026-01-01 00:00:00 UTC


def _envelope(event_type: str, obj: dict, **extra) -> bytes:
    return json.dumps(
        {"id": "evt_1", "type": event_type, "created": CREATED, "data": {"object": obj}, **extra}
    ).encode()


class TestDecodeSubscriptionEvents:
    def test_reads_price_and_period_from_first_item(self):
        event = decode_event(
            _envelope(
                "customer.subscription.updated",
                {
                    "id": "sub_1",
                    "customer": "cus_1",
                    "status": "active",
                    "items": {
                        "data": [
                            {
                                "price": {"id": "price_1", "unit_amount": 2000, "currency": "usd"},
                                "current_period_end": CREATED + 86400,
                            }
                        ]
                    },
                },
            )
        )
        assert event.kind is EventKind.SUBSCRIPTION_UPDATED
        assert event.delivery_id == "evt_1"
        assert event.created_at == datetime(2026, 1, 1)
        assert isinstance(event.payload, SubscriptionPayload)
        assert event.payload.price_id == "price_1"
        assert event.payload.unit_amount == Decimal("20.00")
        assert event.payload.current_period_end == datetime(2026, 1, 2)

    def test_falls_back_to_subscription_level_period(self):
        event = decode_event(
            _envelope(
                "customer.subscription.created",
                {"id": "sub_1", "customer": {"id": "cus_1"}, "current_period_end": CREATED},
            )
        )
        assert event.payload.customer_id == "cus_1"
        assert event.payload.current_period_end == datetime(2026, 1, 1)

    def test_metadata_subscription_id(self):
        local_id = uuid.uuid4()
        event = decode_event(
            _envelope(
                "customer.subscription.created",
                {"id": "sub_1", "metadata": {"subscription_id": str(local_id), "user_id": "u"}},
            )
        )
        assert event.payload.local_subscription_id == local_id

        malformed = decode_event(
            _envelope("customer.subscription.created", {"id": "sub_1", "metadata": {"subscription_id": "nope"}})
        )
        assert malformed.payload.local_subscription_id is None


class TestDecodeInvoiceEvents:
    def test_paid_invoice_uses_amount_paid(self):
        event = decode_event(
            _envelope(
                "invoice.payment_succeeded",
                {
                    "id": "in_1",
                    "subscription": "sub_1",
                    "amount_paid": 1000,
                    "amount_due": 5000,
                    "payment_intent": "pi_1",
                    "lines": {"data": [{"period": {"end": CREATED}}]},
                },
            )
        )
        assert isinstance(event.payload, InvoicePayload)
        assert event.payload.amount == Decimal("10.00")
        assert event.payload.payment_intent_id == "pi_1"
        assert event.payload.period_end == datetime(2026, 1, 1)

    def test_failed_invoice_uses_amount_due_and_failure_message(self):
        event = decode_event(
            _envelope(
                "invoice.payment_failed",
                {
                    "id": "in_1",
                    "subscription": "sub_1",
                    "amount_due": 4900,
                    "attempt_count": 2,
                    "last_finalization_error": {"message": "Card declined"},
                },
            )
        )
        assert event.payload.amount == Decimal("49.00")
        assert event.payload.attempt == 2
        assert event.payload.failure_reason == "Card declined"

    def test_subscription_id_from_parent_details(self):
        event = decode_event(
            _envelope(
                "invoice.paid",
                {"id": "in_1", "parent": {"subscription_details": {"subscription": "sub_9"}}},
            )
        )
        assert event.payload.subscription_id == "sub_9"

    def test_metadata_id_is_local_not_external(self):
        local_id = uuid.uuid4()
        event = decode_event(
            _envelope(
                "invoice.payment_succeeded",
                {"id": "in_1", "subscription": None, "metadata": {"subscription_id": str(local_id)}},
            )
        )
        assert event.payload.subscription_id is None
        assert event.payload.local_subscription_id == local_id


class TestDecodeOtherEvents:
    def test_customer_event(self):
        event = decode_event(_envelope("customer.updated", {"id": "cus_1", "email": "a@b.test"}))
        assert isinstance(event.payload, CustomerPayload)
        assert event.payload.email == "a@b.test"

    def test_unknown_type_has_no_payload(self):
        event = decode_event(_envelope("charge.refunded", {"id": "ch_1"}))
        assert event.kind is EventKind.UNKNOWN
        assert event.event_type == "charge.refunded"
        assert event.payload is None


class TestMalformedEnvelopes:
    @pytest.mark.parametrize(
        "raw",
        [
            b"not json",
            b"[]",
            json.dumps({"type": "invoice.paid", "created": CREATED}).encode(),
            json.dumps({"id": "evt_1", "created": CREATED}).encode(),
            json.dumps({"id": "evt_1", "type": "invoice.paid", "created": CREATED, "data": {"object": {}}}).encode(),
        ],
    )
    def test_raises_validation_error(self, raw):
        with pytest.raises(ValidationError):
            decode_event(raw)


class TestSyntheticEvents:
    def test_delivery_id_is_keyed_by_invoice(self):
        payload = InvoicePayload(id="in_local", amount=Decimal("10.00"))
        event = WebhookEvent.synthetic(EventKind.INVOICE_PAYMENT_FAILED, payload, datetime(2026, 1, 1))
        assert event.delivery_id == "local:in_local:invoice.payment_failed"
        assert event.is_local
