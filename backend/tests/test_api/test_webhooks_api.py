"""Tests for the Stripe webhook endpoint and delivery statistics."""

from httpx import AsyncClient

from conftest import invoice_object, sign_payload, stripe_event


async def post_event(client: AsyncClient, payload: bytes, signature: str | None = None):
    return await client.post(
        "/api/v1/webhooks/stripe",
        content=payload,
        headers={"stripe-signature": signature or sign_payload(payload), "content-type": "application/json"},
    )


class TestStripeWebhook:
    async def test_invalid_signature(self, client: AsyncClient):
        payload = stripe_event("customer.updated", {"id": "cus_1"})

        response = await post_event(client, payload, sign_payload(payload, secret="whsec_wrong"))

        assert response.status_code == 400
        assert response.json() == {"detail": "Invalid signature"}

    async def test_missing_signature(self, client: AsyncClient):
        payload = stripe_event("customer.updated", {"id": "cus_1"})
        response = await client.post("/api/v1/webhooks/stripe", content=payload)
        assert response.status_code == 400

    async def test_invalid_payload(self, client: AsyncClient):
        payload = b'{"type": "invoice.paid"}'

        response = await post_event(client, payload)

        assert response.status_code == 400
        assert response.json() == {"detail": "Invalid payload"}

    async def test_payment_failure_processed_then_duplicate(
        self, client: AsyncClient, make_subscription, patient, patient_headers, notifications
    ):
        subscription = await make_subscription(user=patient)
        payload = stripe_event(
            "invoice.payment_failed",
            invoice_object(subscription, failure="Your card was declined."),
            event_id="evt_api_failed",
        )

        first = await post_event(client, payload)
        assert first.status_code == 200
        assert first.json() == {
            "status": "processed",
            "delivery_id": "evt_api_failed",
            "event_type": "invoice.payment_failed",
        }
        assert "payment_failed" in notifications.kinds()

        second = await post_event(client, payload)
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"

        detail = await client.get(f"/api/v1/subscriptions/{subscription.id}", headers=patient_headers)
        assert detail.json()["status"] == "PaymentFailed"
        assert detail.json()["failed_payment_attempts"] == 1

    async def test_unhandled_type_acknowledged(self, client: AsyncClient):
        payload = stripe_event("charge.dispute.created", {"id": "dp_1"})

        response = await post_event(client, payload)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"


class TestWebhookStats:
    async def test_requires_admin(self, client: AsyncClient, patient_headers):
        response = await client.get("/api/v1/webhooks/stats", headers=patient_headers)
        assert response.status_code == 403

    async def test_counts_by_type_and_outcome(self, client: AsyncClient, admin_headers, make_subscription):
        subscription = await make_subscription()
        failed = stripe_event("invoice.payment_failed", invoice_object(subscription, failure="Your card was declined."))
        await post_event(client, failed)
        await post_event(client, failed)
        await post_event(client, stripe_event("charge.dispute.created", {"id": "dp_1"}))

        response = await client.get("/api/v1/webhooks/stats", params={"hours": 1}, headers=admin_headers)

        assert response.status_code == 200
        stats = response.json()
        assert stats["total"] == 2
        assert stats["failed"] == 0
        assert stats["success_rate"] == 1.0
        assert stats["by_type"] == {
            "invoice.payment_failed": {"processed": 1},
            "charge.dispute.created": {"ignored": 1},
        }

    async def test_empty(self, client: AsyncClient, admin_headers):
        response = await client.get("/api/v1/webhooks/stats", headers=admin_headers)
        assert response.json() == {
            "total": 0,
            "failed": 0,
            "success_rate": 1.0,
            "avg_processing_ms": None,
            "by_type": {},
        }
