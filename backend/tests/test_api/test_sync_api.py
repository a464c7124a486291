"""Tests for the administrative reconciliation endpoints."""

import uuid
from decimal import Decimal

from httpx import AsyncClient


class TestSyncApi:
    async def test_requires_admin(self, client: AsyncClient, patient_headers, make_subscription):
        subscription = await make_subscription()
        response = await client.post(f"/api/v1/sync/subscription/{subscription.id}/validate", headers=patient_headers)
        assert response.status_code == 403

    async def test_validate_in_sync(self, client: AsyncClient, admin_headers, make_subscription):
        subscription = await make_subscription()

        response = await client.post(f"/api/v1/sync/subscription/{subscription.id}/validate", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {
            "entity_type": "subscription",
            "entity_id": str(subscription.id),
            "in_sync": True,
            "discrepancies": [],
        }

    async def test_validate_then_repair_drift(self, client: AsyncClient, admin_headers, make_subscription, gateway, audit):
        subscription = await make_subscription()
        external = gateway.subscriptions[subscription.external_subscription_id]
        external.status = "past_due"
        external.unit_amount = Decimal("12.00")

        validated = await client.post(f"/api/v1/sync/subscription/{subscription.id}/validate", headers=admin_headers)
        report = validated.json()
        assert report["in_sync"] is False
        assert {d["field"] for d in report["discrepancies"]} == {"status", "current_price"}

        repaired = await client.post(f"/api/v1/sync/subscription/{subscription.id}/repair", headers=admin_headers)
        assert repaired.status_code == 200
        assert repaired.json()["status"] == "repaired"
        assert all(r["success"] for r in repaired.json()["repairs"])
        assert "reconciliation.pulled" in audit.actions()

        again = await client.post(f"/api/v1/sync/subscription/{subscription.id}/validate", headers=admin_headers)
        assert again.json()["in_sync"] is True

    async def test_unknown_entity_type(self, client: AsyncClient, admin_headers):
        response = await client.post(f"/api/v1/sync/invoice/{uuid.uuid4()}/validate", headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["error"]["kind"] == "validation_error"

    async def test_missing_plan(self, client: AsyncClient, admin_headers):
        response = await client.post(f"/api/v1/sync/plan/{uuid.uuid4()}/repair", headers=admin_headers)
        assert response.status_code == 404
