"""Tests for querying and consuming plan privileges over HTTP."""

from httpx import AsyncClient

from app.billing.status import SubscriptionStatus


def url(subscription, name: str) -> str:
    return f"/api/v1/privileges/subscriptions/{subscription.id}/{name}"


class TestPrivilegesApi:
    async def test_use_until_exhausted(self, client: AsyncClient, patient, patient_headers, make_plan, make_subscription):
        plan = await make_plan(privileges={"Teleconsultation": {"value": 2}})
        subscription = await make_subscription(user=patient, plan=plan)

        remaining = await client.get(url(subscription, "Teleconsultation"), headers=patient_headers)
        assert remaining.json() == {
            "subscription_id": str(subscription.id),
            "privilege": "Teleconsultation",
            "remaining": 2,
            "unlimited": False,
        }

        first = await client.post(f"{url(subscription, 'Teleconsultation')}/use", headers=patient_headers)
        assert first.status_code == 200
        assert first.json()["allowed"] is True
        assert first.json()["remaining"] == 1

        second = await client.post(
            f"{url(subscription, 'Teleconsultation')}/use", json={"amount": 1}, headers=patient_headers
        )
        assert second.json()["remaining"] == 0

        third = await client.post(f"{url(subscription, 'Teleconsultation')}/use", headers=patient_headers)
        assert third.status_code == 402
        assert third.json()["error"]["kind"] == "insufficient_privilege"

    async def test_batch_larger_than_quota_consumes_nothing(
        self, client: AsyncClient, patient, patient_headers, make_plan, make_subscription
    ):
        plan = await make_plan(privileges={"PrescriptionRefill": {"value": 2}})
        subscription = await make_subscription(user=patient, plan=plan)

        response = await client.post(
            f"{url(subscription, 'PrescriptionRefill')}/use", json={"amount": 3}, headers=patient_headers
        )

        assert response.status_code == 402
        remaining = await client.get(url(subscription, "PrescriptionRefill"), headers=patient_headers)
        assert remaining.json()["remaining"] == 2

    async def test_unlimited(self, client: AsyncClient, patient, patient_headers, make_plan, make_subscription):
        plan = await make_plan(privileges={"Messaging": {"value": -1}})
        subscription = await make_subscription(user=patient, plan=plan)

        response = await client.get(url(subscription, "Messaging"), headers=patient_headers)

        assert response.json()["remaining"] == -1
        assert response.json()["unlimited"] is True

    async def test_not_granted(self, client: AsyncClient, patient, patient_headers, make_plan, make_subscription):
        plan = await make_plan(privileges={"Messaging": {"value": -1}})
        subscription = await make_subscription(user=patient, plan=plan)

        remaining = await client.get(url(subscription, "LabReview"), headers=patient_headers)
        use = await client.post(f"{url(subscription, 'LabReview')}/use", headers=patient_headers)

        assert remaining.json()["remaining"] == 0
        assert use.status_code == 402

    async def test_suspended_subscription_cannot_use(
        self, client: AsyncClient, patient, patient_headers, make_plan, make_subscription
    ):
        plan = await make_plan(privileges={"Teleconsultation": {"value": 5}})
        subscription = await make_subscription(user=patient, plan=plan, status=SubscriptionStatus.SUSPENDED)

        response = await client.post(f"{url(subscription, 'Teleconsultation')}/use", headers=patient_headers)

        assert response.status_code == 402

    async def test_invalid_amount(self, client: AsyncClient, patient, patient_headers, make_subscription):
        subscription = await make_subscription(user=patient)
        response = await client.post(
            f"{url(subscription, 'Teleconsultation')}/use", json={"amount": 0}, headers=patient_headers
        )
        assert response.status_code == 422

    async def test_other_users_subscription(self, client: AsyncClient, patient_headers, make_subscription):
        subscription = await make_subscription()
        response = await client.get(url(subscription, "Teleconsultation"), headers=patient_headers)
        assert response.status_code == 404
