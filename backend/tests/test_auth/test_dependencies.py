"""Tests for auth dependencies: bearer validation and the admin guard."""

import uuid
from datetime import datetime, timedelta, timezone

from httpx import AsyncClient
from jose import jwt

from app.auth.jwt import create_access_token
from app.config import settings


def _headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestGetCurrentUser:
    """Test get_current_user via the subscription detail endpoint."""

    async def test_missing_token_rejected(self, client: AsyncClient, make_subscription):
        subscription = await make_subscription()
        response = await client.get(f"/api/v1/subscriptions/{subscription.id}")
        assert response.status_code in (401, 403)

    async def test_expired_token_rejected(self, client: AsyncClient, make_subscription):
        subscription = await make_subscription()
        token = create_access_token({"sub": str(subscription.user_id)}, expires_delta=timedelta(seconds=-1))
        response = await client.get(f"/api/v1/subscriptions/{subscription.id}", headers=_headers(token))
        assert response.status_code == 401

    async def test_invalid_token_format(self, client: AsyncClient):
        response = await client.get(f"/api/v1/subscriptions/{uuid.uuid4()}", headers=_headers("not.a.valid.jwt"))
        assert response.status_code == 401

    async def test_wrong_token_type_rejected(self, client: AsyncClient, make_subscription):
        subscription = await make_subscription()
        payload = {"sub": str(subscription.user_id), "type": "refresh", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)}
        forged = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
        response = await client.get(f"/api/v1/subscriptions/{subscription.id}", headers=_headers(forged))
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token type"

    async def test_nonexistent_user_id_rejected(self, client: AsyncClient):
        token = create_access_token({"sub": str(uuid.uuid4())})
        response = await client.get(f"/api/v1/subscriptions/{uuid.uuid4()}", headers=_headers(token))
        assert response.status_code == 401

    async def test_non_uuid_subject_rejected(self, client: AsyncClient):
        token = create_access_token({"sub": "not-a-uuid"})
        response = await client.get(f"/api/v1/subscriptions/{uuid.uuid4()}", headers=_headers(token))
        assert response.status_code == 401

    async def test_inactive_user_rejected(self, client: AsyncClient, make_user, make_subscription):
        user = await make_user(is_active=False, stripe_customer_id="cus_inactive")
        subscription = await make_subscription(user=user)
        token = create_access_token({"sub": str(user.id)})
        response = await client.get(f"/api/v1/subscriptions/{subscription.id}", headers=_headers(token))
        assert response.status_code == 403
        assert response.json()["detail"] == "Account is inactive"


class TestRequireAdmin:
    """Test the administrator guard on reconciliation and billing-run routes."""

    async def test_patient_forbidden(self, client: AsyncClient, patient_headers):
        response = await client.get("/api/v1/webhooks/stats", headers=patient_headers)
        assert response.status_code == 403
        assert response.json()["detail"] == "Administrator access required"

    async def test_admin_allowed(self, client: AsyncClient, admin_headers):
        response = await client.get("/api/v1/webhooks/stats", headers=admin_headers)
        assert response.status_code == 200
