"""Optional Stripe integration tests: hit real Stripe test mode API.

These tests are auto-skipped when STRIPE_SECRET_KEY is not set (e.g., in CI).
"""

import os
import uuid
from decimal import Decimal

import pytest

from app.billing.gateway import StripeGateway

SKIP_REASON = "STRIPE_SECRET_KEY not set: skipping real Stripe integration tests"
pytestmark = [
    pytest.mark.asyncio,
    pytest.mark.skipif(not os.getenv("STRIPE_SECRET_KEY"), reason=SKIP_REASON),
]


@pytest.fixture
def stripe_gateway() -> StripeGateway:
    return StripeGateway(os.environ["STRIPE_SECRET_KEY"], timeout_seconds=30.0)


class TestStripeIntegration:
    """Real Stripe API tests: only run when STRIPE_SECRET_KEY is available."""

    async def test_create_and_retrieve_customer(self, stripe_gateway: StripeGateway):
        """Verify we can create a real Stripe customer in test mode."""
        customer = await stripe_gateway.create_customer(
            email="integration-test@telehealth.test",
            name="Integration Test Patient",
            user_id="test-integration-user-id",
        )
        assert customer.id.startswith("cus_")

        fetched = await stripe_gateway.retrieve_customer(customer.id)
        assert fetched is not None
        assert fetched.email == "integration-test@telehealth.test"
        assert fetched.metadata.get("user_id") == "test-integration-user-id"

    async def test_create_product_and_price(self, stripe_gateway: StripeGateway):
        """Plan catalog objects round-trip through the gateway dataclasses."""
        product = await stripe_gateway.create_product(f"Integration Plan {uuid.uuid4().hex[:6]}", "test plan")
        price = await stripe_gateway.create_price(product.id, Decimal("12.50"), "usd", 1)

        fetched = await stripe_gateway.retrieve_price(price.id)
        assert fetched is not None
        assert fetched.unit_amount == Decimal("12.50")
        assert fetched.interval_months == 1
        assert fetched.product_id == product.id

    async def test_retrieve_nonexistent_subscription_returns_none(self, stripe_gateway: StripeGateway):
        """A missing subscription reads as None rather than an error."""
        assert await stripe_gateway.retrieve_subscription("sub_nonexistent_12345") is None

    def test_invalid_signature_rejected(self, stripe_gateway: StripeGateway):
        assert not stripe_gateway.verify_event_signature(b'{"type": "test"}', "t=12345,v1=invalid", "whsec_x")
