"""Billing API endpoints: plan changes, renewals, billing runs, refunds and payment methods."""

import logging
import uuid
from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_active_user, get_db, get_gateway, get_orchestrator, require_admin
from app.api.v1.subscriptions import get_owned_subscription
from app.billing.gateway import PaymentGateway
from app.billing.orchestrator import BillingOrchestrator
from app.billing.periods import utcnow
from app.models.user import User
from app.schemas.billing import (
    BillingRunRequest,
    BillingRunResponse,
    ChangePlanRequest,
    PaymentMethodResponse,
    PlanChangeResponse,
    RefundRequest,
    RefundResponse,
    RenewResponse,
)
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


@router.post("/subscriptions/{subscription_id}/change-plan", response_model=PlanChangeResponse)
async def change_plan(
    subscription_id: uuid.UUID,
    body: ChangePlanRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: BillingOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(get_current_active_user),
) -> PlanChangeResponse:
    """Switch plans mid-period; the prorated difference is added to the next invoice."""
    await get_owned_subscription(SubscriptionRepository(db), subscription_id, current_user)
    result = await orchestrator.change_plan(subscription_id, body.plan_id, actor=f"user:{current_user.id}")
    return PlanChangeResponse(**asdict(result))


@router.post("/subscriptions/{subscription_id}/renew", response_model=RenewResponse)
async def renew_subscription(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    orchestrator: BillingOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(get_current_active_user),
) -> RenewResponse:
    """Charge the subscription now if its billing date has passed."""
    await get_owned_subscription(SubscriptionRepository(db), subscription_id, current_user)
    result = await orchestrator.renew(subscription_id)
    return RenewResponse(**asdict(result))


@router.post("/recurring/run", response_model=BillingRunResponse)
async def run_recurring_billing(
    body: BillingRunRequest | None = None,
    orchestrator: BillingOrchestrator = Depends(get_orchestrator),
    admin: User = Depends(require_admin),
) -> BillingRunResponse:
    """Charge every subscription that is due. Normally run by the scheduled job."""
    now = body.now if body and body.now else utcnow()
    logger.info("Admin %s started recurring billing run", admin.id)
    summary = await orchestrator.process_recurring_billing(now)
    return BillingRunResponse(**asdict(summary))


@router.post("/failed-payments/retry", response_model=BillingRunResponse)
async def retry_failed_payments(
    body: BillingRunRequest | None = None,
    orchestrator: BillingOrchestrator = Depends(get_orchestrator),
    admin: User = Depends(require_admin),
) -> BillingRunResponse:
    """Retry PaymentFailed subscriptions whose backoff has elapsed."""
    now = body.now if body and body.now else utcnow()
    logger.info("Admin %s started failed-payment retry", admin.id)
    summary = await orchestrator.retry_failed_payments(now)
    return BillingRunResponse(**asdict(summary))


@router.post("/records/{record_id}/refund", response_model=RefundResponse)
async def refund_record(
    record_id: uuid.UUID,
    body: RefundRequest | None = None,
    orchestrator: BillingOrchestrator = Depends(get_orchestrator),
    admin: User = Depends(require_admin),
) -> RefundResponse:
    """Refund a paid billing record in full, or in part when ``amount`` is given."""
    amount = body.amount if body else None
    outcome = await orchestrator.refund(record_id, amount, actor=f"admin:{admin.id}")
    return RefundResponse(**asdict(outcome))


@router.get("/payment-methods", response_model=list[PaymentMethodResponse])
async def list_payment_methods(
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_active_user),
) -> list[PaymentMethodResponse]:
    """Cards on file for the current user's Stripe customer."""
    if not current_user.stripe_customer_id:
        return []
    methods = await gateway.list_payment_methods(current_user.stripe_customer_id)
    return [PaymentMethodResponse(**asdict(m)) for m in methods]
