"""Subscriptions API router: purchase, inspect and move subscriptions through their lifecycle.

Users only see their own subscriptions; administrators see all of them.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    get_current_active_user,
    get_db,
    get_gateway,
    get_policy,
    get_side_effects,
    require_admin,
)
from app.billing.errors import InvalidTransitionError, NotFoundError
from app.billing.gateway import PaymentGateway
from app.billing.lifecycle import BillingPolicy, LifecycleStateMachine, TransitionResult
from app.billing.periods import utcnow
from app.billing.sinks import SideEffectBuffer
from app.billing.status import SubscriptionStatus, is_transition_allowed
from app.models.billing_record import BillingRecord
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.billing import (
    BillingRecordResponse,
    PurchaseRequest,
    ReasonRequest,
    SubscriptionResponse,
    TransitionRequest,
    TransitionResponse,
)
from app.services.subscription_repository import SubscriptionRepository
from app.services.subscription_service import purchase_subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


async def get_owned_subscription(
    repository: SubscriptionRepository, subscription_id: uuid.UUID, user: User
) -> Subscription:
    """Load a subscription visible to ``user``; other users' rows look missing."""
    subscription = await repository.get(subscription_id)
    if subscription is None or (subscription.user_id != user.id and not user.is_admin):
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return subscription


def _transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        subscription_id=result.subscription_id,
        from_status=result.from_status.value,
        to_status=result.to_status.value,
        changed=result.changed,
        failed_payment_attempts=result.failed_payment_attempts,
        version=result.version,
    )


@router.post(
    "",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Purchase a subscription",
)
async def purchase(
    body: PurchaseRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_active_user),
) -> Subscription:
    """Create a Pending subscription; Stripe events activate it after the first payment."""
    subscription = await purchase_subscription(db, gateway, current_user, body.plan_id, utcnow())
    await db.commit()
    return subscription


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> Subscription:
    return await get_owned_subscription(SubscriptionRepository(db), subscription_id, current_user)


@router.get("/{subscription_id}/billing-records", response_model=list[BillingRecordResponse])
async def list_billing_records(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> list[BillingRecord]:
    """Billing history in billing order."""
    repository = SubscriptionRepository(db)
    subscription = await get_owned_subscription(repository, subscription_id, current_user)
    return list(await repository.list_billing_records(subscription.id))


@router.post("/{subscription_id}/cancel", response_model=TransitionResponse)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    body: ReasonRequest | None = None,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    effects: SideEffectBuffer = Depends(get_side_effects),
    policy: BillingPolicy = Depends(get_policy),
    current_user: User = Depends(get_current_active_user),
) -> TransitionResponse:
    """Cancel at Stripe first, then locally; the later deleted webhook is a no-op."""
    repository = SubscriptionRepository(db)
    subscription = await get_owned_subscription(repository, subscription_id, current_user)
    machine = LifecycleStateMachine(repository, effects, policy)
    reason = body.reason if body else None

    if not is_transition_allowed(subscription.status_enum, SubscriptionStatus.CANCELLED):
        raise InvalidTransitionError(subscription.status, SubscriptionStatus.CANCELLED.value)
    if subscription.external_subscription_id:
        await gateway.cancel_subscription(subscription.external_subscription_id)
    result = await machine.cancel(subscription.id, reason or "cancelled by user", actor=f"user:{current_user.id}")

    await repository.commit()
    await effects.flush()
    return _transition_response(result)


@router.post("/{subscription_id}/pause", response_model=TransitionResponse)
async def pause_subscription(
    subscription_id: uuid.UUID,
    body: ReasonRequest | None = None,
    db: AsyncSession = Depends(get_db),
    effects: SideEffectBuffer = Depends(get_side_effects),
    policy: BillingPolicy = Depends(get_policy),
    current_user: User = Depends(get_current_active_user),
) -> TransitionResponse:
    repository = SubscriptionRepository(db)
    subscription = await get_owned_subscription(repository, subscription_id, current_user)
    machine = LifecycleStateMachine(repository, effects, policy)
    result = await machine.pause(subscription.id, body.reason if body else None, actor=f"user:{current_user.id}")

    await repository.commit()
    await effects.flush()
    return _transition_response(result)


@router.post("/{subscription_id}/resume", response_model=TransitionResponse)
async def resume_subscription(
    subscription_id: uuid.UUID,
    body: ReasonRequest | None = None,
    db: AsyncSession = Depends(get_db),
    effects: SideEffectBuffer = Depends(get_side_effects),
    policy: BillingPolicy = Depends(get_policy),
    current_user: User = Depends(get_current_active_user),
) -> TransitionResponse:
    repository = SubscriptionRepository(db)
    subscription = await get_owned_subscription(repository, subscription_id, current_user)
    machine = LifecycleStateMachine(repository, effects, policy)
    result = await machine.resume(subscription.id, body.reason if body else None, actor=f"user:{current_user.id}")

    await repository.commit()
    await effects.flush()
    return _transition_response(result)


@router.post("/{subscription_id}/transition", response_model=TransitionResponse)
async def transition_subscription(
    subscription_id: uuid.UUID,
    body: TransitionRequest,
    db: AsyncSession = Depends(get_db),
    effects: SideEffectBuffer = Depends(get_side_effects),
    policy: BillingPolicy = Depends(get_policy),
    admin: User = Depends(require_admin),
) -> TransitionResponse:
    """Administrative status change, guarded by the allowed transition table."""
    repository = SubscriptionRepository(db)
    machine = LifecycleStateMachine(repository, effects, policy)
    result = await machine.transition(
        subscription_id,
        body.target_status,
        body.reason,
        actor=f"admin:{admin.id}",
        expected_version=body.expected_version,
    )

    await repository.commit()
    await effects.flush()
    logger.info(
        "Admin %s moved subscription %s from %s to %s",
        admin.id,
        subscription_id,
        result.from_status.value,
        result.to_status.value,
    )
    return _transition_response(result)
