"""Subscription lifecycle state machine.

Every status change goes through here: it checks the allowed transition table,
applies the payment-failure escalation policy, writes a history row and raises
audit + notification side effects into the caller's buffer.
"""

import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP

from app.billing.errors import ConflictError, InvalidTransitionError
from app.billing.periods import utcnow
from app.billing.sinks import SideEffectBuffer
from app.billing.status import SubscriptionStatus, is_transition_allowed
from app.models.subscription import Subscription
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingPolicy:
    """Tunable billing rules."""

    suspend_threshold: int = 3
    proration_rounding: str = ROUND_HALF_UP
    retry_backoff_hours: int = 24

    @classmethod
    def from_settings(cls, settings) -> "BillingPolicy":
        return cls(
            suspend_threshold=settings.payment_failure_suspend_threshold,
            proration_rounding=settings.proration_rounding,
            retry_backoff_hours=settings.payment_retry_backoff_hours,
        )


@dataclass
class TransitionResult:
    subscription_id: uuid.UUID
    from_status: SubscriptionStatus
    to_status: SubscriptionStatus
    changed: bool
    failed_payment_attempts: int
    version: int


def template_kind(status: SubscriptionStatus) -> str:
    """``PaymentFailed`` -> ``subscription_payment_failed``."""
    return "subscription_" + re.sub(r"(?<!^)(?=[A-Z])", "_", status.value).lower()


def snapshot(subscription: Subscription) -> dict[str, object]:
    return {
        "status": subscription.status,
        "failed_payment_attempts": subscription.failed_payment_attempts,
        "current_price": subscription.current_price,
        "next_billing_date": subscription.next_billing_date,
        "plan_id": subscription.plan_id,
        "version": subscription.version,
    }


class LifecycleStateMachine:
    def __init__(
        self,
        repository: SubscriptionRepository,
        effects: SideEffectBuffer,
        policy: BillingPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._effects = effects
        self._policy = policy or BillingPolicy()
        self._clock = clock

    async def transition(
        self,
        subscription_id: uuid.UUID,
        target_status: SubscriptionStatus | str,
        reason: str | None = None,
        *,
        actor: str = "system",
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Load a subscription and move it to ``target_status``.

        Raises:
            NotFoundError: If the subscription does not exist.
            ConflictError: If ``expected_version`` is stale or a concurrent writer won.
            InvalidTransitionError: If the table does not allow the change.
        """
        subscription = await self._repository.get_or_raise(subscription_id)
        if expected_version is not None and subscription.version != expected_version:
            raise ConflictError(
                f"Subscription {subscription_id} is at version {subscription.version}, "
                f"expected {expected_version}"
            )
        return await self.apply(subscription, target_status, reason, actor=actor)

    async def apply(
        self,
        subscription: Subscription,
        target_status: SubscriptionStatus | str,
        reason: str | None = None,
        *,
        actor: str = "system",
    ) -> TransitionResult:
        current = subscription.status_enum
        target = SubscriptionStatus(target_status)
        if not is_transition_allowed(current, target):
            raise InvalidTransitionError(current.value, target.value)

        before = snapshot(subscription)
        now = self._clock()

        if target is SubscriptionStatus.PAYMENT_FAILED:
            subscription.failed_payment_attempts += 1
            subscription.last_payment_failed_at = now
            if subscription.failed_payment_attempts >= self._policy.suspend_threshold and is_transition_allowed(
                current, SubscriptionStatus.SUSPENDED
            ):
                logger.info(
                    "Subscription %s reached %d failed payments, suspending",
                    subscription.id,
                    subscription.failed_payment_attempts,
                )
                target = SubscriptionStatus.SUSPENDED
                reason = reason or "payment failure threshold reached"

        self._set_status(subscription, target, reason, now)
        self._repository.add_history(subscription, current.value, target.value, reason, actor, now)
        await self._repository.save(subscription)

        self._effects.audit(
            actor, "subscription.transition", "subscription", subscription.id, before, snapshot(subscription)
        )
        self._effects.notify(
            subscription.user_id,
            template_kind(target),
            subscription_id=subscription.id,
            previous_status=current.value,
            reason=reason,
        )
        logger.info(
            "Subscription %s: %s -> %s (%s, actor=%s)",
            subscription.id,
            current.value,
            target.value,
            reason,
            actor,
        )
        return TransitionResult(
            subscription_id=subscription.id,
            from_status=current,
            to_status=target,
            changed=True,
            failed_payment_attempts=subscription.failed_payment_attempts,
            version=subscription.version,
        )

    async def register_payment_failure(
        self, subscription: Subscription, reason: str | None = None, *, actor: str = "system"
    ) -> TransitionResult:
        """Count a failed payment, escalating to Suspended at the threshold."""
        current = subscription.status_enum
        if current is not SubscriptionStatus.SUSPENDED:
            return await self.apply(subscription, SubscriptionStatus.PAYMENT_FAILED, reason, actor=actor)

        before = snapshot(subscription)
        subscription.failed_payment_attempts += 1
        subscription.last_payment_failed_at = self._clock()
        await self._repository.save(subscription)
        self._effects.audit(
            actor, "subscription.payment_failure", "subscription", subscription.id, before, snapshot(subscription)
        )
        return TransitionResult(
            subscription_id=subscription.id,
            from_status=current,
            to_status=current,
            changed=False,
            failed_payment_attempts=subscription.failed_payment_attempts,
            version=subscription.version,
        )

    async def cancel(
        self, subscription_id: uuid.UUID, reason: str | None = None, *, actor: str = "system"
    ) -> TransitionResult:
        return await self.transition(subscription_id, SubscriptionStatus.CANCELLED, reason, actor=actor)

    async def pause(
        self, subscription_id: uuid.UUID, reason: str | None = None, *, actor: str = "system"
    ) -> TransitionResult:
        return await self.transition(subscription_id, SubscriptionStatus.PAUSED, reason, actor=actor)

    async def resume(
        self, subscription_id: uuid.UUID, reason: str | None = None, *, actor: str = "system"
    ) -> TransitionResult:
        return await self.transition(subscription_id, SubscriptionStatus.ACTIVE, reason or "resumed", actor=actor)

    @staticmethod
    def _set_status(
        subscription: Subscription, target: SubscriptionStatus, reason: str | None, now: datetime
    ) -> None:
        subscription.status = target.value
        subscription.status_reason = reason
        if target is SubscriptionStatus.ACTIVE:
            # Back in good standing
            subscription.failed_payment_attempts = 0
            subscription.suspended_at = None
            subscription.paused_at = None
        elif target is SubscriptionStatus.SUSPENDED:
            subscription.suspended_at = now
        elif target is SubscriptionStatus.PAUSED:
            subscription.paused_at = now
        elif target is SubscriptionStatus.CANCELLED:
            subscription.cancelled_at = now
