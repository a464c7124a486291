"""Privilege usage ledger: quota checks and consumption per usage window.

A privilege granted by a plan may be capped per billing period (``value``)
and additionally per day, week and month. Each cap is tracked in its own
``PrivilegeUsage`` row whose window is aligned to the subscription's billing
anchor. Consumption checks every open window and increments all of them, or
none.
"""

import asyncio
import logging
import uuid
import weakref
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import ValidationError
from app.billing.periods import utcnow, window_bounds
from app.billing.status import BILLABLE_STATUSES
from app.models.plan import UNLIMITED, PlanPrivilege, SubscriptionPlan
from app.models.privilege_usage import PrivilegeUsage
from app.models.subscription import Subscription
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

# Serializes ``use`` per subscription within this process; the row lock covers other processes.
# Entries disappear once no coroutine holds or waits on the lock.
_subscription_locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = weakref.WeakValueDictionary()


def _lock_for(subscription_id: uuid.UUID) -> asyncio.Lock:
    lock = _subscription_locks.get(subscription_id)
    if lock is None:
        lock = _subscription_locks[subscription_id] = asyncio.Lock()
    return lock


class PrivilegeLedger:
    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utcnow) -> None:
        self._session = session
        self._repository = SubscriptionRepository(session)
        self._clock = clock

    async def get_remaining(self, subscription_id: uuid.UUID, privilege_name: str) -> int:
        """Tightest remaining count over all open windows.

        Returns ``UNLIMITED`` (-1) for an uncapped grant and 0 when the privilege
        is not granted, disabled, or the subscription is not in a usable status.
        """
        subscription = await self._repository.get_or_raise(subscription_id)
        grant = self._usable_grant(subscription, privilege_name)
        if grant is None:
            return 0
        if grant.is_unlimited:
            return UNLIMITED

        now = self._clock()
        remaining: list[int] = []
        for kind, limit in grant.window_limits().items():
            start, _ = self._bounds(subscription, kind, now)
            usage = await self._find_usage(subscription.id, privilege_name, kind, start)
            consumed = usage.consumed if usage is not None else 0
            remaining.append(max(limit - consumed, 0))
        return min(remaining) if remaining else UNLIMITED

    async def use(self, subscription_id: uuid.UUID, privilege_name: str, amount: int = 1) -> bool:
        """Consume ``amount`` of a privilege if every window has room.

        Returns False, consuming nothing, when any window would be exceeded or
        the subscription cannot use privileges. Successful consumption is
        committed before the per-subscription lock is released, so a concurrent
        call always reads the updated counters.
        """
        if amount < 1:
            raise ValidationError("Usage amount must be a positive integer")

        async with _lock_for(subscription_id):
            subscription = await self._repository.get_for_update(subscription_id)
            grant = self._usable_grant(subscription, privilege_name)
            if grant is None:
                logger.info(
                    "Privilege %s not usable for subscription %s (status %s)",
                    privilege_name,
                    subscription_id,
                    subscription.status,
                )
                return False
            if grant.is_unlimited:
                return True

            now = self._clock()
            usages = [
                await self._open_window(subscription, privilege_name, kind, limit, now)
                for kind, limit in grant.window_limits().items()
            ]
            exhausted = [u for u in usages if u.consumed + amount > u.limit]
            if exhausted:
                logger.info(
                    "Privilege %s exhausted for subscription %s (%s)",
                    privilege_name,
                    subscription_id,
                    ", ".join(f"{u.window_kind} {u.consumed}/{u.limit}" for u in exhausted),
                )
                return False

            for usage in usages:
                usage.consumed += amount
                usage.last_used_at = now
            await self._repository.commit()
            return True

    async def reset_for_plan(self, subscription: Subscription, plan: SubscriptionPlan) -> None:
        """Restart open windows with the new plan's limits after a plan change."""
        now = self._clock()
        granted = {grant.privilege.name: grant for grant in plan.privileges}

        stmt = delete(PrivilegeUsage).where(PrivilegeUsage.subscription_id == subscription.id)
        if granted:
            stmt = stmt.where(PrivilegeUsage.privilege_name.not_in(list(granted)))
        await self._session.execute(stmt)

        result = await self._session.execute(
            select(PrivilegeUsage).where(
                PrivilegeUsage.subscription_id == subscription.id,
                PrivilegeUsage.window_end > now,
            )
        )
        for usage in result.scalars().all():
            limits = granted[usage.privilege_name].window_limits()
            if usage.window_kind not in limits:
                await self._session.delete(usage)
                continue
            usage.consumed = 0
            usage.limit = limits[usage.window_kind]
        await self._repository.save()
        logger.info("Reset privilege windows for subscription %s on plan %s", subscription.id, plan.name)

    # --- internals ---

    @staticmethod
    def _usable_grant(subscription: Subscription, privilege_name: str) -> PlanPrivilege | None:
        if subscription.status_enum not in BILLABLE_STATUSES:
            return None
        grant = subscription.plan.privilege(privilege_name)
        if grant is None or grant.is_disabled:
            return None
        return grant

    @staticmethod
    def _bounds(subscription: Subscription, kind: str, now: datetime) -> tuple[datetime, datetime]:
        return window_bounds(kind, subscription.start_date, now, subscription.plan.billing_interval_months)

    async def _find_usage(
        self, subscription_id: uuid.UUID, privilege_name: str, kind: str, start: datetime
    ) -> PrivilegeUsage | None:
        result = await self._session.execute(
            select(PrivilegeUsage).where(
                PrivilegeUsage.subscription_id == subscription_id,
                PrivilegeUsage.privilege_name == privilege_name,
                PrivilegeUsage.window_kind == kind,
                PrivilegeUsage.window_start == start,
            )
        )
        return result.scalar_one_or_none()

    async def _open_window(
        self, subscription: Subscription, privilege_name: str, kind: str, limit: int, now: datetime
    ) -> PrivilegeUsage:
        start, end = self._bounds(subscription, kind, now)
        usage = await self._find_usage(subscription.id, privilege_name, kind, start)
        if usage is None:
            usage = PrivilegeUsage(
                subscription_id=subscription.id,
                privilege_name=privilege_name,
                window_kind=kind,
                window_start=start,
                window_end=end,
                consumed=0,
                limit=limit,
            )
            self._session.add(usage)
        elif usage.limit != limit:
            usage.limit = limit
        return usage
