"""Subscription statuses, the allowed transition table, and processor status mapping."""

from enum import Enum


class SubscriptionStatus(str, Enum):
    PENDING = "Pending"
    TRIAL_ACTIVE = "TrialActive"
    ACTIVE = "Active"
    PAYMENT_FAILED = "PaymentFailed"
    PAYMENT_ACTION_REQUIRED = "PaymentActionRequired"
    SUSPENDED = "Suspended"
    PAUSED = "Paused"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.PENDING: frozenset(
        {S.ACTIVE, S.TRIAL_ACTIVE, S.PAYMENT_FAILED, S.PAYMENT_ACTION_REQUIRED, S.CANCELLED, S.EXPIRED}
    ),
    S.TRIAL_ACTIVE: frozenset(
        {S.ACTIVE, S.PAYMENT_FAILED, S.PAYMENT_ACTION_REQUIRED, S.SUSPENDED, S.CANCELLED, S.EXPIRED}
    ),
    S.ACTIVE: frozenset(
        {S.PAYMENT_FAILED, S.PAYMENT_ACTION_REQUIRED, S.SUSPENDED, S.PAUSED, S.CANCELLED, S.EXPIRED}
    ),
    # PaymentFailed -> PaymentFailed is a repeated failure; it bumps the attempt counter.
    S.PAYMENT_FAILED: frozenset(
        {S.ACTIVE, S.PAYMENT_FAILED, S.PAYMENT_ACTION_REQUIRED, S.SUSPENDED, S.CANCELLED, S.EXPIRED}
    ),
    S.PAYMENT_ACTION_REQUIRED: frozenset(
        {S.ACTIVE, S.PAYMENT_FAILED, S.SUSPENDED, S.CANCELLED, S.EXPIRED}
    ),
    S.SUSPENDED: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED}),
    S.PAUSED: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED}),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.CANCELLED, S.EXPIRED})

# Statuses in which privileges may be consumed and recurring charges run.
BILLABLE_STATUSES = frozenset({S.ACTIVE, S.TRIAL_ACTIVE})

# Statuses owned by invoice events rather than subscription.updated events.
PAYMENT_PROBLEM_STATUSES = frozenset({S.PAYMENT_FAILED, S.PAYMENT_ACTION_REQUIRED})

_EXTERNAL_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": S.ACTIVE,
    "trialing": S.TRIAL_ACTIVE,
    "past_due": S.PAYMENT_FAILED,
    "unpaid": S.PAYMENT_FAILED,
    "canceled": S.CANCELLED,
    "incomplete": S.PENDING,
    "incomplete_expired": S.EXPIRED,
}


def is_transition_allowed(current: SubscriptionStatus | str, target: SubscriptionStatus | str) -> bool:
    """Return True when ``current -> target`` is in the allowed table."""
    return SubscriptionStatus(target) in ALLOWED_TRANSITIONS[SubscriptionStatus(current)]


def map_external_status(external_status: str | None) -> SubscriptionStatus:
    """Map a Stripe subscription status onto the local lifecycle.

    Unknown values fall back to Pending.
    """
    if not external_status:
        return S.PENDING
    return _EXTERNAL_STATUS_MAP.get(external_status, S.PENDING)
