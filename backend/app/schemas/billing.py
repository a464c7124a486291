"""Pydantic v2 request/response schemas for subscription and billing endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from app.billing.status import SubscriptionStatus

# --- Request schemas ---


class PurchaseRequest(BaseModel):
    """Start a subscription to a plan."""

    plan_id: uuid.UUID


class ReasonRequest(BaseModel):
    """Optional free-text reason for cancel / pause / resume."""

    reason: str | None = Field(default=None, max_length=500)


class TransitionRequest(BaseModel):
    """Administrative status change."""

    target_status: SubscriptionStatus
    reason: str | None = Field(default=None, max_length=500)
    expected_version: int | None = None


class ChangePlanRequest(BaseModel):
    plan_id: uuid.UUID


class BillingRunRequest(BaseModel):
    """Run a billing job as of ``now`` (defaults to the current time)."""

    now: datetime | None = None


class RefundRequest(BaseModel):
    """Refund amount; omit to refund the whole remaining amount."""

    amount: Decimal | None = Field(default=None, gt=0, decimal_places=2)


class PrivilegeUseRequest(BaseModel):
    amount: int = Field(default=1, ge=1)


# --- Response schemas ---


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    plan_id: uuid.UUID
    status: str
    status_reason: str | None
    external_subscription_id: str | None
    external_customer_id: str | None
    current_price: Decimal
    currency: str
    start_date: datetime
    next_billing_date: datetime
    trial_end_date: datetime | None
    last_payment_date: datetime | None
    last_payment_error: str | None
    failed_payment_attempts: int
    cancelled_at: datetime | None
    suspended_at: datetime | None
    paused_at: datetime | None
    version: int


class TransitionResponse(BaseModel):
    subscription_id: uuid.UUID
    from_status: str
    to_status: str
    changed: bool
    failed_payment_attempts: int
    version: int


class BillingRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    subscription_id: uuid.UUID
    amount: Decimal
    refunded_amount: Decimal
    currency: str
    type: str
    status: str
    external_invoice_id: str | None
    payment_attempt: int
    description: str | None
    failure_reason: str | None
    billed_at: datetime
    paid_at: datetime | None


class PlanChangeResponse(BaseModel):
    subscription_id: uuid.UUID
    old_plan_id: uuid.UUID
    new_plan_id: uuid.UUID
    proration_amount: Decimal
    adjustment_record_id: uuid.UUID | None


class RenewResponse(BaseModel):
    subscription_id: uuid.UUID
    outcome: str  # "not_due", "succeeded", "failed" or "skipped"
    next_billing_date: datetime


class BillingRunResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    skipped: int
    errored: int


class RefundResponse(BaseModel):
    billing_record_id: uuid.UUID
    refund_id: str
    amount: Decimal
    refunded_total: Decimal


class PaymentMethodResponse(BaseModel):
    id: str
    brand: str | None
    last4: str | None
    exp_month: int | None
    exp_year: int | None


class PrivilegeRemainingResponse(BaseModel):
    subscription_id: uuid.UUID
    privilege: str
    remaining: int  # -1 = unlimited
    unlimited: bool


class PrivilegeUseResponse(BaseModel):
    subscription_id: uuid.UUID
    privilege: str
    allowed: bool
    remaining: int


class WebhookAck(BaseModel):
    status: str
    delivery_id: str | None = None
    event_type: str | None = None


class WebhookStatsResponse(BaseModel):
    total: int
    failed: int
    success_rate: float
    avg_processing_ms: float | None
    by_type: dict[str, dict[str, int]]
