"""Typed webhook events, decoded once from the raw Stripe envelope."""

import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from app.billing.errors import ValidationError
from app.billing.money import from_minor_units
from app.billing.periods import ts_to_naive, utcnow

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_ACTION_REQUIRED = "invoice.payment_action_required"
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"
    CUSTOMER_DELETED = "customer.deleted"
    UNKNOWN = "unknown"

    @classmethod
    def from_type(cls, event_type: str) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


SUBSCRIPTION_KINDS = frozenset(
    {
        EventKind.SUBSCRIPTION_CREATED,
        EventKind.SUBSCRIPTION_UPDATED,
        EventKind.SUBSCRIPTION_DELETED,
        EventKind.SUBSCRIPTION_TRIAL_WILL_END,
    }
)
INVOICE_KINDS = frozenset(
    {
        EventKind.INVOICE_PAYMENT_SUCCEEDED,
        EventKind.INVOICE_PAID,
        EventKind.INVOICE_PAYMENT_FAILED,
        EventKind.INVOICE_PAYMENT_ACTION_REQUIRED,
    }
)
CUSTOMER_KINDS = frozenset(
    {EventKind.CUSTOMER_CREATED, EventKind.CUSTOMER_UPDATED, EventKind.CUSTOMER_DELETED}
)


class SubscriptionPayload(BaseModel):
    id: str
    customer_id: str | None = None
    status: str | None = None
    price_id: str | None = None
    unit_amount: Decimal | None = None
    currency: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    # Set on subscriptions created by the purchase flow
    local_subscription_id: uuid.UUID | None = None


class InvoicePayload(BaseModel):
    id: str
    customer_id: str | None = None
    subscription_id: str | None = None
    # Set for charges initiated locally, so subscriptions without a Stripe id resolve too.
    local_subscription_id: uuid.UUID | None = None
    amount: Decimal = Decimal("0.00")
    currency: str = "usd"
    payment_intent_id: str | None = None
    attempt: int = 1
    period_end: datetime | None = None
    failure_reason: str | None = None
    hosted_invoice_url: str | None = None


class CustomerPayload(BaseModel):
    id: str
    email: str | None = None
    name: str | None = None
    deleted: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    """A processor event after authentication and decoding."""

    kind: EventKind
    event_type: str
    delivery_id: str
    created_at: datetime
    payload: SubscriptionPayload | InvoicePayload | CustomerPayload | None = None

    @property
    def is_local(self) -> bool:
        return self.delivery_id.startswith("local:")

    @classmethod
    def synthetic(
        cls, kind: EventKind, payload: InvoicePayload, created_at: datetime | None = None
    ) -> "WebhookEvent":
        """Event for a charge the orchestrator made itself, keyed by invoice id."""
        return cls(
            kind=kind,
            event_type=kind.value,
            delivery_id=f"local:{payload.id}:{kind.value}",
            created_at=created_at or utcnow(),
            payload=payload,
        )


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _id_of(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("id")
    return value


def _first_item(obj: dict[str, Any]) -> dict[str, Any]:
    data = (obj.get("items") or {}).get("data") or []
    return data[0] if data else {}


def _subscription_payload(obj: dict[str, Any]) -> SubscriptionPayload:
    item = _first_item(obj)
    price = item.get("price") or {}
    return SubscriptionPayload(
        id=obj["id"],
        customer_id=_id_of(obj.get("customer")),
        status=obj.get("status"),
        price_id=price.get("id"),
        unit_amount=from_minor_units(price.get("unit_amount")),
        currency=price.get("currency") or obj.get("currency"),
        # Newer API versions report the period on the item, older ones on the subscription.
        current_period_start=ts_to_naive(item.get("current_period_start", obj.get("current_period_start"))),
        current_period_end=ts_to_naive(item.get("current_period_end", obj.get("current_period_end"))),
        trial_end=ts_to_naive(obj.get("trial_end")),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
        local_subscription_id=local_subscription_id_of(obj),
    )


def invoice_subscription_id(obj: dict[str, Any]) -> str | None:
    """Subscription id of an invoice across Stripe API versions."""
    if obj.get("subscription"):
        return _id_of(obj["subscription"])
    details = ((obj.get("parent") or {}).get("subscription_details")) or {}
    if details.get("subscription"):
        return _id_of(details["subscription"])
    return None


def local_subscription_id_of(obj: dict[str, Any]) -> uuid.UUID | None:
    """Our own subscription id, stamped in metadata on objects we create in Stripe."""
    value = (obj.get("metadata") or {}).get("subscription_id")
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        logger.warning("Stripe object %s carries a malformed subscription_id in metadata: %r", obj.get("id"), value)
        return None


def _invoice_period_end(obj: dict[str, Any]) -> datetime | None:
    lines = (obj.get("lines") or {}).get("data") or []
    for line in lines:
        end = (line.get("period") or {}).get("end")
        if end:
            return ts_to_naive(end)
    return None


def _invoice_failure_reason(obj: dict[str, Any]) -> str | None:
    error = obj.get("last_finalization_error") or {}
    return error.get("message")


def _invoice_payload(kind: EventKind, obj: dict[str, Any]) -> InvoicePayload:
    if kind in (EventKind.INVOICE_PAYMENT_SUCCEEDED, EventKind.INVOICE_PAID):
        minor = obj.get("amount_paid")
    else:
        minor = obj.get("amount_due")
    return InvoicePayload(
        id=obj["id"],
        customer_id=_id_of(obj.get("customer")),
        subscription_id=invoice_subscription_id(obj),
        local_subscription_id=local_subscription_id_of(obj),
        amount=from_minor_units(minor or 0),
        currency=obj.get("currency") or "usd",
        payment_intent_id=_id_of(obj.get("payment_intent")),
        attempt=obj.get("attempt_count") or 1,
        period_end=_invoice_period_end(obj),
        failure_reason=_invoice_failure_reason(obj),
        hosted_invoice_url=obj.get("hosted_invoice_url"),
    )


def _customer_payload(obj: dict[str, Any]) -> CustomerPayload:
    return CustomerPayload(
        id=obj["id"],
        email=obj.get("email"),
        name=obj.get("name"),
        deleted=bool(obj.get("deleted", False)),
        metadata=obj.get("metadata") or {},
    )


def decode_event(raw: bytes) -> WebhookEvent:
    """Decode a raw Stripe event envelope into a ``WebhookEvent``.

    Raises:
        ValidationError: If the body is not JSON or lacks required fields.
    """
    try:
        envelope = json.loads(raw)
        event_type = envelope["type"]
        kind = EventKind.from_type(event_type)
        obj = (envelope.get("data") or {}).get("object") or {}

        payload: SubscriptionPayload | InvoicePayload | CustomerPayload | None = None
        if kind in SUBSCRIPTION_KINDS:
            payload = _subscription_payload(obj)
        elif kind in INVOICE_KINDS:
            payload = _invoice_payload(kind, obj)
        elif kind in CUSTOMER_KINDS:
            payload = _customer_payload(obj)

        return WebhookEvent(
            kind=kind,
            event_type=event_type,
            delivery_id=envelope["id"],
            created_at=ts_to_naive(envelope["created"]),
            payload=payload,
        )
    except (ValueError, KeyError, TypeError, AttributeError, PydanticValidationError) as e:
        logger.warning("Malformed webhook envelope: %s", e)
        raise ValidationError(f"Malformed webhook payload: {e}") from e
