"""Billing record model: one financial event tied to a subscription."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.billing.errors import ValidationError
from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class BillingType:
    SUBSCRIPTION = "subscription"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class BillingStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


_FINAL_STATUSES = {BillingStatus.PAID, BillingStatus.REFUNDED}


class BillingRecord(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A charge, refund, or adjustment.

    Immutable once Paid or Refunded, apart from amending ``refunded_amount``.
    """

    __tablename__ = "billing_records"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    type: Mapped[str] = mapped_column(String(20), nullable=False, default=BillingType.SUBSCRIPTION)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=BillingStatus.PENDING)

    # Stripe identifiers
    external_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    external_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Stripe retries one invoice several times; each failed attempt gets its own record.
    payment_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    billed_at: Mapped[datetime] = mapped_column(nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    subscription: Mapped["Subscription"] = relationship(back_populates="billing_records")  # noqa: F821

    @validates("amount", "currency", "type", "external_invoice_id")
    def _validate_frozen_fields(self, key: str, value):
        current = getattr(self, key)
        if self.status in _FINAL_STATUSES and current is not None and current != value:
            raise ValidationError(f"Billing record {self.id} is {self.status}; {key} cannot change")
        return value

    @validates("status")
    def _validate_status(self, key: str, value: str) -> str:
        current = self.status
        if current == BillingStatus.REFUNDED and value != BillingStatus.REFUNDED:
            raise ValidationError(f"Billing record {self.id} is refunded; status cannot change")
        if current == BillingStatus.PAID and value not in (BillingStatus.PAID, BillingStatus.REFUNDED):
            raise ValidationError(f"Billing record {self.id} is paid; it can only move to refunded")
        return value

    @validates("refunded_amount")
    def _validate_refunded_amount(self, key: str, value: Decimal) -> Decimal:
        if value is not None and self.amount is not None and value > self.amount:
            raise ValidationError(f"Refunded amount {value} exceeds billed amount {self.amount}")
        return value

    @property
    def refundable_amount(self) -> Decimal:
        return self.amount - (self.refunded_amount or Decimal("0.00"))

    def __repr__(self) -> str:
        return (
            f"<BillingRecord(id={self.id}, type={self.type}, status={self.status}, "
            f"amount={self.amount}, invoice={self.external_invoice_id})>"
        )
