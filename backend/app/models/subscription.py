"""Subscription model: local projection of a Stripe subscription."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.billing.errors import ValidationError
from app.billing.status import SubscriptionStatus
from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A user's subscription to a plan.

    Status changes go through ``LifecycleStateMachine``; rows are never deleted
    (cancellation is a terminal status). ``version`` guards every UPDATE so a
    concurrent writer fails with ``StaleDataError`` instead of overwriting.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("user_id", "external_subscription_id", name="uq_subscription_user_external"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscription_plans.id"),
        nullable=False,
        index=True,
    )

    # Stripe identifiers
    external_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    external_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Status
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=SubscriptionStatus.PENDING.value, index=True
    )
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Pricing & billing calendar
    current_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    start_date: Mapped[datetime] = mapped_column(nullable=False)  # billing anchor
    next_billing_date: Mapped[datetime] = mapped_column(nullable=False, index=True)
    trial_end_date: Mapped[datetime | None] = mapped_column(nullable=True)

    # Payment tracking
    last_payment_date: Mapped[datetime | None] = mapped_column(nullable=True)
    last_payment_failed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_payment_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_payment_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lifecycle timestamps
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    suspended_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Processor timestamp of the newest event applied to this row
    last_event_at: Mapped[datetime | None] = mapped_column(nullable=True)
    # Same, for invoice events only; subscription events never move it
    last_payment_event_at: Mapped[datetime | None] = mapped_column(nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscriptions", lazy="selectin")  # noqa: F821
    plan: Mapped["SubscriptionPlan"] = relationship(lazy="selectin")  # noqa: F821
    billing_records: Mapped[list["BillingRecord"]] = relationship(  # noqa: F821
        back_populates="subscription",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )
    privilege_usages: Mapped[list["PrivilegeUsage"]] = relationship(  # noqa: F821
        back_populates="subscription",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )

    @validates("external_subscription_id")
    def _validate_external_id(self, key: str, value: str | None) -> str | None:
        current = self.external_subscription_id
        if current is not None and value != current:
            raise ValidationError(
                f"external_subscription_id is immutable once set (subscription {self.id})"
            )
        return value

    @property
    def status_enum(self) -> SubscriptionStatus:
        return SubscriptionStatus(self.status)

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, status={self.status}, "
            f"external={self.external_subscription_id})>"
        )
