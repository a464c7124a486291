"""Subscription plan and privilege grant models."""

import uuid
from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

UNLIMITED = -1


class SubscriptionPlan(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A purchasable plan mirrored as a Stripe product + recurring price."""

    __tablename__ = "subscription_plans"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    billing_interval_months: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Stripe identifiers
    stripe_product_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Relationships
    privileges: Mapped[list["PlanPrivilege"]] = relationship(
        back_populates="plan",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def privilege(self, name: str) -> "PlanPrivilege | None":
        for grant in self.privileges:
            if grant.privilege.name == name:
                return grant
        return None

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(id={self.id}, name={self.name!r}, price={self.price})>"


class Privilege(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A named quota-limited capability, e.g. ``Teleconsultation``."""

    __tablename__ = "privileges"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Privilege(name={self.name!r})>"


class PlanPrivilege(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """How much of a privilege a plan grants.

    ``value`` is the quota per billing period: ``-1`` unlimited, ``0`` disabled.
    The optional daily/weekly/monthly limits further cap usage within the period.
    """

    __tablename__ = "plan_privileges"
    __table_args__ = (UniqueConstraint("plan_id", "privilege_id", name="uq_plan_privilege"),)

    plan_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    privilege_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("privileges.id", ondelete="CASCADE"), nullable=False
    )
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=UNLIMITED)
    daily_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    weekly_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    monthly_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Relationships
    plan: Mapped[SubscriptionPlan] = relationship(back_populates="privileges")
    privilege: Mapped[Privilege] = relationship(lazy="selectin")

    @property
    def is_unlimited(self) -> bool:
        return self.value == UNLIMITED and not self.has_time_limits

    @property
    def is_disabled(self) -> bool:
        return self.value == 0

    @property
    def has_time_limits(self) -> bool:
        return any(limit is not None for limit in (self.daily_limit, self.weekly_limit, self.monthly_limit))

    def window_limits(self) -> dict[str, int]:
        """Limits keyed by window kind, skipping unbounded ones."""
        limits: dict[str, int] = {}
        if self.value > 0:
            limits["period"] = self.value
        if self.daily_limit is not None:
            limits["daily"] = self.daily_limit
        if self.weekly_limit is not None:
            limits["weekly"] = self.weekly_limit
        if self.monthly_limit is not None:
            limits["monthly"] = self.monthly_limit
        return limits
