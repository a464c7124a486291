"""Privilege usage model: consumed count per anchor-aligned usage window."""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class PrivilegeUsage(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Usage of one privilege in one window (``period``, ``daily``, ``weekly``, ``monthly``)."""

    __tablename__ = "privilege_usages"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "privilege_name", "window_kind", "window_start",
            name="uq_privilege_usage_window",
        ),
    )

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    privilege_name: Mapped[str] = mapped_column(String(100), nullable=False)
    window_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    window_start: Mapped[datetime] = mapped_column(nullable=False)
    window_end: Mapped[datetime] = mapped_column(nullable=False)
    consumed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    limit: Mapped[int] = mapped_column(Integer, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Relationships
    subscription: Mapped["Subscription"] = relationship(back_populates="privilege_usages")  # noqa: F821

    @property
    def remaining(self) -> int:
        return max(self.limit - self.consumed, 0)

    def __repr__(self) -> str:
        return (
            f"<PrivilegeUsage({self.privilege_name}/{self.window_kind} "
            f"{self.window_start:%Y-%m-%d %H:%M} consumed={self.consumed}/{self.limit})>"
        )
