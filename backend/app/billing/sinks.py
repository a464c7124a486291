"""Notification and audit sinks, plus the buffer that defers them until commit."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.billing.periods import utcnow
from app.models.history import AuditLog

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    actor: str
    action: str
    entity_type: str
    entity_id: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class Notification:
    user_id: uuid.UUID
    template_kind: str
    parameters: dict[str, Any] = field(default_factory=dict)


class NotificationSink(Protocol):
    async def notify(self, notification: Notification) -> None: ...


class AuditSink(Protocol):
    async def record(self, entry: AuditEntry) -> None: ...


def jsonable(value: Any) -> Any:
    """Make audit snapshots JSON-serializable."""
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class LoggingNotificationSink:
    """Default sink: notification delivery belongs to another service."""

    async def notify(self, notification: Notification) -> None:
        logger.info(
            "Notification %s for user %s: %s",
            notification.template_kind,
            notification.user_id,
            notification.parameters,
        )


class HttpNotificationSink:
    """POST notifications to the messaging service's webhook."""

    def __init__(self, url: str, timeout_seconds: float = 5.0) -> None:
        self._url = url
        self._timeout = timeout_seconds

    async def notify(self, notification: Notification) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                self._url,
                json={
                    "user_id": str(notification.user_id),
                    "template": notification.template_kind,
                    "parameters": jsonable(notification.parameters),
                },
            )
            response.raise_for_status()


class DatabaseAuditSink:
    """Write audit entries to ``audit_logs`` in a session of their own."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, entry: AuditEntry) -> None:
        async with self._session_factory() as session:
            session.add(
                AuditLog(
                    actor=entry.actor,
                    action=entry.action,
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    before=jsonable(entry.before),
                    after=jsonable(entry.after),
                    created_at=entry.timestamp,
                )
            )
            await session.commit()


class SideEffectBuffer:
    """Collects notifications and audit entries raised during a unit of work.

    Nothing is sent until ``flush()``, which callers invoke after their
    transaction commits. Delivery is best-effort: failures are logged and
    never reach the caller.
    """

    def __init__(self, notifications: NotificationSink, audit: AuditSink) -> None:
        self._notification_sink = notifications
        self._audit_sink = audit
        self.notifications: list[Notification] = []
        self.audit_entries: list[AuditEntry] = []

    def notify(self, user_id: uuid.UUID, template_kind: str, **parameters: Any) -> None:
        self.notifications.append(Notification(user_id, template_kind, parameters))

    def audit(
        self,
        actor: str,
        action: str,
        entity_type: str,
        entity_id: Any,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> None:
        self.audit_entries.append(
            AuditEntry(actor, action, entity_type, str(entity_id), jsonable(before), jsonable(after))
        )

    def discard(self) -> None:
        self.notifications.clear()
        self.audit_entries.clear()

    async def flush(self) -> None:
        audit_entries, self.audit_entries = self.audit_entries, []
        notifications, self.notifications = self.notifications, []
        for entry in audit_entries:
            try:
                await self._audit_sink.record(entry)
            except Exception:
                logger.exception(
                    "Failed to write audit entry %s %s/%s", entry.action, entry.entity_type, entry.entity_id
                )
        for notification in notifications:
            try:
                await self._notification_sink.notify(notification)
            except Exception:
                logger.exception(
                    "Failed to send %s notification to user %s",
                    notification.template_kind,
                    notification.user_id,
                )
