"""Billing dependencies: wire gateway, sinks and engine components for FastAPI routes."""

import logging
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.billing.gateway import PaymentGateway, StripeGateway
from app.billing.ledger import PrivilegeLedger
from app.billing.lifecycle import BillingPolicy
from app.billing.orchestrator import BillingOrchestrator
from app.billing.pipeline import PipelineConfig, WebhookIngestionPipeline
from app.billing.sinks import (
    AuditSink,
    DatabaseAuditSink,
    HttpNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
    SideEffectBuffer,
)
from app.config import settings
from app.database import get_db, get_session_factory

logger = logging.getLogger(__name__)


@lru_cache
def get_gateway() -> PaymentGateway:
    """Process-wide Stripe gateway."""
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set; Stripe calls will fail")
    return StripeGateway.from_settings(settings)


def get_policy() -> BillingPolicy:
    return BillingPolicy.from_settings(settings)


def get_notification_sink() -> NotificationSink:
    if settings.notification_webhook_url:
        return HttpNotificationSink(settings.notification_webhook_url, settings.notification_timeout_seconds)
    return LoggingNotificationSink()


def get_audit_sink(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AuditSink:
    return DatabaseAuditSink(session_factory)


def get_side_effects(
    notifications: NotificationSink = Depends(get_notification_sink),
    audit: AuditSink = Depends(get_audit_sink),
) -> SideEffectBuffer:
    """Per-request buffer; routes flush it after committing."""
    return SideEffectBuffer(notifications, audit)


def get_pipeline(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    notifications: NotificationSink = Depends(get_notification_sink),
    audit: AuditSink = Depends(get_audit_sink),
    policy: BillingPolicy = Depends(get_policy),
) -> WebhookIngestionPipeline:
    return WebhookIngestionPipeline(
        session_factory,
        PipelineConfig.from_settings(settings),
        notifications=notifications,
        audit=audit,
        policy=policy,
    )


def get_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    pipeline: WebhookIngestionPipeline = Depends(get_pipeline),
    notifications: NotificationSink = Depends(get_notification_sink),
    audit: AuditSink = Depends(get_audit_sink),
    policy: BillingPolicy = Depends(get_policy),
) -> BillingOrchestrator:
    return BillingOrchestrator(
        session_factory,
        gateway,
        pipeline,
        notifications=notifications,
        audit=audit,
        policy=policy,
    )


def get_ledger(db: AsyncSession = Depends(get_db)) -> PrivilegeLedger:
    return PrivilegeLedger(db)
