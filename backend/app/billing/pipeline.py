"""Webhook ingestion pipeline: authenticate, decode, deduplicate, dispatch, retry."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.billing.errors import (
    BillingError,
    SignatureVerificationError,
    UpstreamUnavailable,
)
from app.billing.events import WebhookEvent, decode_event
from app.billing.gateway import verify_event_signature
from app.billing.lifecycle import BillingPolicy, LifecycleStateMachine
from app.billing.periods import utcnow
from app.billing.retry import RETRYABLE_ERRORS, retrying
from app.billing.sinks import AuditSink, NotificationSink, SideEffectBuffer
from app.billing.webhooks import EVENT_HANDLERS, IGNORED, HandlerContext
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

DUPLICATE = "duplicate"
REJECTED = "rejected"


@dataclass(frozen=True)
class PipelineConfig:
    webhook_secret: str
    max_attempts: int = 3
    retry_delay_seconds: float = 5.0
    signature_tolerance_seconds: int = 300

    @classmethod
    def from_settings(cls, settings) -> "PipelineConfig":
        return cls(
            webhook_secret=settings.stripe_webhook_secret,
            max_attempts=settings.webhook_max_retries,
            retry_delay_seconds=settings.webhook_retry_delay_seconds,
            signature_tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )


@dataclass
class IngestionResult:
    delivery_id: str
    event_type: str
    outcome: str
    attempts: int = 0
    error_kind: str | None = None
    error_message: str | None = None


class WebhookIngestionPipeline:
    """Turns processor events into idempotent local mutations.

    Each attempt runs in a fresh session; the processed-event marker is written
    in the same transaction as the handler's mutations, and buffered side
    effects are released only after that transaction commits.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: PipelineConfig,
        *,
        notifications: NotificationSink,
        audit: AuditSink,
        policy: BillingPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._notifications = notifications
        self._audit = audit
        self._policy = policy or BillingPolicy()
        self._clock = clock

    async def ingest(self, payload: bytes, signature_header: str) -> IngestionResult:
        """Verify, decode and process one webhook delivery.

        Raises:
            SignatureVerificationError: Bad signature or no secret configured.
            ValidationError: Malformed envelope.
            UpstreamUnavailable: Retries exhausted; the processor should redeliver.
        """
        if not self._config.webhook_secret:
            logger.error("Rejecting webhook: STRIPE_WEBHOOK_SECRET is not configured")
            raise SignatureVerificationError("Webhook secret is not configured")
        if not verify_event_signature(
            payload,
            signature_header,
            self._config.webhook_secret,
            self._config.signature_tolerance_seconds,
        ):
            logger.warning("Webhook signature verification failed")
            raise SignatureVerificationError("Invalid webhook signature")

        event = decode_event(payload)
        return await self.process(event)

    async def process(self, event: WebhookEvent) -> IngestionResult:
        """Process an already-authenticated event. Also used for locally initiated charges."""
        received_at = self._clock()
        started = time.monotonic()
        logger.info("Processing webhook event: %s (id=%s)", event.event_type, event.delivery_id)

        if await self._already_processed(event.delivery_id):
            logger.info("Duplicate delivery %s, skipping", event.delivery_id)
            return IngestionResult(event.delivery_id, event.event_type, DUPLICATE)

        attempts = 0
        try:
            async for attempt in retrying(self._config.max_attempts, self._config.retry_delay_seconds):
                with attempt:
                    attempts += 1
                    outcome = await self._attempt(event, attempts, received_at, started)
        except RETRYABLE_ERRORS as e:
            logger.error(
                "Webhook %s failed after %d attempts: %s", event.delivery_id, attempts, e.message
            )
            await self._record_failure(event, attempts, received_at, started, e, outcome="failed")
            raise UpstreamUnavailable(
                f"Event {event.delivery_id} could not be applied after {attempts} attempts: {e.message}"
            ) from e
        except BillingError as e:
            logger.warning("Webhook %s rejected: %s (%s)", event.delivery_id, e.message, e.kind)
            await self._record_failure(event, attempts, received_at, started, e, outcome=REJECTED)
            buffer = SideEffectBuffer(self._notifications, self._audit)
            buffer.audit(
                "stripe-webhook",
                "webhook.rejected",
                "webhook_event",
                event.delivery_id,
                None,
                {"event_type": event.event_type, "error_kind": e.kind, "error": e.message},
            )
            await buffer.flush()
            return IngestionResult(
                event.delivery_id, event.event_type, REJECTED, attempts, error_kind=e.kind, error_message=e.message
            )

        logger.info("Webhook %s -> %s (%d attempt(s))", event.delivery_id, outcome, attempts)
        return IngestionResult(event.delivery_id, event.event_type, outcome, attempts)

    async def _already_processed(self, delivery_id: str) -> bool:
        async with self._session_factory() as session:
            marker = await SubscriptionRepository(session).get_webhook_event(delivery_id)
            return marker is not None and marker.is_success

    async def _attempt(
        self, event: WebhookEvent, attempt_number: int, received_at: datetime, started: float
    ) -> str:
        effects = SideEffectBuffer(self._notifications, self._audit)
        async with self._session_factory() as session:
            repository = SubscriptionRepository(session)
            try:
                marker = await repository.get_webhook_event(event.delivery_id)
                if marker is not None and marker.is_success:
                    # A concurrent delivery won the race.
                    return DUPLICATE

                handler = EVENT_HANDLERS.get(event.kind)
                if handler is None:
                    logger.info("Unhandled webhook event type: %s", event.event_type)
                    outcome = IGNORED
                else:
                    ctx = HandlerContext(
                        repository=repository,
                        machine=LifecycleStateMachine(repository, effects, self._policy, self._clock),
                        effects=effects,
                    )
                    outcome = await handler(ctx, event)

                await repository.mark_webhook_event(
                    event.delivery_id,
                    event.event_type,
                    received_at=received_at,
                    processed_at=self._clock(),
                    is_success=True,
                    outcome=outcome,
                    attempt_count=attempt_number,
                    duration_ms=_elapsed_ms(started),
                )
                await repository.commit()
            except Exception:
                await session.rollback()
                effects.discard()
                raise

        await effects.flush()
        return outcome

    async def _record_failure(
        self,
        event: WebhookEvent,
        attempts: int,
        received_at: datetime,
        started: float,
        error: BillingError,
        *,
        outcome: str,
    ) -> None:
        async with self._session_factory() as session:
            repository = SubscriptionRepository(session)
            try:
                await repository.mark_webhook_event(
                    event.delivery_id,
                    event.event_type,
                    received_at=received_at,
                    processed_at=self._clock(),
                    is_success=False,
                    outcome=outcome,
                    attempt_count=attempts,
                    duration_ms=_elapsed_ms(started),
                    error_kind=error.kind,
                    error_message=error.message,
                )
                await repository.commit()
            except BillingError:
                await session.rollback()
                logger.exception("Could not record failure of webhook %s", event.delivery_id)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
