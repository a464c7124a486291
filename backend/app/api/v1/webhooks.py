"""Stripe webhook endpoint: receives and processes Stripe events."""

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_pipeline, require_admin
from app.billing.errors import SignatureVerificationError, UpstreamUnavailable, ValidationError
from app.billing.periods import utcnow
from app.billing.pipeline import WebhookIngestionPipeline
from app.models.user import User
from app.schemas.billing import WebhookAck, WebhookStatsResponse
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    pipeline: WebhookIngestionPipeline = Depends(get_pipeline),
) -> WebhookAck | JSONResponse:
    """Receive and process Stripe webhook events.

    Every handled outcome (processed, duplicate, ignored, no-op, stale,
    rejected) is acknowledged with 200 so Stripe stops redelivering. Only
    exhausted retries answer 500.
    """
    # Raw bytes are required for signature verification
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        result = await pipeline.ingest(payload, sig_header)
    except SignatureVerificationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e
    except ValidationError as e:
        logger.warning("Invalid webhook payload: %s", e.message)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e
    except UpstreamUnavailable as e:
        logger.error("Webhook processing failed after retries: %s", e.message)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": e.to_dict()},
        )

    return WebhookAck(status=result.outcome, delivery_id=result.delivery_id, event_type=result.event_type)


@router.get("/stats", response_model=WebhookStatsResponse)
async def webhook_stats(
    hours: int | None = Query(default=None, ge=1, description="Only count deliveries from the last N hours"),
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> WebhookStatsResponse:
    """Processing statistics for received webhook deliveries."""
    since = utcnow() - timedelta(hours=hours) if hours else None
    stats = await SubscriptionRepository(db).webhook_stats(since)
    return WebhookStatsResponse(**stats)
