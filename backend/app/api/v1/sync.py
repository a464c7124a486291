"""Administrative reconciliation API: validate and repair drift against Stripe."""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_gateway, get_policy, get_side_effects, require_admin
from app.billing.gateway import PaymentGateway
from app.billing.lifecycle import BillingPolicy
from app.billing.reconciliation import ReconciliationService
from app.billing.sinks import SideEffectBuffer
from app.config import settings
from app.models.user import User
from app.schemas.sync import DiscrepancyResponse, RepairReport, ValidationReport
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


def get_reconciliation(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    effects: SideEffectBuffer = Depends(get_side_effects),
    policy: BillingPolicy = Depends(get_policy),
) -> ReconciliationService:
    return ReconciliationService(
        SubscriptionRepository(db),
        gateway,
        effects,
        policy=policy,
        max_attempts=settings.reconciliation_max_attempts,
        retry_delay_seconds=settings.reconciliation_retry_delay_seconds,
    )


@router.post("/{entity_type}/{entity_id}/validate", response_model=ValidationReport)
async def validate_entity(
    entity_type: str,
    entity_id: str,
    service: ReconciliationService = Depends(get_reconciliation),
    _admin: User = Depends(require_admin),
) -> ValidationReport:
    """Compare a plan, subscription or customer with Stripe without changing anything."""
    discrepancies = await service.validate(entity_type, entity_id)
    return ValidationReport(
        entity_type=entity_type,
        entity_id=entity_id,
        in_sync=not discrepancies,
        discrepancies=[DiscrepancyResponse(**asdict(d)) for d in discrepancies],
    )


@router.post("/{entity_type}/{entity_id}/repair", response_model=RepairReport)
async def repair_entity(
    entity_type: str,
    entity_id: str,
    db: AsyncSession = Depends(get_db),
    service: ReconciliationService = Depends(get_reconciliation),
    effects: SideEffectBuffer = Depends(get_side_effects),
    admin: User = Depends(require_admin),
) -> RepairReport:
    """Fix each discrepancy independently; successful fields are kept even if others fail."""
    result = await service.repair(entity_type, entity_id, actor=f"admin:{admin.id}")
    await SubscriptionRepository(db).commit()
    await effects.flush()
    return RepairReport.model_validate(asdict(result))
