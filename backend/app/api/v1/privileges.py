"""Privilege API router: query and consume plan privileges (consultations, messages, ...)."""

import logging
import uuid

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_active_user, get_db, get_ledger
from app.api.v1.subscriptions import get_owned_subscription
from app.billing.errors import INSUFFICIENT_PRIVILEGE
from app.billing.ledger import PrivilegeLedger
from app.models.plan import UNLIMITED
from app.models.user import User
from app.schemas.billing import PrivilegeRemainingResponse, PrivilegeUseRequest, PrivilegeUseResponse
from app.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/privileges", tags=["privileges"])


@router.get("/subscriptions/{subscription_id}/{privilege_name}", response_model=PrivilegeRemainingResponse)
async def get_remaining(
    subscription_id: uuid.UUID,
    privilege_name: str,
    db: AsyncSession = Depends(get_db),
    ledger: PrivilegeLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user),
) -> PrivilegeRemainingResponse:
    """Remaining uses across all open windows (-1 means unlimited)."""
    await get_owned_subscription(SubscriptionRepository(db), subscription_id, current_user)
    remaining = await ledger.get_remaining(subscription_id, privilege_name)
    return PrivilegeRemainingResponse(
        subscription_id=subscription_id,
        privilege=privilege_name,
        remaining=remaining,
        unlimited=remaining == UNLIMITED,
    )


@router.post(
    "/subscriptions/{subscription_id}/{privilege_name}/use",
    response_model=PrivilegeUseResponse,
    responses={status.HTTP_402_PAYMENT_REQUIRED: {"description": "Privilege exhausted or not granted"}},
)
async def use_privilege(
    subscription_id: uuid.UUID,
    privilege_name: str,
    body: PrivilegeUseRequest | None = None,
    db: AsyncSession = Depends(get_db),
    ledger: PrivilegeLedger = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user),
) -> PrivilegeUseResponse | JSONResponse:
    """Consume a privilege. Nothing is consumed when any window would be exceeded."""
    await get_owned_subscription(SubscriptionRepository(db), subscription_id, current_user)
    amount = body.amount if body else 1
    allowed = await ledger.use(subscription_id, privilege_name, amount)
    await db.commit()

    if not allowed:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={
                "error": {
                    "kind": INSUFFICIENT_PRIVILEGE,
                    "message": f"No remaining {privilege_name} for subscription {subscription_id}",
                }
            },
        )

    remaining = await ledger.get_remaining(subscription_id, privilege_name)
    return PrivilegeUseResponse(
        subscription_id=subscription_id,
        privilege=privilege_name,
        allowed=True,
        remaining=remaining,
    )
