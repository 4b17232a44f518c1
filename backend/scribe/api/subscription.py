"""
Subscription status API endpoints.

WHAT: RESTful endpoints for reading and canceling the caller's subscription.

Endpoints:
1. GET /subscription/status - Effective plan, limits and renewal countdown
2. POST /subscription/status - Perform an action ({"action": "cancel"})
3. GET /subscription/plans - Plan catalogue

WHY: The dashboard and every feature gate ask one question: what plan is
this user on right now? This route answers it, expiring ended periods as
a side effect.

SECURITY (OWASP):
- A01: Users can only read and cancel their own subscription
- A07: Authenticated endpoints only (except the plan catalogue)
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from scribe.core.deps import SessionUser, get_current_user
from scribe.core.exceptions import ValidationError
from scribe.db.session import get_db
from scribe.models.subscription import PLAN_DEFINITIONS
from scribe.schemas.subscription import (
    PlanInfo,
    PlansResponse,
    SubscriptionActionRequest,
    SubscriptionActionResponse,
    SubscriptionStatusInfo,
    SubscriptionStatusResponse,
)
from scribe.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["Subscription"])


def list_plans() -> PlansResponse:
    """Plan catalogue shared by every route that lists plans."""
    return PlansResponse(
        plans=[PlanInfo.from_definition(definition) for definition in PLAN_DEFINITIONS.values()]
    )


@router.get(
    "/status",
    response_model=SubscriptionStatusResponse,
    summary="Get subscription status",
    description="Get the caller's effective plan, limits and renewal information.",
)
async def get_subscription_status(
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionStatusResponse:
    """
    Get the caller's effective subscription.

    WHY: Reading may expire an ended subscription, so the read commits.
    """
    service = SubscriptionService(db)
    snapshot = await service.get_status(current_user.id)
    await db.commit()

    return SubscriptionStatusResponse(
        subscription=SubscriptionStatusInfo.model_validate(snapshot),
    )


@router.post(
    "/status",
    response_model=SubscriptionActionResponse,
    summary="Act on subscription",
    description='Perform an action on the caller\'s subscription. Only "cancel" is supported.',
)
async def update_subscription_status(
    request: SubscriptionActionRequest,
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionActionResponse:
    """
    Cancel the caller's current subscription.

    Raises:
        ValidationError: For any action other than "cancel"
        SubscriptionNotFoundError: If there is nothing to cancel
    """
    if request.action != "cancel":
        raise ValidationError(message="Invalid action", action=request.action)

    service = SubscriptionService(db)
    subscription = await service.cancel_for_user(
        current_user.id,
        subscription_id=request.subscription_id,
    )
    await db.commit()

    return SubscriptionActionResponse(
        message="Subscription canceled successfully",
        subscription_id=subscription.id,
        status=subscription.status,
    )


@router.get(
    "/plans",
    response_model=PlansResponse,
    summary="List plans",
    description="Get all subscription plans with features, limits and pricing.",
)
async def get_plans() -> PlansResponse:
    """Public plan catalogue (no authentication required)."""
    return list_plans()
