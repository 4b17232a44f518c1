"""
Stripe API endpoints.

WHAT: Subscription checkout and webhook receiver for Stripe.

Endpoints:
1. POST /stripe/checkout - Start a PRO/ENTERPRISE subscription checkout
2. POST /stripe/webhook - Stripe webhooks (signature required)

SECURITY (OWASP):
- A02: Webhook signature verified on the raw body before parsing
- A07: Checkout requires an authenticated session
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from scribe.core.deps import SessionUser, get_current_user
from scribe.core.exceptions import WebhookSignatureError
from scribe.db.session import get_db
from scribe.schemas.subscription import (
    StripeCheckoutRequest,
    StripeCheckoutResponse,
    WebhookAck,
)
from scribe.services.checkout_service import CheckoutService
from scribe.services.stripe_service import get_stripe_service
from scribe.services.webhook_dispatcher import WebhookDispatcher, parse_stripe_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stripe", tags=["Stripe"])


@router.post(
    "/checkout",
    response_model=StripeCheckoutResponse,
    summary="Create Stripe checkout session",
    description="Start a Stripe subscription checkout for PRO or ENTERPRISE.",
)
async def create_checkout(
    request: StripeCheckoutRequest,
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> StripeCheckoutResponse:
    """
    Create a Stripe Checkout Session and its pending subscription.

    Raises:
        ValidationError: If the plan is FREE or the caller already pays
        StripeError: If Stripe rejects the session
    """
    service = CheckoutService(db)
    result = await service.start_stripe_checkout(
        current_user,
        request.plan,
        organization_id=request.organization_id,
    )
    await db.commit()

    return StripeCheckoutResponse(
        session_id=result.session_id,
        url=result.url,
        subscription_id=result.subscription.id,
    )


@router.post(
    "/webhook",
    response_model=WebhookAck,
    summary="Stripe webhook",
    description="Handles Stripe checkout and subscription lifecycle webhooks.",
)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
) -> WebhookAck:
    """
    Handle a Stripe webhook.

    WHY: Stripe retries any non-2xx delivery for up to three days, so
    signature and JSON problems answer 400 while our own failures answer
    500 and get redelivered.

    Returns:
        {"success": true} once the transition is committed
    """
    if not stripe_signature:
        logger.warning("Stripe webhook received without stripe-signature header")
        raise WebhookSignatureError(message="Missing stripe-signature header", status_code=400)

    payload = await request.body()
    verified = get_stripe_service().verify_webhook(payload, stripe_signature)
    event = parse_stripe_event(verified.type, verified.data)

    dispatcher = WebhookDispatcher(db)
    try:
        result = await dispatcher.dispatch(event)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        f"Stripe webhook {verified.type} processed",
        extra={
            "event_id": verified.id,
            "event_type": verified.type,
            "applied": result.applied,
        },
    )
    return WebhookAck(success=True)
