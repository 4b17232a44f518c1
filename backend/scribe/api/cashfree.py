"""
Cashfree API endpoints.

WHAT: Checkout, return-URL verification and webhook receiver for Cashfree.

Endpoints:
1. POST /cashfree/order - Start a purchase (or switch to FREE)
2. GET /cashfree/order - Plan catalogue for the checkout page
3. POST /cashfree/verify - Verify the signed payment tuple from the return URL
4. POST /cashfree/webhook - Payment webhooks (signature required)
5. GET /cashfree/webhook - Liveness check used by Cashfree's dashboard

SECURITY (OWASP):
- A02/A08: Webhooks are rejected before parsing unless signed
- A01: Payment verification only reveals the caller's own orders
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from scribe.core.config import settings
from scribe.core.deps import SessionUser, get_current_user
from scribe.core.exceptions import SubscriptionNotFoundError, WebhookSignatureError
from scribe.dao.subscription import SubscriptionDAO
from scribe.db.session import get_db
from scribe.api.subscription import list_plans
from scribe.schemas.subscription import (
    CashfreeOrderRequest,
    CashfreeOrderResponse,
    CashfreePaymentVerifyRequest,
    CashfreePaymentVerifyResponse,
    PlansResponse,
    WebhookAck,
)
from scribe.services.cashfree_service import (
    PaymentSignatureFields,
    authenticate_webhook,
    verify_payment_signature,
)
from scribe.services.checkout_service import CheckoutService
from scribe.services.webhook_dispatcher import WebhookDispatcher, parse_cashfree_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cashfree", tags=["Cashfree"])


# ============================================================================
# Checkout
# ============================================================================


@router.post(
    "/order",
    response_model=CashfreeOrderResponse,
    summary="Create Cashfree order",
    description="Start a plan purchase with Cashfree. FREE is activated immediately.",
)
async def create_order(
    request: CashfreeOrderRequest,
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CashfreeOrderResponse:
    """
    Create a Cashfree order and the pending subscription it will settle.

    Raises:
        ValidationError: If the caller already has this plan
        CashfreeError: If Cashfree rejects the order
    """
    service = CheckoutService(db)
    result = await service.start_cashfree_checkout(
        current_user,
        request.plan,
        organization_id=request.organization_id,
        customer_phone=request.customer_phone,
        customer_name=request.customer_name,
    )
    await db.commit()

    return CashfreeOrderResponse(
        order_id=result.order_id,
        subscription_id=result.subscription.id,
        plan=result.subscription.plan,
        status=result.subscription.status,
        payment_session_id=result.payment_session_id,
        payment_link=result.payment_link,
    )


@router.get(
    "/order",
    response_model=PlansResponse,
    summary="List purchasable plans",
)
async def get_order_plans() -> PlansResponse:
    """Plan catalogue for the checkout page."""
    return list_plans()


@router.post(
    "/verify",
    response_model=CashfreePaymentVerifyResponse,
    summary="Verify payment signature",
    description="Verify the signed payment details Cashfree appends to the return URL.",
)
async def verify_payment(
    request: CashfreePaymentVerifyRequest,
    current_user: SessionUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CashfreePaymentVerifyResponse:
    """
    Verify a return-URL payment signature.

    WHY: Lets the dashboard show "payment received" as soon as the user
    returns. It never changes the subscription; the webhook does that.

    Raises:
        WebhookSignatureError: If the signature does not match (401)
        SubscriptionNotFoundError: If the order is not the caller's
    """
    fields = PaymentSignatureFields(
        order_id=request.order_id,
        order_amount=request.order_amount,
        reference_id=request.reference_id,
        tx_status=request.tx_status,
        payment_mode=request.payment_mode,
        tx_time=request.tx_time,
    )
    if not verify_payment_signature(fields, request.signature, settings.CASHFREE_SECRET_KEY):
        logger.warning(
            f"Invalid payment signature for order {request.order_id}",
            extra={"order_id": request.order_id, "user_id": current_user.id},
        )
        raise WebhookSignatureError(message="Invalid payment signature")

    subscription = await SubscriptionDAO(db).get_by_order_id(request.order_id)
    if subscription is None or subscription.user_id != current_user.id:
        raise SubscriptionNotFoundError(message="Order not found")

    return CashfreePaymentVerifyResponse(
        verified=True,
        order_id=request.order_id,
        status=subscription.status,
    )


# ============================================================================
# Webhooks
# ============================================================================


@router.post(
    "/webhook",
    response_model=WebhookAck,
    summary="Cashfree payment webhook",
    description="Handles Cashfree payment success, failure and user-dropped webhooks.",
)
async def cashfree_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_webhook_signature: Optional[str] = Header(None, alias="x-webhook-signature"),
    x_webhook_timestamp: Optional[str] = Header(None, alias="x-webhook-timestamp"),
) -> WebhookAck:
    """
    Handle a Cashfree webhook.

    WHY: Errors are never swallowed here. Cashfree retries any non-2xx
    delivery, so a failed write must answer 500 to be redelivered.

    SECURITY (OWASP A02):
    - Signature header required before the body is even read
    - Signature verified before the payload is dispatched

    Returns:
        {"success": true} once the transition is committed
    """
    if not x_webhook_signature:
        logger.warning("Cashfree webhook received without x-webhook-signature header")
        raise WebhookSignatureError(message="Missing signature")

    raw_body = await request.body()
    payload = authenticate_webhook(raw_body, x_webhook_signature, x_webhook_timestamp)
    event = parse_cashfree_event(payload)

    dispatcher = WebhookDispatcher(db)
    try:
        result = await dispatcher.dispatch(event)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        f"Cashfree webhook {event.event_type} processed",
        extra={
            "event_type": event.event_type,
            "order_id": event.order_id,
            "applied": result.applied,
        },
    )
    return WebhookAck(success=True)


@router.get(
    "/webhook",
    response_model=WebhookAck,
    summary="Cashfree webhook liveness",
)
async def cashfree_webhook_status() -> WebhookAck:
    """Liveness message used by Cashfree when registering the endpoint."""
    return WebhookAck(success=True, message="Cashfree webhook endpoint is active")
