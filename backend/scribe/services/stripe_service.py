"""
Stripe billing service for subscription checkout and webhooks.

WHAT: Provides a unified interface for the Stripe operations the billing
flow needs: subscription checkout sessions, webhook verification and
remote cancellation.

WHY: Stripe is the card provider for users paying in USD:
1. Starting a subscription checkout for PRO/ENTERPRISE
2. Proving a webhook came from Stripe before it touches our data
3. Stopping renewals when a user cancels in the app

HOW: Uses the Stripe Python SDK with:
- Checkout Sessions in subscription mode (hosted payment page)
- Stripe's own t=/v1= signature scheme for webhooks (OWASP A02)
- Service class pattern: testable with mocked Stripe SDK
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from scribe.core.config import settings
from scribe.core.exceptions import (
    MalformedPayloadError,
    PlanNotConfiguredError,
    StripeError,
    WebhookSignatureError,
)
from scribe.models.subscription import SubscriptionPlan

logger = logging.getLogger(__name__)


# ============================================================================
# Stripe Configuration
# ============================================================================


def configure_stripe() -> None:
    """
    Configure Stripe SDK with API key from settings.

    WHY: Must be called before any Stripe API operations.
    """
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = "2023-10-16"  # Pin API version for stability


# Initialize Stripe on module load
configure_stripe()


def get_stripe_price_id(plan: SubscriptionPlan) -> Optional[str]:
    """
    Get the Stripe price id configured for a plan.

    Returns:
        price_xxx id, or None for FREE or an unconfigured plan
    """
    return {
        SubscriptionPlan.PRO: settings.STRIPE_PRICE_PRO,
        SubscriptionPlan.ENTERPRISE: settings.STRIPE_PRICE_ENTERPRISE,
    }.get(SubscriptionPlan(plan))


# ============================================================================
# Data Classes
# ============================================================================


@dataclass
class CheckoutSession:
    """
    Represents a created Stripe Checkout Session.

    WHAT: The session id we persist as the order id, and the hosted page
    URL the browser is redirected to.
    """

    id: str
    url: Optional[str]


@dataclass
class WebhookEvent:
    """
    Represents a verified Stripe webhook event.

    WHAT: Data container for webhook event data.
    """

    id: Optional[str]
    """Event ID (evt_xxx)."""

    type: str
    """Event type (e.g., checkout.session.completed)."""

    data: Dict[str, Any]
    """Event data object."""

    created: Optional[int] = None
    """Unix timestamp when event was created."""


# ============================================================================
# Stripe Service
# ============================================================================


class StripeService:
    """
    Service for Stripe subscription operations.

    HOW: Uses Stripe Python SDK with proper error handling and logging for
    every call that leaves the process.
    """

    def __init__(self, api_key: Optional[str] = None):
        """
        Initialize Stripe service.

        Args:
            api_key: Optional Stripe API key (defaults to settings)
        """
        if api_key:
            stripe.api_key = api_key

    async def create_checkout_session(
        self,
        user_id: str,
        plan: SubscriptionPlan,
        customer_email: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Create a Stripe Checkout Session for a plan subscription.

        WHY: The user/plan metadata is copied onto the Stripe subscription
        as well, so later subscription events can be traced to a user even
        from the Stripe dashboard.

        Args:
            user_id: Purchasing user
            plan: PRO or ENTERPRISE
            customer_email: Prefills the checkout form
            organization_id: Optional owning organization

        Returns:
            CheckoutSession with session id and redirect URL

        Raises:
            PlanNotConfiguredError: If the plan has no Stripe price
            StripeError: If Stripe API call fails
        """
        plan = SubscriptionPlan(plan)
        price_id = get_stripe_price_id(plan)
        if not price_id:
            raise PlanNotConfiguredError(
                message=f"Plan {plan.value} is not configured for Stripe",
                plan=plan.value,
            )

        metadata = {
            "user_id": user_id,
            "organization_id": organization_id or "",
            "plan": plan.value,
        }

        try:
            session = stripe.checkout.Session.create(
                mode="subscription",
                line_items=[{"price": price_id, "quantity": 1}],
                customer_email=customer_email,
                client_reference_id=user_id,
                metadata=metadata,
                subscription_data={"metadata": metadata},
                allow_promotion_codes=True,
                success_url=(
                    f"{settings.APP_URL}/dashboard?payment=success"
                    "&session_id={CHECKOUT_SESSION_ID}"
                ),
                cancel_url=f"{settings.APP_URL}/dashboard?payment=cancelled",
            )
        except stripe.StripeError as e:
            logger.error(
                f"Stripe checkout session error: {e}",
                extra={"user_id": user_id, "plan": plan.value},
            )
            raise StripeError(
                message="Failed to create checkout session",
                stripe_error=str(e),
                plan=plan.value,
            )

        logger.info(
            f"Created checkout session {session.id} for user {user_id}",
            extra={
                "checkout_session_id": session.id,
                "user_id": user_id,
                "plan": plan.value,
            },
        )

        return CheckoutSession(id=session.id, url=getattr(session, "url", None))

    def verify_webhook(
        self,
        payload: bytes,
        signature: str,
        webhook_secret: Optional[str] = None,
    ) -> WebhookEvent:
        """
        Verify a Stripe webhook signature and parse the event.

        WHY: Security critical (OWASP A02): prevents webhook forgery. JSON
        problems are reported separately from signature problems so a
        broken integration is distinguishable from an attack.

        HOW:
        1. Body must be UTF-8 (the signature is over the exact text)
        2. Stripe's t=<ts>,v1=<hex> header checked with tolerance
        3. Only then is the body parsed as JSON

        Args:
            payload: Raw request body bytes
            signature: stripe-signature header value
            webhook_secret: Optional signing secret (defaults to settings)

        Returns:
            WebhookEvent with verified event data

        Raises:
            MalformedPayloadError: If body is not UTF-8 or not a JSON event
            WebhookSignatureError: If signature verification fails (400)
        """
        secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedPayloadError(message="Webhook body must be UTF-8")

        try:
            stripe.WebhookSignature.verify_header(
                text,
                signature,
                secret,
                tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe webhook signature verification failed: {e}")
            raise WebhookSignatureError(
                message="Invalid signature",
                status_code=400,
            )

        try:
            event = json.loads(text)
        except ValueError:
            logger.warning("Stripe webhook body is not valid JSON")
            raise MalformedPayloadError(message="Invalid JSON payload")

        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            raise MalformedPayloadError(message="Invalid JSON payload: missing event type")

        data = event.get("data")
        obj = data.get("object") if isinstance(data, dict) else None

        logger.info(
            f"Verified Stripe webhook event {event.get('id')} type {event['type']}",
            extra={"event_id": event.get("id"), "event_type": event["type"]},
        )

        return WebhookEvent(
            id=event.get("id"),
            type=event["type"],
            data=obj if isinstance(obj, dict) else {},
            created=event.get("created"),
        )

    async def cancel_subscription(self, stripe_subscription_id: str) -> None:
        """
        Cancel a Stripe subscription immediately.

        WHY: Canceling only in our database would leave Stripe charging the
        card at the next renewal.

        Args:
            stripe_subscription_id: Stripe subscription ID (sub_xxx)

        Raises:
            StripeError: If Stripe API call fails
        """
        try:
            stripe.Subscription.cancel(stripe_subscription_id)
        except stripe.StripeError as e:
            logger.error(
                f"Stripe cancellation error: {e}",
                extra={"stripe_subscription_id": stripe_subscription_id},
            )
            raise StripeError(
                message="Failed to cancel subscription with Stripe",
                stripe_error=str(e),
            )

        logger.info(
            f"Canceled Stripe subscription {stripe_subscription_id}",
            extra={"stripe_subscription_id": stripe_subscription_id},
        )


# ============================================================================
# Module-level convenience functions
# ============================================================================


_stripe_service: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """
    Get or create the global Stripe service instance.

    Returns:
        StripeService instance
    """
    global _stripe_service

    if _stripe_service is None:
        _stripe_service = StripeService()

    return _stripe_service
