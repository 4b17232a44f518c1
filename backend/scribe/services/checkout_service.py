"""
Checkout service.

WHAT: Starts plan purchases with Cashfree or Stripe and activates the free
plan directly.

WHY: Webhooks never create subscriptions; they only settle rows that
already exist. Checkout is where that row is born: an INCOMPLETE
subscription carrying the provider order id the webhook will quote back.

HOW: The pending row is flushed on the request session next to the
provider call. If the provider call fails the request rolls back, so no
orphan INCOMPLETE rows are left behind.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from scribe.core.config import settings
from scribe.core.deps import SessionUser
from scribe.core.exceptions import ValidationError
from scribe.dao.subscription import SubscriptionDAO
from scribe.models.subscription import (
    PaymentProvider,
    Subscription,
    SubscriptionPlan,
    get_plan_definition,
)
from scribe.services.cashfree_service import (
    CashfreeClient,
    generate_free_order_id,
    generate_order_id,
    get_cashfree_client,
)
from scribe.services.stripe_service import StripeService, get_stripe_service
from scribe.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


STRIPE_PLANS = (SubscriptionPlan.PRO, SubscriptionPlan.ENTERPRISE)


@dataclass
class CashfreeCheckoutResult:
    """Result of starting a Cashfree purchase (or activating FREE)."""

    subscription: Subscription
    order_id: str
    payment_session_id: Optional[str] = None
    payment_link: Optional[str] = None


@dataclass
class StripeCheckoutResult:
    """Result of starting a Stripe checkout."""

    subscription: Subscription
    session_id: str
    url: Optional[str]


class CheckoutService:
    """
    Service for starting subscription purchases.

    WHY: Provider clients are injectable so tests never reach the network.
    """

    def __init__(
        self,
        db: AsyncSession,
        cashfree_client: Optional[CashfreeClient] = None,
        stripe_service: Optional[StripeService] = None,
    ):
        self.db = db
        self.dao = SubscriptionDAO(db)
        self.cashfree_client = cashfree_client or get_cashfree_client()
        self.stripe_service = stripe_service or get_stripe_service()
        self.subscriptions = SubscriptionService(db, self.stripe_service)

    async def start_cashfree_checkout(
        self,
        user: SessionUser,
        plan: SubscriptionPlan,
        organization_id: Optional[str] = None,
        customer_phone: Optional[str] = None,
        customer_name: Optional[str] = None,
    ) -> CashfreeCheckoutResult:
        """
        Start a Cashfree purchase, or switch the user to FREE.

        HOW:
        - Same plan as the current one -> 400
        - FREE -> a free row is activated immediately; a replaced Stripe
          subscription is canceled at Stripe first
        - Paid -> pending row + Cashfree order

        Raises:
            ValidationError: If the user already has this plan
            CashfreeError: If Cashfree rejects the order
            StripeError: If Stripe refuses to cancel the replaced subscription
        """
        plan = SubscriptionPlan(plan)
        current = await self.dao.get_current_for_user(user.id)
        if current is not None and current.plan == plan:
            raise ValidationError(
                message="User already has this subscription plan",
                plan=plan.value,
            )

        organization_id = organization_id or user.organization_id

        if plan == SubscriptionPlan.FREE:
            order_id = generate_free_order_id(user.id)
            subscription = await self.dao.create_pending(
                user_id=user.id,
                plan=plan,
                provider=PaymentProvider.NONE,
                order_id=order_id,
                period_days=settings.FREE_PERIOD_DAYS,
                organization_id=organization_id,
            )
            await self.subscriptions.cancel_replaced_at_stripe(subscription)
            await self.dao.activate(subscription, period_days=settings.FREE_PERIOD_DAYS)
            logger.info(
                f"Free plan activated for user {user.id}",
                extra={"user_id": user.id, "subscription_id": subscription.id},
            )
            return CashfreeCheckoutResult(subscription=subscription, order_id=order_id)

        if not user.email:
            raise ValidationError(message="An email address is required for checkout")

        definition = get_plan_definition(plan)
        order_id = generate_order_id(user.id, plan)
        subscription = await self.dao.create_pending(
            user_id=user.id,
            plan=plan,
            provider=PaymentProvider.CASHFREE,
            order_id=order_id,
            period_days=settings.PAID_PERIOD_DAYS,
            organization_id=organization_id,
        )

        order = await self.cashfree_client.create_order(
            order_id=order_id,
            amount=definition.price,
            currency=definition.currency,
            user_id=user.id,
            plan=plan,
            customer_email=user.email,
            customer_name=customer_name,
            customer_phone=customer_phone,
        )

        return CashfreeCheckoutResult(
            subscription=subscription,
            order_id=order.order_id,
            payment_session_id=order.payment_session_id,
            payment_link=order.payment_link,
        )

    async def start_stripe_checkout(
        self,
        user: SessionUser,
        plan: SubscriptionPlan,
        organization_id: Optional[str] = None,
    ) -> StripeCheckoutResult:
        """
        Start a Stripe subscription checkout for PRO or ENTERPRISE.

        Raises:
            ValidationError: If the plan is not purchasable with Stripe or
                the user already has a paid subscription
            StripeError: If Stripe rejects the session
        """
        plan = SubscriptionPlan(plan)
        if plan not in STRIPE_PLANS:
            raise ValidationError(
                message="Invalid plan. Must be PRO or ENTERPRISE",
                plan=plan.value,
            )

        current = await self.dao.get_current_for_user(user.id)
        if current is not None and current.plan != SubscriptionPlan.FREE:
            raise ValidationError(
                message="User already has an active subscription",
                plan=current.plan.value,
            )

        organization_id = organization_id or user.organization_id
        session = await self.stripe_service.create_checkout_session(
            user_id=user.id,
            plan=plan,
            customer_email=user.email,
            organization_id=organization_id,
        )

        subscription = await self.dao.create_pending(
            user_id=user.id,
            plan=plan,
            provider=PaymentProvider.STRIPE,
            order_id=session.id,
            period_days=settings.PAID_PERIOD_DAYS,
            organization_id=organization_id,
        )

        return StripeCheckoutResult(subscription=subscription, session_id=session.id, url=session.url)
