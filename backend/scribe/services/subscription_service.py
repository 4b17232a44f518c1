"""
Subscription status service.

WHAT: Business logic behind the subscription status route: computing a
user's effective plan and letting a user cancel their subscription.

WHY: Nothing sweeps expired subscriptions in the background. Instead the
read path notices an ended period, writes the expiry back once and reports
the user as FREE from then on. Every consumer (dashboard, feature gates)
therefore sees the same answer.

HOW: SubscriptionService wraps SubscriptionDAO. Reads return a
SubscriptionStatusSnapshot that the API layer serialises unchanged.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from scribe.core.exceptions import SubscriptionNotFoundError
from scribe.dao.subscription import SubscriptionDAO
from scribe.models.base import utcnow
from scribe.models.subscription import (
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    get_plan_definition,
)
from scribe.services.stripe_service import StripeService, get_stripe_service

logger = logging.getLogger(__name__)


SECONDS_PER_DAY = 86400


@dataclass
class SubscriptionStatusSnapshot:
    """
    Effective subscription state of a user at one instant.

    WHAT: Features and limits always come from exactly one plan definition.
    """

    plan: SubscriptionPlan
    status: SubscriptionStatus
    features: List[str] = field(default_factory=list)
    limits: Dict[str, int] = field(default_factory=dict)
    is_active: bool = True
    can_upgrade: bool = True
    can_downgrade: bool = False
    id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    days_until_renewal: Optional[int] = None
    expired_plan: Optional[SubscriptionPlan] = None


def days_until(end: Optional[datetime], now: datetime) -> Optional[int]:
    """
    Whole days until `end`, rounded up.

    Example:
        >>> days_until(now + timedelta(days=4, hours=1), now)
        5
    """
    if end is None:
        return None
    return math.ceil((end - now).total_seconds() / SECONDS_PER_DAY)


def free_plan_snapshot() -> SubscriptionStatusSnapshot:
    """Snapshot for a user who never had (or no longer has) a current row."""
    definition = get_plan_definition(SubscriptionPlan.FREE)
    return SubscriptionStatusSnapshot(
        plan=SubscriptionPlan.FREE,
        status=SubscriptionStatus.ACTIVE,
        features=list(definition.features),
        limits=dict(definition.limits),
        is_active=True,
        can_upgrade=True,
        can_downgrade=False,
    )


class SubscriptionService:
    """
    Service for reading and canceling a user's subscription.

    WHY: Keeps the status computation out of the route so it can be unit
    tested with a fixed clock.
    """

    def __init__(self, db: AsyncSession, stripe_service: Optional[StripeService] = None):
        """
        Args:
            db: Request session; the caller commits
            stripe_service: Stripe client used for remote cancellation
        """
        self.db = db
        self.dao = SubscriptionDAO(db)
        self._stripe_service = stripe_service

    @property
    def stripe_service(self) -> StripeService:
        if self._stripe_service is None:
            self._stripe_service = get_stripe_service()
        return self._stripe_service

    async def get_status(
        self,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> SubscriptionStatusSnapshot:
        """
        Compute the user's effective subscription.

        HOW:
        1. No current row -> FREE / ACTIVE
        2. Current row whose period has ended -> write CANCELED back once,
           report FREE limits with status CANCELED and the expired plan
        3. Otherwise -> the row's plan, limits and renewal countdown

        Args:
            user_id: Caller's user id
            now: Reference time (naive UTC), defaults to utcnow()

        Returns:
            SubscriptionStatusSnapshot
        """
        now = now or utcnow()
        subscription = await self.dao.get_current_for_user(user_id)

        if subscription is None:
            return free_plan_snapshot()

        if subscription.is_expired(now):
            return await self._expire(subscription)

        definition = get_plan_definition(subscription.plan)
        return SubscriptionStatusSnapshot(
            id=subscription.id,
            plan=subscription.plan,
            status=subscription.status,
            features=list(definition.features),
            limits=dict(definition.limits),
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            days_until_renewal=days_until(subscription.current_period_end, now),
            is_active=subscription.is_current,
            can_upgrade=subscription.plan != SubscriptionPlan.ENTERPRISE,
            can_downgrade=subscription.plan != SubscriptionPlan.FREE,
        )

    async def _expire(self, subscription: Subscription) -> SubscriptionStatusSnapshot:
        """Lazy expiry: persist the transition, then report the free plan."""
        expired_plan = subscription.plan
        period_end = subscription.current_period_end

        if await self.dao.expire(subscription.id):
            logger.info(
                f"Subscription {subscription.id} expired at {period_end}",
                extra={"subscription_id": subscription.id, "plan": expired_plan.value},
            )

        snapshot = free_plan_snapshot()
        snapshot.status = SubscriptionStatus.CANCELED
        snapshot.is_active = False
        snapshot.expired_plan = expired_plan
        snapshot.current_period_end = period_end
        return snapshot

    async def cancel_for_user(
        self,
        user_id: str,
        subscription_id: Optional[str] = None,
    ) -> Subscription:
        """
        Cancel the caller's current subscription.

        WHY: Only the owner may cancel, and only a row that currently grants
        access. Stripe-backed rows are canceled at Stripe first so the card
        is not charged again; if that fails nothing changes locally.

        Args:
            user_id: Caller's user id
            subscription_id: Specific row to cancel (defaults to the current one)

        Returns:
            The canceled subscription

        Raises:
            SubscriptionNotFoundError: If the caller has no such current row
            StripeError: If Stripe refuses the cancellation
        """
        if subscription_id:
            subscription = await self.dao.get_by_id(subscription_id)
            if subscription is not None and (
                subscription.user_id != user_id or not subscription.is_current
            ):
                subscription = None
        else:
            subscription = await self.dao.get_current_for_user(user_id)

        if subscription is None:
            raise SubscriptionNotFoundError(
                message="No active subscription found",
                user_id=user_id,
            )

        if subscription.is_stripe_billed:
            await self.stripe_service.cancel_subscription(subscription.provider_payment_id)

        await self.dao.cancel(subscription, reason="canceled_by_user")

        logger.info(
            f"Subscription {subscription.id} canceled by user {user_id}",
            extra={"subscription_id": subscription.id, "user_id": user_id},
        )
        return subscription

    async def cancel_replaced_at_stripe(self, subscription: Subscription) -> int:
        """
        Cancel at Stripe the Stripe-billed rows `subscription` will replace.

        WHY: Activation cancels the user's other current rows only in our
        database. A replaced Stripe subscription would otherwise keep
        charging the card and keep sending "active" renewals for it.

        HOW: Call before SubscriptionDAO.activate, on the same session. A
        Stripe refusal raises before anything local changes.

        Args:
            subscription: The row that is about to become current

        Returns:
            Number of Stripe subscriptions canceled

        Raises:
            StripeError: If Stripe refuses a cancellation
        """
        canceled = 0
        for replaced in await self.dao.get_other_current(subscription):
            if not replaced.is_stripe_billed:
                continue
            await self.stripe_service.cancel_subscription(replaced.provider_payment_id)
            canceled += 1
            logger.info(
                f"Stripe subscription {replaced.provider_payment_id} canceled, "
                f"replaced by subscription {subscription.id}",
                extra={
                    "subscription_id": replaced.id,
                    "replaced_by": subscription.id,
                    "user_id": subscription.user_id,
                },
            )
        return canceled
