"""
Subscription Data Access Object (DAO).

WHAT: DAO for managing subscription records and their lifecycle transitions.

WHY: Every status change a webhook, a checkout or a user can cause is
implemented here, so the "at most one current row per user" rule lives
in exactly one place.

HOW: Extends BaseDAO with lookups by provider ids and with transition
methods. Transitions only flush; the caller owns the transaction and
commits once, which is what makes sibling cancellation and activation
atomic.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from scribe.dao.base import BaseDAO
from scribe.models.base import utcnow
from scribe.models.subscription import (
    CURRENT_STATUSES,
    PaymentProvider,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)


# failure_reason of a current row that another row replaced
SUPERSEDED_REASON = "superseded"


class SubscriptionDAO(BaseDAO[Subscription]):
    """
    Data Access Object for Subscription model.

    WHAT: Handles all database operations for subscriptions.

    WHY: Centralizes subscription queries for:
    - Webhook reconciliation (lookups by provider order/payment id)
    - The status read path (latest current row per user)
    - Lifecycle transitions (activate, cancel, expire)
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize SubscriptionDAO.

        Args:
            session: Async database session
        """
        super().__init__(Subscription, session)

    # ========================================================================
    # Lookups
    # ========================================================================

    async def get_by_order_id(self, order_id: str) -> Optional[Subscription]:
        """
        Get subscription by provider order id.

        WHY: Cashfree webhooks and Stripe checkout events identify the
        purchase by the order (or checkout session) id we created it with.

        Args:
            order_id: Cashfree order id or Stripe checkout session id

        Returns:
            Subscription if found, None otherwise
        """
        result = await self.session.execute(
            select(Subscription).where(Subscription.provider_order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def get_by_payment_id(self, payment_id: str) -> Optional[Subscription]:
        """
        Get the most recent subscription carrying a provider payment id.

        WHY: Stripe subscription events only carry the Stripe subscription
        id (sub_xxx), which we record as the payment id on activation.

        Args:
            payment_id: Provider payment id

        Returns:
            Subscription if found, None otherwise
        """
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.provider_payment_id == payment_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_current_for_user(self, user_id: str) -> Optional[Subscription]:
        """
        Get the user's current (ACTIVE or TRIALING) subscription.

        WHY: The partial unique index allows only one such row, but rows
        written before it existed may not respect that, so the newest wins.

        Args:
            user_id: Owning user id

        Returns:
            Most recently created current subscription, or None
        """
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(CURRENT_STATUSES),
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_other_current(self, subscription: Subscription) -> List[Subscription]:
        """
        Get the user's current rows other than the given one.

        WHY: These are the rows activating `subscription` will cancel;
        Stripe-billed ones must also be canceled at Stripe first.

        Args:
            subscription: The row that is about to become current

        Returns:
            Other ACTIVE/TRIALING rows of the same user
        """
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.user_id == subscription.user_id,
                Subscription.id != subscription.id,
                Subscription.status.in_(CURRENT_STATUSES),
            )
        )
        return list(result.scalars().all())

    # ========================================================================
    # Creation
    # ========================================================================

    async def create_pending(
        self,
        user_id: str,
        plan: SubscriptionPlan,
        provider: PaymentProvider,
        order_id: str,
        period_days: int,
        organization_id: Optional[str] = None,
    ) -> Subscription:
        """
        Create an INCOMPLETE subscription for a checkout that was just started.

        WHY: The webhook that settles the payment only carries the order id,
        so the row must exist (and carry that id) before the user pays.

        Args:
            user_id: Owning user id
            plan: Plan being purchased
            provider: Provider collecting payment
            order_id: Provider order / checkout session id
            period_days: Tentative period length
            organization_id: Optional owning organization

        Returns:
            Created Subscription instance
        """
        now = utcnow()
        return await self.create(
            user_id=user_id,
            organization_id=organization_id,
            plan=plan,
            status=SubscriptionStatus.INCOMPLETE,
            provider=provider,
            provider_order_id=order_id,
            current_period_start=now,
            current_period_end=now + timedelta(days=period_days),
        )

    # ========================================================================
    # Transitions
    # ========================================================================

    async def cancel_other_current(self, subscription: Subscription) -> int:
        """
        Cancel every other current row belonging to the same user.

        Canceled rows are marked SUPERSEDED_REASON so later provider
        status events for them are not mistaken for a reactivation.

        Args:
            subscription: The row that is about to become current

        Returns:
            Number of rows canceled
        """
        now = utcnow()
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.user_id == subscription.user_id,
                Subscription.id != subscription.id,
                Subscription.status.in_(CURRENT_STATUSES),
            )
            .values(
                status=SubscriptionStatus.CANCELED,
                canceled_at=now,
                updated_at=now,
                failure_reason=SUPERSEDED_REASON,
            )
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount

    async def activate(
        self,
        subscription: Subscription,
        payment_id: Optional[str] = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        period_days: Optional[int] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> Subscription:
        """
        Make a subscription the user's single current subscription.

        WHAT: Cancels sibling current rows, then marks this row ACTIVE (or
        TRIALING) and records the provider payment id.

        WHY: Providers redeliver webhooks. Replaying the activation of a row
        that is already current keeps its period and changes nothing, so the
        final state is the same however often the event arrives.

        HOW: Both writes are flushed on the caller's session and become
        visible together when the caller commits.

        Args:
            subscription: Row located by order or payment id
            payment_id: Provider payment id to record
            status: ACTIVE or TRIALING
            period_days: Restart the period with this length if the row was
                not current yet
            period_start: Explicit period start (provider-reported)
            period_end: Explicit period end (provider-reported)

        Returns:
            The updated subscription
        """
        await self.cancel_other_current(subscription)

        was_current = subscription.is_current
        subscription.status = status
        subscription.canceled_at = None
        if payment_id:
            subscription.provider_payment_id = payment_id

        if period_start is not None or period_end is not None:
            if period_start is not None:
                subscription.current_period_start = period_start
            if period_end is not None:
                subscription.current_period_end = period_end
        elif not was_current and period_days is not None:
            now = utcnow()
            subscription.current_period_start = now
            subscription.current_period_end = now + timedelta(days=period_days)

        await self.session.flush()
        return subscription

    async def cancel_by_order_id(
        self,
        order_id: str,
        payment_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> int:
        """
        Cancel every not-yet-canceled row created for an order.

        WHY: Payment failures and user drops address the order, not a row;
        already-canceled rows are left untouched so replays keep the
        original canceled_at.

        Args:
            order_id: Provider order / checkout session id
            payment_id: Provider payment id to record, if any
            reason: Failure reason to record, if any

        Returns:
            Number of rows canceled
        """
        now = utcnow()
        values = {
            "status": SubscriptionStatus.CANCELED,
            "canceled_at": now,
            "updated_at": now,
        }
        if payment_id:
            values["provider_payment_id"] = payment_id
        if reason:
            values["failure_reason"] = reason[:500]

        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.provider_order_id == order_id,
                Subscription.status != SubscriptionStatus.CANCELED,
            )
            .values(**values)
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount

    async def cancel(
        self,
        subscription: Subscription,
        reason: Optional[str] = None,
    ) -> Subscription:
        """
        Cancel a single subscription.

        Args:
            subscription: Row to cancel
            reason: Optional reason to record

        Returns:
            The updated subscription
        """
        if subscription.status != SubscriptionStatus.CANCELED:
            subscription.status = SubscriptionStatus.CANCELED
            subscription.canceled_at = utcnow()
            if reason:
                subscription.failure_reason = reason[:500]
            await self.session.flush()
        return subscription

    async def expire(self, subscription_id: str) -> bool:
        """
        Flip a current subscription to CANCELED because its period ended.

        WHY: Conditional on the row still being current, so two concurrent
        status reads cannot both perform the write-back.

        Args:
            subscription_id: Row to expire

        Returns:
            True if this call performed the transition
        """
        now = utcnow()
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status.in_(CURRENT_STATUSES),
            )
            .values(
                status=SubscriptionStatus.CANCELED,
                canceled_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount == 1

    async def update_period(
        self,
        subscription: Subscription,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> Subscription:
        """
        Record a provider-reported billing period without changing status.

        Args:
            subscription: Row to update
            period_start: New period start
            period_end: New period end

        Returns:
            The updated subscription
        """
        if period_start is not None:
            subscription.current_period_start = period_start
        if period_end is not None:
            subscription.current_period_end = period_end
        await self.session.flush()
        return subscription
