"""
Webhook event dispatcher.

WHAT: Turns a verified provider payload into a LifecycleEvent and applies
exactly one subscription transition for it.

WHY: Stripe and Cashfree describe the same few things (payment succeeded,
payment failed, buyer walked away, subscription changed or ended) in very
different payloads. Normalising them first means the store transitions
are written, reviewed and tested once.

HOW:
1. parse_cashfree_event / parse_stripe_event map the provider event type
   onto the closed LifecycleAction enum. Unknown types map to UNRECOGNIZED
   and are acknowledged without side effects.
2. WebhookDispatcher.dispatch looks the action up in a handler table and
   runs the matching SubscriptionDAO transition on the request session.
3. Unknown order ids are logged and acknowledged (a redelivery would not
   find them either). Database failures become DatabaseError (500) so the
   provider redelivers.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from scribe.core.config import settings
from scribe.core.exceptions import DatabaseError, MalformedPayloadError
from scribe.dao.subscription import SUPERSEDED_REASON, SubscriptionDAO
from scribe.models.subscription import PaymentProvider, Subscription, SubscriptionStatus
from scribe.services.stripe_service import StripeService
from scribe.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


class LifecycleAction(str, enum.Enum):
    """
    What a provider event means for a subscription.

    - ACTIVATE: payment settled, make the order's row current
    - FAIL: payment attempt failed, cancel the order's rows
    - DROP: buyer abandoned checkout, cancel the order's rows
    - SYNC: provider-side subscription changed status or period
    - CANCEL: provider-side subscription ended
    - UNRECOGNIZED: anything else, acknowledged and ignored
    """

    ACTIVATE = "activate"
    FAIL = "fail"
    DROP = "drop"
    SYNC = "sync"
    CANCEL = "cancel"
    UNRECOGNIZED = "unrecognized"


CASHFREE_EVENT_ACTIONS = {
    "PAYMENT_SUCCESS_WEBHOOK": LifecycleAction.ACTIVATE,
    "PAYMENT_FAILED_WEBHOOK": LifecycleAction.FAIL,
    "PAYMENT_USER_DROPPED_WEBHOOK": LifecycleAction.DROP,
}

STRIPE_EVENT_ACTIONS = {
    "checkout.session.completed": LifecycleAction.ACTIVATE,
    "checkout.session.async_payment_succeeded": LifecycleAction.ACTIVATE,
    "checkout.session.async_payment_failed": LifecycleAction.FAIL,
    "checkout.session.expired": LifecycleAction.DROP,
    "customer.subscription.created": LifecycleAction.SYNC,
    "customer.subscription.updated": LifecycleAction.SYNC,
    "customer.subscription.deleted": LifecycleAction.CANCEL,
}

# Stripe subscription status -> local status. Statuses not listed here
# (past_due, incomplete, paused) leave our status alone and only move the period.
STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


@dataclass
class LifecycleEvent:
    """
    A provider event reduced to what the store needs.

    WHAT: Transient; exists for one delivery and is never persisted.
    """

    provider: PaymentProvider
    event_type: str
    action: LifecycleAction
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    reason: Optional[str] = None
    provider_status: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


@dataclass
class DispatchResult:
    """Outcome of one dispatch, for logging and tests."""

    action: LifecycleAction
    applied: bool
    subscription_id: Optional[str] = None


# ============================================================================
# Parsing
# ============================================================================


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _from_timestamp(value: Any) -> Optional[datetime]:
    """Unix seconds -> naive UTC datetime, None when unusable."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        logger.warning(f"Ignoring out-of-range Stripe timestamp {value!r}")
        return None


def parse_cashfree_event(payload: Dict[str, Any]) -> LifecycleEvent:
    """
    Normalise a parsed Cashfree webhook body.

    Payload shape: {type, data: {order, payment, customer_details}}.

    Raises:
        MalformedPayloadError: If a recognized event carries no order id
    """
    payload = _as_dict(payload)
    event_type = _as_text(payload.get("type")) or ""
    data = _as_dict(payload.get("data"))
    order = _as_dict(data.get("order"))
    payment = _as_dict(data.get("payment"))

    action = CASHFREE_EVENT_ACTIONS.get(event_type, LifecycleAction.UNRECOGNIZED)
    order_id = _as_text(order.get("order_id"))

    logger.info(
        f"Cashfree webhook received: {event_type or '<none>'}",
        extra={
            "provider": "cashfree",
            "event_type": event_type,
            "order_id": order_id,
            "order_status": order.get("order_status"),
            "payment_status": payment.get("payment_status"),
        },
    )

    if action != LifecycleAction.UNRECOGNIZED and not order_id:
        raise MalformedPayloadError(
            message="Cashfree webhook is missing data.order.order_id",
            event_type=event_type,
        )

    reason = None
    if action == LifecycleAction.FAIL:
        reason = _as_text(payment.get("payment_message")) or "payment_failed"
    elif action == LifecycleAction.DROP:
        reason = "user_dropped"

    return LifecycleEvent(
        provider=PaymentProvider.CASHFREE,
        event_type=event_type,
        action=action,
        order_id=order_id,
        payment_id=_as_text(payment.get("cf_payment_id")),
        reason=reason,
        provider_status=_as_text(payment.get("payment_status")),
    )


def _stripe_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return _as_text(value.get("id"))
    return _as_text(value)


def _stripe_period(obj: Dict[str, Any]) -> tuple:
    """
    Billing period of a Stripe subscription object.

    Newer API versions moved the period from the subscription onto its items.
    """
    start = obj.get("current_period_start")
    end = obj.get("current_period_end")
    if start is None and end is None:
        items = _as_dict(obj.get("items")).get("data") or []
        first = _as_dict(items[0]) if items else {}
        start = first.get("current_period_start")
        end = first.get("current_period_end")
    return _from_timestamp(start), _from_timestamp(end)


def parse_stripe_event(event_type: str, obj: Dict[str, Any]) -> LifecycleEvent:
    """
    Normalise a verified Stripe event.

    Args:
        event_type: Stripe event type string
        obj: The event's data.object

    Raises:
        MalformedPayloadError: If a recognized event carries no usable id
    """
    obj = _as_dict(obj)
    action = STRIPE_EVENT_ACTIONS.get(event_type, LifecycleAction.UNRECOGNIZED)

    logger.info(
        f"Stripe webhook received: {event_type}",
        extra={
            "provider": "stripe",
            "event_type": event_type,
            "object_id": obj.get("id"),
            "object_status": obj.get("status"),
        },
    )

    if action == LifecycleAction.UNRECOGNIZED:
        return LifecycleEvent(
            provider=PaymentProvider.STRIPE,
            event_type=event_type,
            action=action,
        )

    object_id = _as_text(obj.get("id"))
    if not object_id:
        raise MalformedPayloadError(
            message="Stripe event object has no id",
            event_type=event_type,
        )

    if event_type.startswith("checkout.session."):
        payment_status = _as_text(obj.get("payment_status"))
        # An unpaid completed session settles later through async_payment_*
        if event_type == "checkout.session.completed" and payment_status == "unpaid":
            action = LifecycleAction.UNRECOGNIZED

        reason = None
        if action == LifecycleAction.FAIL:
            reason = "async_payment_failed"
        elif action == LifecycleAction.DROP:
            reason = "checkout_expired"

        return LifecycleEvent(
            provider=PaymentProvider.STRIPE,
            event_type=event_type,
            action=action,
            order_id=object_id,
            payment_id=_stripe_id(obj.get("subscription")),
            reason=reason,
            provider_status=payment_status,
        )

    period_start, period_end = _stripe_period(obj)
    return LifecycleEvent(
        provider=PaymentProvider.STRIPE,
        event_type=event_type,
        action=action,
        payment_id=object_id,
        provider_status=_as_text(obj.get("status")),
        reason="stripe_subscription_deleted" if action == LifecycleAction.CANCEL else None,
        period_start=period_start,
        period_end=period_end,
    )


# ============================================================================
# Dispatch
# ============================================================================


class WebhookDispatcher:
    """
    Applies LifecycleEvents to the subscription store.

    WHY: Each handler performs one logical transition and is safe to
    replay, because providers deliver at least once.
    """

    def __init__(self, db: AsyncSession, stripe_service: Optional[StripeService] = None):
        """
        Args:
            db: Request session; the caller commits after dispatch
            stripe_service: Stripe client for canceling replaced Stripe
                subscriptions (resolved lazily when omitted)
        """
        self.db = db
        self.dao = SubscriptionDAO(db)
        self.subscriptions = SubscriptionService(db, stripe_service)
        self._handlers: Dict[
            LifecycleAction, Callable[[LifecycleEvent], Awaitable[DispatchResult]]
        ] = {
            LifecycleAction.ACTIVATE: self._handle_activate,
            LifecycleAction.FAIL: self._handle_fail,
            LifecycleAction.DROP: self._handle_drop,
            LifecycleAction.SYNC: self._handle_sync,
            LifecycleAction.CANCEL: self._handle_cancel,
            LifecycleAction.UNRECOGNIZED: self._handle_unrecognized,
        }

    async def dispatch(self, event: LifecycleEvent) -> DispatchResult:
        """
        Apply one event.

        Returns:
            DispatchResult describing what changed

        Raises:
            DatabaseError: If the transition could not be persisted
        """
        handler = self._handlers[event.action]
        try:
            return await handler(event)
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to apply {event.provider.value} {event.event_type}: {e}",
                extra={
                    "event_type": event.event_type,
                    "order_id": event.order_id,
                    "payment_id": event.payment_id,
                },
            )
            raise DatabaseError(
                message="Failed to record webhook event",
                event_type=event.event_type,
            )

    def _is_superseded(self, subscription: Subscription, event: LifecycleEvent) -> bool:
        """
        Check if a row was replaced by a newer purchase.

        WHY: A replaced row stays canceled. Late or redelivered success
        events for it must not take "current" back from the newer row.
        """
        if (
            subscription.status != SubscriptionStatus.CANCELED
            or subscription.failure_reason != SUPERSEDED_REASON
        ):
            return False

        logger.info(
            f"Ignoring {event.event_type} for superseded subscription {subscription.id}",
            extra={
                "subscription_id": subscription.id,
                "event_type": event.event_type,
                "payment_id": event.payment_id,
            },
        )
        return True

    async def _handle_activate(self, event: LifecycleEvent) -> DispatchResult:
        subscription = await self.dao.get_by_order_id(event.order_id)
        if subscription is None:
            logger.warning(
                f"No subscription found for order {event.order_id}",
                extra={"event_type": event.event_type, "order_id": event.order_id},
            )
            return DispatchResult(action=event.action, applied=False)

        if self._is_superseded(subscription, event):
            return DispatchResult(action=event.action, applied=False, subscription_id=subscription.id)

        await self.subscriptions.cancel_replaced_at_stripe(subscription)
        await self.dao.activate(
            subscription,
            payment_id=event.payment_id,
            period_days=settings.PAID_PERIOD_DAYS,
        )

        logger.info(
            f"Subscription {subscription.id} activated for user {subscription.user_id}",
            extra={
                "subscription_id": subscription.id,
                "order_id": event.order_id,
                "payment_id": event.payment_id,
            },
        )
        return DispatchResult(action=event.action, applied=True, subscription_id=subscription.id)

    async def _cancel_order(self, event: LifecycleEvent, payment_id: Optional[str]) -> DispatchResult:
        canceled = await self.dao.cancel_by_order_id(
            event.order_id,
            payment_id=payment_id,
            reason=event.reason,
        )
        if canceled == 0:
            logger.warning(
                f"No open subscription for order {event.order_id}",
                extra={"event_type": event.event_type, "order_id": event.order_id},
            )
        else:
            logger.info(
                f"Canceled {canceled} subscription(s) for order {event.order_id}: {event.reason}",
                extra={"order_id": event.order_id, "reason": event.reason},
            )
        return DispatchResult(action=event.action, applied=canceled > 0)

    async def _handle_fail(self, event: LifecycleEvent) -> DispatchResult:
        return await self._cancel_order(event, payment_id=event.payment_id)

    async def _handle_drop(self, event: LifecycleEvent) -> DispatchResult:
        return await self._cancel_order(event, payment_id=None)

    async def _handle_sync(self, event: LifecycleEvent) -> DispatchResult:
        subscription = await self.dao.get_by_payment_id(event.payment_id)
        if subscription is None:
            logger.warning(
                f"No subscription found for Stripe subscription {event.payment_id}",
                extra={"event_type": event.event_type, "payment_id": event.payment_id},
            )
            return DispatchResult(action=event.action, applied=False)

        status = STRIPE_STATUS_MAP.get(event.provider_status or "")
        if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            if self._is_superseded(subscription, event):
                return DispatchResult(action=event.action, applied=False, subscription_id=subscription.id)
            await self.subscriptions.cancel_replaced_at_stripe(subscription)
            await self.dao.activate(
                subscription,
                status=status,
                period_start=event.period_start,
                period_end=event.period_end,
            )
        else:
            if status == SubscriptionStatus.CANCELED:
                await self.dao.cancel(subscription, reason=f"stripe_status:{event.provider_status}")
            await self.dao.update_period(subscription, event.period_start, event.period_end)

        logger.info(
            f"Subscription {subscription.id} synced from Stripe status {event.provider_status}",
            extra={"subscription_id": subscription.id, "payment_id": event.payment_id},
        )
        return DispatchResult(action=event.action, applied=True, subscription_id=subscription.id)

    async def _handle_cancel(self, event: LifecycleEvent) -> DispatchResult:
        subscription = await self.dao.get_by_payment_id(event.payment_id)
        if subscription is None:
            logger.warning(
                f"No subscription found for Stripe subscription {event.payment_id}",
                extra={"event_type": event.event_type, "payment_id": event.payment_id},
            )
            return DispatchResult(action=event.action, applied=False)

        await self.dao.cancel(subscription, reason=event.reason)
        logger.info(
            f"Subscription {subscription.id} canceled by Stripe",
            extra={"subscription_id": subscription.id, "payment_id": event.payment_id},
        )
        return DispatchResult(action=event.action, applied=True, subscription_id=subscription.id)

    async def _handle_unrecognized(self, event: LifecycleEvent) -> DispatchResult:
        logger.info(
            f"Ignoring {event.provider.value} webhook {event.event_type or '<none>'}",
            extra={"event_type": event.event_type},
        )
        return DispatchResult(action=event.action, applied=False)
