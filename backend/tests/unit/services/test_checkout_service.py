"""
Unit tests for the checkout service.

WHAT: Tests for starting Cashfree and Stripe purchases and switching to FREE.

WHY: Checkout creates the row every later webhook settles:
1. Paid purchases leave an INCOMPLETE row carrying the provider order id
2. FREE is activated immediately and replaces any current plan, canceling
   a replaced Stripe subscription at Stripe
3. Repeat purchases of the same plan are refused
4. Provider failures propagate so the request rolls back

HOW: Provider clients are AsyncMocks injected into CheckoutService.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from scribe.core.deps import SessionUser
from scribe.core.exceptions import CashfreeError, StripeError, ValidationError
from scribe.dao.subscription import SUPERSEDED_REASON, SubscriptionDAO
from scribe.models.subscription import (
    PaymentProvider,
    SubscriptionPlan,
    SubscriptionStatus,
)
from scribe.services.cashfree_service import CashfreeOrder
from scribe.services.checkout_service import CheckoutService
from scribe.services.stripe_service import CheckoutSession
from tests.factories import TEST_USER_EMAIL, TEST_USER_ID, SubscriptionFactory


@pytest.fixture
def user() -> SessionUser:
    return SessionUser(id=TEST_USER_ID, email=TEST_USER_EMAIL, organization_id="org_1")


@pytest.fixture
def cashfree_client() -> MagicMock:
    client = MagicMock()

    async def create_order(**kwargs):
        return CashfreeOrder(
            order_id=kwargs["order_id"],
            payment_session_id="session_abc",
            order_status="ACTIVE",
        )

    client.create_order = AsyncMock(side_effect=create_order)
    return client


@pytest.fixture
def stripe_service() -> MagicMock:
    service = MagicMock()
    service.create_checkout_session = AsyncMock(
        return_value=CheckoutSession(
            id="cs_test_a1b2c3",
            url="https://checkout.stripe.com/c/pay/cs_test_a1b2c3",
        )
    )
    service.cancel_subscription = AsyncMock(return_value=None)
    return service


class TestCashfreeCheckout:
    """Tests for CheckoutService.start_cashfree_checkout."""

    @pytest.mark.asyncio
    async def test_paid_plan_creates_pending_row_and_order(
        self, db_session, user, cashfree_client, stripe_service
    ):
        """Test a PRO purchase creates an INCOMPLETE row and a Cashfree order."""
        service = CheckoutService(db_session, cashfree_client=cashfree_client, stripe_service=stripe_service)

        result = await service.start_cashfree_checkout(user, SubscriptionPlan.PRO)

        assert result.payment_session_id == "session_abc"
        assert result.subscription.status == SubscriptionStatus.INCOMPLETE
        assert result.subscription.provider == PaymentProvider.CASHFREE
        assert result.subscription.provider_order_id == result.order_id
        assert result.subscription.organization_id == "org_1"
        assert result.order_id.startswith("sub_3f2a9c1e_PRO_")

        kwargs = cashfree_client.create_order.call_args.kwargs
        assert kwargs["amount"] == 29
        assert kwargs["currency"] == "USD"
        assert kwargs["customer_email"] == TEST_USER_EMAIL

    @pytest.mark.asyncio
    async def test_pending_row_does_not_change_current_plan(
        self, db_session, user, cashfree_client, stripe_service
    ):
        """
        Test an unpaid upgrade leaves the current plan in place.

        WHY: Access changes only when the payment webhook arrives.
        """
        current = await SubscriptionFactory.create_active(db_session, plan=SubscriptionPlan.PRO)
        service = CheckoutService(db_session, cashfree_client=cashfree_client, stripe_service=stripe_service)

        await service.start_cashfree_checkout(user, SubscriptionPlan.ENTERPRISE)

        still_current = await SubscriptionDAO(db_session).get_current_for_user(TEST_USER_ID)
        assert still_current.id == current.id

    @pytest.mark.asyncio
    async def test_same_plan_rejected(self, db_session, user, cashfree_client, stripe_service):
        """Test buying the plan the user already has is refused."""
        await SubscriptionFactory.create_active(db_session, plan=SubscriptionPlan.PRO)
        service = CheckoutService(db_session, cashfree_client=cashfree_client, stripe_service=stripe_service)

        with pytest.raises(ValidationError) as exc_info:
            await service.start_cashfree_checkout(user, SubscriptionPlan.PRO)

        assert exc_info.value.message == "User already has this subscription plan"
        cashfree_client.create_order.assert_not_called()

    @pytest.mark.asyncio
    async def test_free_plan_activates_immediately(
        self, db_session, user, cashfree_client, stripe_service
    ):
        """Test switching to FREE cancels the paid row and activates a free one."""
        paid = await SubscriptionFactory.create_active(db_session, plan=SubscriptionPlan.PRO)
        service = CheckoutService(db_session, cashfree_client=cashfree_client, stripe_service=stripe_service)

        result = await service.start_cashfree_checkout(user, SubscriptionPlan.FREE)
        await db_session.refresh(paid)

        assert result.subscription.plan == SubscriptionPlan.FREE
        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.provider == PaymentProvider.NONE
        assert result.order_id.startswith("free_")
        assert paid.status == SubscriptionStatus.CANCELED
        cashfree_client.create_order.assert_not_called()
        stripe_service.cancel_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_free_plan_cancels_replaced_stripe_subscription(
        self, db_session, user, cashfree_client, stripe_service
    ):
        """
        Test switching to FREE from a Stripe plan cancels it at Stripe.

        WHY: Canceling only locally would leave Stripe charging the card.
        """
        paid = await SubscriptionFactory.create_active(
            db_session,
            plan=SubscriptionPlan.PRO,
            provider=PaymentProvider.STRIPE,
            payment_id="sub_test_123",
        )
        service = CheckoutService(db_session, cashfree_client=cashfree_client, stripe_service=stripe_service)

        await service.start_cashfree_checkout(user, SubscriptionPlan.FREE)
        await db_session.refresh(paid)

        stripe_service.cancel_subscription.assert_awaited_once_with("sub_test_123")
        assert paid.status == SubscriptionStatus.CANCELED
        assert paid.failure_reason == SUPERSEDED_REASON

    @pytest.mark.asyncio
    async def test_free_plan_keeps_stripe_plan_when_stripe_refuses(
        self, db_session, user, cashfree_client, stripe_service
    ):
        """Test a Stripe refusal stops the switch before anything local changes."""
        paid = await SubscriptionFactory.create_active(
            db_session,
            plan=SubscriptionPlan.PRO,
            provider=PaymentProvider.STRIPE,
            payment_id="sub_test_123",
        )
        stripe_service.cancel_subscription.side_effect = StripeError(message="Failed to cancel")
        service = CheckoutService(db_session, cashfree_client=cashfree_client, stripe_service=stripe_service)

        with pytest.raises(StripeError):
            await service.start_cashfree_checkout(user, SubscriptionPlan.FREE)

        assert paid.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_paid_plan_requires_email(self, db_session, cashfree_client, stripe_service):
        """Test Cashfree checkout needs an email for customer details."""
        service = CheckoutService(db_session, cashfree_client=cashfree_client, stripe_service=stripe_service)

        with pytest.raises(ValidationError):
            await service.start_cashfree_checkout(SessionUser(id=TEST_USER_ID), SubscriptionPlan.PRO)

    @pytest.mark.asyncio
    async def test_cashfree_failure_propagates(self, db_session, user, stripe_service):
        """Test Cashfree errors reach the caller so the request rolls back."""
        failing = MagicMock()
        failing.create_order = AsyncMock(side_effect=CashfreeError(message="Cashfree API error: down"))
        service = CheckoutService(db_session, cashfree_client=failing, stripe_service=stripe_service)

        with pytest.raises(CashfreeError):
            await service.start_cashfree_checkout(user, SubscriptionPlan.PRO)


class TestStripeCheckout:
    """Tests for CheckoutService.start_stripe_checkout."""

    @pytest.mark.asyncio
    async def test_creates_pending_row_keyed_by_session(
        self, db_session, user, cashfree_client, stripe_service
    ):
        """Test the checkout session id becomes the row's order id."""
        service = CheckoutService(db_session, cashfree_client=cashfree_client, stripe_service=stripe_service)

        result = await service.start_stripe_checkout(user, SubscriptionPlan.ENTERPRISE)

        assert result.session_id == "cs_test_a1b2c3"
        assert result.url.endswith("cs_test_a1b2c3")
        assert result.subscription.provider_order_id == "cs_test_a1b2c3"
        assert result.subscription.provider == PaymentProvider.STRIPE
        assert result.subscription.status == SubscriptionStatus.INCOMPLETE

        kwargs = stripe_service.create_checkout_session.call_args.kwargs
        assert kwargs["plan"] == SubscriptionPlan.ENTERPRISE
        assert kwargs["customer_email"] == TEST_USER_EMAIL
        assert kwargs["organization_id"] == "org_1"

    @pytest.mark.asyncio
    async def test_free_plan_rejected(self, db_session, user, cashfree_client, stripe_service):
        """Test FREE cannot be bought through Stripe."""
        service = CheckoutService(db_session, cashfree_client=cashfree_client, stripe_service=stripe_service)

        with pytest.raises(ValidationError) as exc_info:
            await service.start_stripe_checkout(user, SubscriptionPlan.FREE)

        assert exc_info.value.message == "Invalid plan. Must be PRO or ENTERPRISE"

    @pytest.mark.asyncio
    async def test_existing_paid_subscription_rejected(
        self, db_session, user, cashfree_client, stripe_service
    ):
        """Test users already paying cannot open a second Stripe checkout."""
        await SubscriptionFactory.create_active(db_session, plan=SubscriptionPlan.PRO)
        service = CheckoutService(db_session, cashfree_client=cashfree_client, stripe_service=stripe_service)

        with pytest.raises(ValidationError) as exc_info:
            await service.start_stripe_checkout(user, SubscriptionPlan.ENTERPRISE)

        assert exc_info.value.message == "User already has an active subscription"
        stripe_service.create_checkout_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_free_user_can_upgrade(self, db_session, user, cashfree_client, stripe_service):
        """Test a user on FREE may start a Stripe checkout."""
        await SubscriptionFactory.create_active(
            db_session,
            plan=SubscriptionPlan.FREE,
            provider=PaymentProvider.NONE,
        )
        service = CheckoutService(db_session, cashfree_client=cashfree_client, stripe_service=stripe_service)

        result = await service.start_stripe_checkout(user, SubscriptionPlan.PRO)

        assert result.subscription.plan == SubscriptionPlan.PRO
