"""
Subscription model and plan catalogue.

WHY: A user's subscription row is what every other part of Summary Scribe
consults to decide which features and limits apply:
1. Users subscribe to plans (Free, Pro, Enterprise)
2. Plans define limits (workspaces, summaries per month)
3. Stripe or Cashfree collects the money, we track subscription state
4. Webhook events move rows through their lifecycle

ARCHITECTURE:
- Many rows per user over time, at most one current (ACTIVE/TRIALING)
- The "one current row" rule is backed by a partial unique index
- Plan definitions are static and never stored

LIFECYCLE:
1. Checkout started -> INCOMPLETE row carrying the provider order id
2. Payment-success webhook -> ACTIVE, sibling current rows CANCELED
3. Failure, drop, user cancel, provider deletion or expiry -> CANCELED
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import (
    Column,
    String,
    Enum,
    DateTime,
    Index,
    text,
)

from scribe.models.base import Base, TimestampMixin, PrimaryKeyMixin, utcnow


class SubscriptionPlan(str, enum.Enum):
    """
    Available subscription plans.

    Plans:
    - FREE: One workspace, 10 summaries a month, no payment required
    - PRO: Most popular, suitable for small teams
    - ENTERPRISE: Unlimited, for large organizations
    """

    FREE = "FREE"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class SubscriptionStatus(str, enum.Enum):
    """
    Subscription status values.

    Statuses:
    - INCOMPLETE: Checkout started, payment not confirmed yet
    - ACTIVE: Payment successful, full access
    - TRIALING: Provider-side trial, full access
    - CANCELED: Terminal; failed, dropped, canceled or expired
    """

    INCOMPLETE = "INCOMPLETE"
    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    CANCELED = "CANCELED"


# Statuses that grant access. At most one row per user may hold one of these.
CURRENT_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class PaymentProvider(str, enum.Enum):
    """Who collected (or will collect) payment for a row."""

    STRIPE = "STRIPE"
    CASHFREE = "CASHFREE"
    NONE = "NONE"


@dataclass(frozen=True)
class PlanDefinition:
    """
    Static description of a plan.

    WHY: Limits use -1 for "unlimited" because the frontend already
    renders that convention.
    """

    plan: SubscriptionPlan
    name: str
    price: int
    currency: str
    features: List[str] = field(default_factory=list)
    limits: Dict[str, int] = field(default_factory=dict)


PLAN_DEFINITIONS: Dict[SubscriptionPlan, PlanDefinition] = {
    SubscriptionPlan.FREE: PlanDefinition(
        plan=SubscriptionPlan.FREE,
        name="Free",
        price=0,
        currency="USD",
        features=[
            "1 Slack workspace",
            "Basic AI summaries",
            "10 summaries per month",
            "Email support",
        ],
        limits={"workspaces": 1, "summariesPerMonth": 10},
    ),
    SubscriptionPlan.PRO: PlanDefinition(
        plan=SubscriptionPlan.PRO,
        name="Pro",
        price=29,
        currency="USD",
        features=[
            "3 Slack workspaces",
            "Advanced AI summaries",
            "Unlimited summaries",
            "Priority support",
            "Export to PDF/Notion",
        ],
        limits={"workspaces": 3, "summariesPerMonth": -1},
    ),
    SubscriptionPlan.ENTERPRISE: PlanDefinition(
        plan=SubscriptionPlan.ENTERPRISE,
        name="Enterprise",
        price=99,
        currency="USD",
        features=[
            "Unlimited Slack workspaces",
            "Advanced AI with custom models",
            "Unlimited summaries",
            "24/7 priority support",
            "Custom integrations",
            "Team management",
            "Advanced analytics",
        ],
        limits={"workspaces": -1, "summariesPerMonth": -1},
    ),
}


def get_plan_definition(plan: SubscriptionPlan) -> PlanDefinition:
    """Look up the static definition for a plan."""
    return PLAN_DEFINITIONS[SubscriptionPlan(plan)]


class Subscription(Base, PrimaryKeyMixin, TimestampMixin):
    """
    One purchase (or free activation) of a plan by a user.

    RELATIONS:
    - user_id / organization_id come from the identity provider; there is
      no users table in this service
    - provider_order_id links the row to the Cashfree order, Stripe
      checkout session or synthetic free-plan order that created it
    """

    __tablename__ = "subscriptions"

    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        doc="Owning user id from the identity provider",
    )
    organization_id = Column(
        String(255),
        nullable=True,
        doc="Owning organization id, when the purchase was made for one",
    )

    # Plan and status
    plan = Column(
        Enum(SubscriptionPlan, name="subscriptionplan"),
        nullable=False,
        default=SubscriptionPlan.FREE,
        doc="Purchased plan",
    )
    status = Column(
        Enum(SubscriptionStatus, name="subscriptionstatus"),
        nullable=False,
        default=SubscriptionStatus.INCOMPLETE,
        doc="Lifecycle status",
    )

    # Provider identifiers
    # WHY: Webhooks only carry provider ids; these are how we find the row
    provider = Column(
        Enum(PaymentProvider, name="paymentprovider"),
        nullable=False,
        default=PaymentProvider.NONE,
        doc="Payment provider that settles this row",
    )
    provider_order_id = Column(
        String(255),
        nullable=False,
        unique=True,
        doc="Cashfree order id, Stripe checkout session id, or free_ order id",
    )
    provider_payment_id = Column(
        String(255),
        nullable=True,
        index=True,
        doc="Cashfree cf_payment_id or Stripe subscription id (sub_xxx)",
    )
    failure_reason = Column(
        String(500),
        nullable=True,
        doc="Last failure or drop reason reported by the provider",
    )

    # Billing period
    current_period_start = Column(
        DateTime,
        nullable=False,
        default=utcnow,
        doc="Start of current billing period",
    )
    current_period_end = Column(
        DateTime,
        nullable=True,
        doc="End of current billing period (None = open ended)",
    )
    canceled_at = Column(
        DateTime,
        nullable=True,
        doc="When the row moved to CANCELED",
    )

    __table_args__ = (
        # WHY: Last line of defence for "one current row per user" when two
        # activations race in separate transactions.
        Index(
            "uq_subscriptions_current_user",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('ACTIVE', 'TRIALING')"),
            sqlite_where=text("status IN ('ACTIVE', 'TRIALING')"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"plan={self.plan.value}, status={self.status.value})>"
        )

    @property
    def is_current(self) -> bool:
        """Check if the row currently grants access."""
        return self.status in CURRENT_STATUSES

    @property
    def is_stripe_billed(self) -> bool:
        """Check if Stripe bills this row until the sub_xxx is canceled there."""
        return (
            self.provider == PaymentProvider.STRIPE
            and bool(self.provider_payment_id)
            and self.provider_payment_id.startswith("sub_")
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """
        Check if the billing period has ended.

        Args:
            now: Reference time (naive UTC), defaults to utcnow()

        Returns:
            True if current_period_end is set and in the past
        """
        if self.current_period_end is None:
            return False
        return self.current_period_end < (now or utcnow())
