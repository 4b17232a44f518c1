"""
Subscription schemas for API request/response validation.

WHAT: Pydantic schemas for the status, checkout and webhook routes.

WHY: Schemas provide:
1. Type-safe request/response handling
2. Automatic validation with clear error messages
3. OpenAPI documentation generation

HOW: Uses Pydantic v2. The dashboard reads camelCase JSON, so every
schema serialises with camelCase aliases while Python code keeps
snake_case names (populate_by_name accepts either on input).
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from scribe.models.subscription import (
    PlanDefinition,
    SubscriptionPlan,
    SubscriptionStatus,
)


class CamelModel(BaseModel):
    """Base schema serialised with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalise_plan(value):
    # Accept "pro" as well as "PRO"
    if isinstance(value, str):
        return value.strip().upper()
    return value


# ============================================================================
# Plans
# ============================================================================


class PlanLimits(CamelModel):
    """
    Usage limits for a plan.

    WHY: -1 means unlimited, matching what the dashboard renders.
    """

    workspaces: int = Field(description="Connected Slack workspaces (-1 = unlimited)")
    summaries_per_month: int = Field(description="Summaries per month (-1 = unlimited)")


class PlanInfo(CamelModel):
    """Public description of a plan."""

    id: SubscriptionPlan = Field(description="Plan key")
    name: str = Field(description="Display name for the plan")
    price: int = Field(description="Monthly price in major currency units")
    currency: str = Field(description="ISO currency code")
    features: List[str] = Field(description="List of feature descriptions")
    limits: PlanLimits

    @classmethod
    def from_definition(cls, definition: PlanDefinition) -> "PlanInfo":
        return cls(
            id=definition.plan,
            name=definition.name,
            price=definition.price,
            currency=definition.currency,
            features=list(definition.features),
            limits=PlanLimits.model_validate(definition.limits),
        )


class PlansResponse(CamelModel):
    """Response listing every plan."""

    success: bool = True
    plans: List[PlanInfo]


# ============================================================================
# Status
# ============================================================================


class SubscriptionStatusInfo(CamelModel):
    """
    Effective subscription of the caller.

    WHY: Mirrors SubscriptionStatusSnapshot; from_attributes lets the route
    validate the snapshot dataclass directly.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    id: Optional[str] = None
    plan: SubscriptionPlan
    status: SubscriptionStatus
    features: List[str]
    limits: PlanLimits
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    days_until_renewal: Optional[int] = None
    is_active: bool
    can_upgrade: bool
    can_downgrade: bool
    expired_plan: Optional[SubscriptionPlan] = None


class SubscriptionStatusResponse(CamelModel):
    """Response for GET /subscription/status."""

    success: bool = True
    subscription: SubscriptionStatusInfo


class SubscriptionActionRequest(CamelModel):
    """
    Body for POST /subscription/status.

    WHY: action is a free string so unknown actions reach the route and
    get the documented "Invalid action" error.
    """

    action: str = Field(description='Action to perform; only "cancel" is supported')
    subscription_id: Optional[str] = Field(
        default=None,
        description="Subscription to act on (defaults to the current one)",
    )


class SubscriptionActionResponse(CamelModel):
    """Response for a successful subscription action."""

    success: bool = True
    message: str
    subscription_id: str
    status: SubscriptionStatus


# ============================================================================
# Checkout
# ============================================================================


class CashfreeOrderRequest(CamelModel):
    """Body for POST /cashfree/order."""

    plan: SubscriptionPlan
    organization_id: Optional[str] = None
    customer_phone: Optional[str] = Field(default=None, max_length=20)
    customer_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("plan", mode="before")
    @classmethod
    def normalise_plan(cls, value):
        return _normalise_plan(value)


class CashfreeOrderResponse(CamelModel):
    """Response for POST /cashfree/order."""

    success: bool = True
    order_id: str
    subscription_id: str
    plan: SubscriptionPlan
    status: SubscriptionStatus
    payment_session_id: Optional[str] = None
    payment_link: Optional[str] = None


class CashfreePaymentVerifyRequest(CamelModel):
    """
    Body for POST /cashfree/verify.

    WHAT: The signed payment tuple Cashfree appends to the return URL.
    """

    order_id: str
    order_amount: str
    reference_id: str
    tx_status: str
    payment_mode: str
    tx_time: str
    signature: str


class CashfreePaymentVerifyResponse(CamelModel):
    """Response for POST /cashfree/verify."""

    success: bool = True
    verified: bool
    order_id: str
    status: SubscriptionStatus


class StripeCheckoutRequest(CamelModel):
    """Body for POST /stripe/checkout."""

    plan: SubscriptionPlan
    organization_id: Optional[str] = None

    @field_validator("plan", mode="before")
    @classmethod
    def normalise_plan(cls, value):
        return _normalise_plan(value)


class StripeCheckoutResponse(CamelModel):
    """Response for POST /stripe/checkout."""

    success: bool = True
    session_id: str
    url: Optional[str] = None
    subscription_id: str


# ============================================================================
# Webhooks
# ============================================================================


class WebhookAck(CamelModel):
    """Acknowledgment returned to payment providers."""

    success: bool = True
    message: Optional[str] = None
