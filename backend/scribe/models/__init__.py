"""
Database models package.

WHY: Centralizing model imports ensures Alembic can discover all models
for migration generation and makes it easier to import models elsewhere.
"""

from scribe.models.base import Base, TimestampMixin, PrimaryKeyMixin, utcnow
from scribe.models.subscription import (
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    PaymentProvider,
    PlanDefinition,
    PLAN_DEFINITIONS,
    CURRENT_STATUSES,
    get_plan_definition,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "PrimaryKeyMixin",
    "utcnow",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "PaymentProvider",
    "PlanDefinition",
    "PLAN_DEFINITIONS",
    "CURRENT_STATUSES",
    "get_plan_definition",
]
