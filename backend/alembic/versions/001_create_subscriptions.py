"""Create subscriptions table.

Revision ID: 001
Revises:
Create Date: 2026-10-18

WHAT: Creates the subscriptions table that records every purchase attempt
and its lifecycle.

WHY: Webhooks from Stripe and Cashfree only carry provider ids, so each row
keeps the provider order id it was created for and the payment id that
settled it. A partial unique index keeps at most one ACTIVE/TRIALING row
per user.

HOW: Creates plan/status/provider enums, the table, lookup indexes and the
partial unique index on user_id.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


subscription_plan = sa.Enum("FREE", "PRO", "ENTERPRISE", name="subscriptionplan")
subscription_status = sa.Enum(
    "INCOMPLETE", "ACTIVE", "TRIALING", "CANCELED", name="subscriptionstatus"
)
payment_provider = sa.Enum("STRIPE", "CASHFREE", "NONE", name="paymentprovider")


def upgrade() -> None:
    """Create subscriptions table, enums and indexes."""
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=36), nullable=False, primary_key=True),
        # Owner (identity provider ids, no local users table)
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("organization_id", sa.String(length=255), nullable=True),
        # Plan and status
        sa.Column("plan", subscription_plan, nullable=False),
        sa.Column("status", subscription_status, nullable=False),
        # Provider identifiers
        sa.Column("provider", payment_provider, nullable=False),
        sa.Column("provider_order_id", sa.String(length=255), nullable=False),
        sa.Column("provider_payment_id", sa.String(length=255), nullable=True),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        # Billing period
        sa.Column("current_period_start", sa.DateTime(), nullable=False),
        sa.Column("current_period_end", sa.DateTime(), nullable=True),
        sa.Column("canceled_at", sa.DateTime(), nullable=True),
        # Timestamps
        sa.Column(
            "created_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint("provider_order_id", name="uq_subscriptions_provider_order_id"),
    )

    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index(
        "ix_subscriptions_provider_payment_id", "subscriptions", ["provider_payment_id"]
    )

    # At most one current subscription per user
    op.create_index(
        "uq_subscriptions_current_user",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('ACTIVE', 'TRIALING')"),
    )


def downgrade() -> None:
    """Remove subscriptions table and enums."""
    op.drop_index("uq_subscriptions_current_user", table_name="subscriptions")
    op.drop_index("ix_subscriptions_provider_payment_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")

    op.drop_table("subscriptions")

    op.execute("DROP TYPE IF EXISTS paymentprovider")
    op.execute("DROP TYPE IF EXISTS subscriptionstatus")
    op.execute("DROP TYPE IF EXISTS subscriptionplan")
