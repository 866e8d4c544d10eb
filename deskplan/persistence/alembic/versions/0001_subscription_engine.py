"""subscription plans, customer subscriptions and trial reminders

Revision ID: 0001_subscription_engine
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_subscription_engine"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Read-only plan catalog; -1 in a limit column means unlimited.
    plans = op.create_table(
        "subscription_plans",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("slug", sa.String(), nullable=False, unique=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), server_default="USD", nullable=False),
        sa.Column("billing_interval", sa.String(), server_default="month", nullable=False),
        sa.Column("trial_days", sa.Integer(), server_default="0", nullable=False),
        sa.Column("active_ticket_limit", sa.Integer(), nullable=False),
        sa.Column("completed_ticket_limit", sa.Integer(), nullable=False),
        sa.Column("total_ticket_limit", sa.Integer(), nullable=False),
        sa.Column("features", postgresql.JSONB(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("sort_order", sa.Integer(), server_default="0", nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("billing_interval IN ('month', 'year')", name="ck_subscription_plans_interval"),
    )
    op.create_index("ix_subscription_plans_slug", "subscription_plans", ["slug"], unique=False)
    op.create_index("ix_subscription_plans_active", "subscription_plans", ["is_active"], unique=False)
    op.create_index("ix_subscription_plans_sort", "subscription_plans", ["sort_order"], unique=False)

    op.create_table(
        "customer_subscriptions",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), sa.ForeignKey("subscription_plans.id"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("payment_reference", sa.String(), nullable=True),
        sa.Column("custom_pricing", postgresql.JSONB(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('trial', 'active', 'cancelled', 'suspended')",
            name="ck_customer_subscriptions_status",
        ),
        sa.CheckConstraint(
            "current_period_end >= current_period_start",
            name="ck_customer_subscriptions_period",
        ),
    )
    op.create_index("ix_customer_subscriptions_tenant_id", "customer_subscriptions", ["tenant_id"], unique=False)
    op.create_index("ix_customer_subscriptions_plan_id", "customer_subscriptions", ["plan_id"], unique=False)
    op.create_index(
        "ix_customer_subscriptions_tenant_status",
        "customer_subscriptions",
        ["tenant_id", "status"],
        unique=False,
    )
    # Expiration and reminder sweeps scan trials by end date.
    op.create_index(
        "ix_customer_subscriptions_status_trial_end",
        "customer_subscriptions",
        ["status", "trial_end"],
        unique=False,
    )
    # At most one live subscription per tenant.
    op.create_index(
        "uq_customer_subscriptions_live_tenant",
        "customer_subscriptions",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('trial', 'active', 'suspended')"),
    )

    op.create_table(
        "trial_reminders",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "subscription_id",
            sa.String(),
            sa.ForeignKey("customer_subscriptions.id"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("offset_days", sa.Integer(), nullable=False),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "subscription_id",
            "offset_days",
            "trial_end",
            name="uq_trial_reminders_scope",
        ),
    )
    op.create_index("ix_trial_reminders_subscription_id", "trial_reminders", ["subscription_id"], unique=False)
    op.create_index("ix_trial_reminders_tenant_id", "trial_reminders", ["tenant_id"], unique=False)

    # Owned by the help-desk application; created here only when absent so
    # standalone deployments can count usage.
    bind = op.get_bind()
    if not sa.inspect(bind).has_table("tickets"):
        op.create_table(
            "tickets",
            sa.Column("id", sa.String(), primary_key=True, nullable=False),
            sa.Column("tenant_id", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=False),
            sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index("ix_tickets_tenant_id", "tickets", ["tenant_id"], unique=False)
        op.create_index("ix_tickets_tenant_status", "tickets", ["tenant_id", "status"], unique=False)
        op.create_index("ix_tickets_tenant_archived", "tickets", ["tenant_id", "archived_at"], unique=False)

    # Seed the baseline catalog; free-tier is where expired trials land.
    op.bulk_insert(
        plans,
        [
            {
                "id": "plan_free",
                "name": "Free",
                "slug": "free-tier",
                "price": 0,
                "currency": "USD",
                "billing_interval": "month",
                "trial_days": 0,
                "active_ticket_limit": 10,
                "completed_ticket_limit": 50,
                "total_ticket_limit": 60,
                "features": ["basic_tickets"],
                "is_active": True,
                "sort_order": 0,
                "description": "Core ticketing for small teams",
            },
            {
                "id": "plan_starter",
                "name": "Starter",
                "slug": "starter",
                "price": 29,
                "currency": "USD",
                "billing_interval": "month",
                "trial_days": 14,
                "active_ticket_limit": 100,
                "completed_ticket_limit": 1000,
                "total_ticket_limit": 1100,
                "features": ["basic_tickets", "email_support"],
                "is_active": True,
                "sort_order": 1,
                "description": "Growing teams with moderate ticket volume",
            },
            {
                "id": "plan_professional",
                "name": "Professional",
                "slug": "professional",
                "price": 79,
                "currency": "USD",
                "billing_interval": "month",
                "trial_days": 14,
                "active_ticket_limit": 500,
                "completed_ticket_limit": -1,
                "total_ticket_limit": -1,
                "features": ["basic_tickets", "email_support", "analytics"],
                "is_active": True,
                "sort_order": 2,
                "description": "High-volume support desks",
            },
            {
                "id": "plan_enterprise",
                "name": "Enterprise",
                "slug": "enterprise",
                "price": 199,
                "currency": "USD",
                "billing_interval": "month",
                "trial_days": 30,
                "active_ticket_limit": -1,
                "completed_ticket_limit": -1,
                "total_ticket_limit": -1,
                "features": ["basic_tickets", "email_support", "analytics", "sso"],
                "is_active": True,
                "sort_order": 3,
                "description": "Unlimited tickets and enterprise controls",
            },
        ],
    )


def downgrade() -> None:
    op.drop_index("ix_trial_reminders_tenant_id", table_name="trial_reminders")
    op.drop_index("ix_trial_reminders_subscription_id", table_name="trial_reminders")
    op.drop_table("trial_reminders")
    op.drop_index("uq_customer_subscriptions_live_tenant", table_name="customer_subscriptions")
    op.drop_index("ix_customer_subscriptions_status_trial_end", table_name="customer_subscriptions")
    op.drop_index("ix_customer_subscriptions_tenant_status", table_name="customer_subscriptions")
    op.drop_index("ix_customer_subscriptions_plan_id", table_name="customer_subscriptions")
    op.drop_index("ix_customer_subscriptions_tenant_id", table_name="customer_subscriptions")
    op.drop_table("customer_subscriptions")
    op.drop_index("ix_subscription_plans_sort", table_name="subscription_plans")
    op.drop_index("ix_subscription_plans_active", table_name="subscription_plans")
    op.drop_index("ix_subscription_plans_slug", table_name="subscription_plans")
    op.drop_table("subscription_plans")
