"""usage alert claims

Revision ID: 0002_usage_alerts
Revises: 0001_subscription_engine
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_usage_alerts"
down_revision = "0001_subscription_engine"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One row per alert sent; the unique scope re-arms each billing period.
    op.create_table(
        "usage_alerts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "subscription_id",
            sa.String(),
            sa.ForeignKey("customer_subscriptions.id"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("limit_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "limit_type IN ('active', 'completed', 'total')",
            name="ck_usage_alerts_limit_type",
        ),
        sa.CheckConstraint(
            "severity IN ('warning', 'critical')",
            name="ck_usage_alerts_severity",
        ),
        sa.UniqueConstraint(
            "subscription_id",
            "limit_type",
            "severity",
            "period_start",
            name="uq_usage_alerts_scope",
        ),
    )
    op.create_index("ix_usage_alerts_subscription_id", "usage_alerts", ["subscription_id"], unique=False)
    op.create_index("ix_usage_alerts_tenant_id", "usage_alerts", ["tenant_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_usage_alerts_tenant_id", table_name="usage_alerts")
    op.drop_index("ix_usage_alerts_subscription_id", table_name="usage_alerts")
    op.drop_table("usage_alerts")
