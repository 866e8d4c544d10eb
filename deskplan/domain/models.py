from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


SUBSCRIPTION_STATUS_TRIAL = "trial"
SUBSCRIPTION_STATUS_ACTIVE = "active"
SUBSCRIPTION_STATUS_CANCELLED = "cancelled"
SUBSCRIPTION_STATUS_SUSPENDED = "suspended"

SUBSCRIPTION_STATUSES = (
    SUBSCRIPTION_STATUS_TRIAL,
    SUBSCRIPTION_STATUS_ACTIVE,
    SUBSCRIPTION_STATUS_CANCELLED,
    SUBSCRIPTION_STATUS_SUSPENDED,
)
# Statuses that count as the tenant's one live subscription.
LIVE_SUBSCRIPTION_STATUSES = (
    SUBSCRIPTION_STATUS_TRIAL,
    SUBSCRIPTION_STATUS_ACTIVE,
    SUBSCRIPTION_STATUS_SUSPENDED,
)
# Suspended tenants cannot add tickets, so quota alerts skip them.
ALERTABLE_SUBSCRIPTION_STATUSES = (SUBSCRIPTION_STATUS_TRIAL, SUBSCRIPTION_STATUS_ACTIVE)

BILLING_INTERVALS = ("month", "year")

# JSONB on Postgres, plain JSON elsewhere (sqlite test databases).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    sqlite drops tzinfo on the way in and out; normalize both directions so
    comparisons against ``datetime.now(timezone.utc)`` never mix naive and
    aware values.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"
    __table_args__ = (
        Index("ix_subscription_plans_active", "is_active"),
        Index("ix_subscription_plans_sort", "sort_order"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, unique=True)
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    billing_interval: Mapped[str] = mapped_column(String, default="month", nullable=False)
    trial_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # -1 means unlimited for each quota dimension.
    active_ticket_limit: Mapped[int] = mapped_column(Integer)
    completed_ticket_limit: Mapped[int] = mapped_column(Integer)
    total_ticket_limit: Mapped[int] = mapped_column(Integer)
    features: Mapped[list[str] | None] = mapped_column(JSONType, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )


class CustomerSubscription(Base):
    __tablename__ = "customer_subscriptions"
    __table_args__ = (
        Index("ix_customer_subscriptions_tenant_status", "tenant_id", "status"),
        Index("ix_customer_subscriptions_status_trial_end", "status", "trial_end"),
        # One live subscription per tenant; cancelled rows are kept for audit.
        Index(
            "uq_customer_subscriptions_live_tenant",
            "tenant_id",
            unique=True,
            postgresql_where=text("status IN ('trial', 'active', 'suspended')"),
            sqlite_where=text("status IN ('trial', 'active', 'suspended')"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    plan_id: Mapped[str] = mapped_column(String, ForeignKey("subscription_plans.id"), index=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    trial_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Opaque reference returned by the payment gateway on conversion.
    payment_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    # Negotiated override of plan price and/or limits.
    custom_pricing: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # Append-only event log; see deskplan.domain.events.
    metadata_json: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list, nullable=False)
    # Bumped on every write; guards read-modify-append against lost updates.
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )


class TrialReminder(Base):
    __tablename__ = "trial_reminders"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id",
            "offset_days",
            "trial_end",
            name="uq_trial_reminders_scope",
        ),
    )

    # Claim rows dedupe reminder delivery per subscription/offset/trial window.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    subscription_id: Mapped[str] = mapped_column(
        String, ForeignKey("customer_subscriptions.id"), index=True
    )
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    offset_days: Mapped[int] = mapped_column(Integer)
    trial_end: Mapped[datetime] = mapped_column(UTCDateTime)
    sent_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class UsageAlert(Base):
    __tablename__ = "usage_alerts"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id",
            "limit_type",
            "severity",
            "period_start",
            name="uq_usage_alerts_scope",
        ),
    )

    # One alert per quota dimension and severity in each billing period.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    subscription_id: Mapped[str] = mapped_column(
        String, ForeignKey("customer_subscriptions.id"), index=True
    )
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    limit_type: Mapped[str] = mapped_column(String)
    severity: Mapped[str] = mapped_column(String)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime)
    sent_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        Index("ix_tickets_tenant_status", "tenant_id", "status"),
        Index("ix_tickets_tenant_archived", "tenant_id", "archived_at"),
    )

    # Owned by the help-desk application; the engine only counts rows.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
