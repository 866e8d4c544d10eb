from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from deskplan.core.config import UNLIMITED
from deskplan.core.errors import ValidationError
from deskplan.domain.models import CustomerSubscription, SubscriptionPlan
from deskplan.persistence.repos.tickets import count_tickets_by_state


LIMIT_ACTIVE = "active"
LIMIT_COMPLETED = "completed"
LIMIT_TOTAL = "total"

_PRICING_LIMIT_KEYS = {
    "active_ticket_limit": "active_tickets",
    "completed_ticket_limit": "completed_tickets",
    "total_ticket_limit": "total_tickets",
}


class CustomPricing(BaseModel):
    """Negotiated override of a plan's price and quotas.

    Unset fields fall back to the plan. Limits use the same ``-1`` sentinel
    as the catalog.
    """

    model_config = ConfigDict(extra="forbid")

    price: Decimal | None = Field(default=None, ge=0)
    active_ticket_limit: int | None = Field(default=None, ge=UNLIMITED)
    completed_ticket_limit: int | None = Field(default=None, ge=UNLIMITED)
    total_ticket_limit: int | None = Field(default=None, ge=UNLIMITED)


def normalize_custom_pricing(raw: dict[str, Any] | None) -> dict[str, Any] | None:
    # Validate before storing: a malformed override would otherwise break every later check.
    if not raw:
        return None
    try:
        pricing = CustomPricing.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid custom pricing",
            code="INVALID_CUSTOM_PRICING",
            details={
                "errors": [
                    {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                    for error in exc.errors()
                ]
            },
        ) from exc
    return pricing.model_dump(mode="json", exclude_none=True) or None


@dataclass(frozen=True)
class UsageStats:
    # Derived on every call from the ticket store; never persisted.
    active_tickets: int = 0
    completed_tickets: int = 0
    total_tickets: int = 0
    archived_tickets: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class PlanLimits:
    # -1 (UNLIMITED) disables a dimension.
    active_tickets: int
    completed_tickets: int
    total_tickets: int

    @property
    def is_unlimited(self) -> bool:
        return (
            self.active_tickets == UNLIMITED
            and self.completed_tickets == UNLIMITED
            and self.total_tickets == UNLIMITED
        )

    def for_type(self, limit_type: str) -> int:
        return {
            LIMIT_ACTIVE: self.active_tickets,
            LIMIT_COMPLETED: self.completed_tickets,
            LIMIT_TOTAL: self.total_tickets,
        }[limit_type]

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class UsagePercentages:
    active: float
    completed: float
    total: float

    def for_type(self, limit_type: str) -> float:
        return getattr(self, limit_type)

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


def plan_limits(plan: SubscriptionPlan, subscription: CustomerSubscription | None = None) -> PlanLimits:
    # Negotiated custom pricing overrides individual plan limits.
    values = {
        "active_tickets": int(plan.active_ticket_limit),
        "completed_tickets": int(plan.completed_ticket_limit),
        "total_tickets": int(plan.total_ticket_limit),
    }
    overrides: dict[str, Any] = (subscription.custom_pricing or {}) if subscription else {}
    for key, field in _PRICING_LIMIT_KEYS.items():
        if overrides.get(key) is not None:
            values[field] = int(overrides[key])
    return PlanLimits(**values)


def effective_price(plan: SubscriptionPlan, subscription: CustomerSubscription | None = None) -> Decimal:
    overrides: dict[str, Any] = (subscription.custom_pricing or {}) if subscription else {}
    if overrides.get("price") is not None:
        return Decimal(str(overrides["price"]))
    return Decimal(plan.price)


def would_exceed(used: int, requested: int, limit: int) -> bool:
    # The sentinel must be handled before any arithmetic.
    if limit == UNLIMITED:
        return False
    return used + requested > limit


def percentage_of(used: int, limit: int) -> float:
    if limit == UNLIMITED:
        return 0.0
    if limit <= 0:
        return 100.0
    return min(100.0 * used / limit, 100.0)


class UsageAccountant:
    async def current_usage(self, session: AsyncSession, tenant_id: str) -> UsageStats:
        # Recompute from source each time; a cached count drifts under concurrent mutations.
        counts = await count_tickets_by_state(session, tenant_id)
        return UsageStats(
            active_tickets=counts["active"],
            completed_tickets=counts["completed"],
            total_tickets=counts["active"] + counts["completed"],
            archived_tickets=counts["archived"],
        )

    def percentage_used(self, usage: UsageStats, limits: PlanLimits) -> UsagePercentages:
        return UsagePercentages(
            active=percentage_of(usage.active_tickets, limits.active_tickets),
            completed=percentage_of(usage.completed_tickets, limits.completed_tickets),
            total=percentage_of(usage.total_tickets, limits.total_tickets),
        )


def usage_for_type(usage: UsageStats, limit_type: str) -> int:
    return {
        LIMIT_ACTIVE: usage.active_tickets,
        LIMIT_COMPLETED: usage.completed_tickets,
        LIMIT_TOTAL: usage.total_tickets,
    }[limit_type]
