from __future__ import annotations

from decimal import Decimal

import pytest

from deskplan.core.config import UNLIMITED
from deskplan.domain.models import CustomerSubscription, SubscriptionPlan
from deskplan.services.usage import (
    PlanLimits,
    UsageAccountant,
    UsageStats,
    effective_price,
    percentage_of,
    plan_limits,
    would_exceed,
)


def _plan(active: int = 5, completed: int = 50, total: int = 100, price: str = "29") -> SubscriptionPlan:
    return SubscriptionPlan(
        id="plan_x",
        name="X",
        slug="x",
        price=Decimal(price),
        active_ticket_limit=active,
        completed_ticket_limit=completed,
        total_ticket_limit=total,
    )


@pytest.mark.parametrize(
    ("used", "requested", "limit", "expected"),
    [
        (4, 1, 5, False),
        (5, 1, 5, True),
        (0, 6, 5, True),
        (10**6, 10**4, UNLIMITED, False),
        (0, 1, 0, True),
    ],
)
def test_would_exceed(used: int, requested: int, limit: int, expected: bool) -> None:
    assert would_exceed(used, requested, limit) is expected


def test_percentage_handles_sentinel_zero_and_cap() -> None:
    assert percentage_of(500, UNLIMITED) == 0.0
    assert percentage_of(0, 0) == 100.0
    assert percentage_of(92, 100) == pytest.approx(92.0)
    assert percentage_of(150, 100) == 100.0


def test_custom_pricing_overrides_individual_limits() -> None:
    subscription = CustomerSubscription(custom_pricing={"active_ticket_limit": 20, "price": "10.50"})
    limits = plan_limits(_plan(), subscription)
    assert limits == PlanLimits(active_tickets=20, completed_tickets=50, total_tickets=100)
    assert effective_price(_plan(), subscription) == Decimal("10.50")
    assert effective_price(_plan()) == Decimal("29")


def test_unlimited_requires_all_three_dimensions() -> None:
    assert plan_limits(_plan(-1, -1, -1)).is_unlimited
    assert not plan_limits(_plan(-1, -1, 10)).is_unlimited


def test_percentage_used_per_dimension() -> None:
    usage = UsageStats(active_tickets=92, completed_tickets=0, total_tickets=92)
    limits = PlanLimits(active_tickets=100, completed_tickets=UNLIMITED, total_tickets=0)
    percentages = UsageAccountant().percentage_used(usage, limits)
    assert percentages.active == pytest.approx(92.0)
    assert percentages.completed == 0.0
    assert percentages.total == 100.0
