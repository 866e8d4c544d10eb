from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import insert

from deskplan.domain.models import SubscriptionPlan, Ticket
from deskplan.persistence.db import SessionLocal


class FixedClock:
    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    async def send(self, event: str, tenant_id: str, payload: dict[str, Any]) -> None:
        self.sent.append((event, tenant_id, payload))

    def events(self, name: str) -> list[tuple[str, str, dict[str, Any]]]:
        return [item for item in self.sent if item[0] == name]


class FailingNotifier:
    def __init__(self) -> None:
        self.attempts = 0

    async def send(self, event: str, tenant_id: str, payload: dict[str, Any]) -> None:
        self.attempts += 1
        raise ConnectionError("notification channel down")


async def seed_plan(
    *,
    slug: str,
    price: str = "0",
    trial_days: int = 14,
    active: int = 5,
    completed: int = 50,
    total: int = 100,
    billing_interval: str = "month",
    is_active: bool = True,
    sort_order: int = 0,
) -> SubscriptionPlan:
    plan = SubscriptionPlan(
        id=f"plan_{slug}",
        name=slug.replace("-", " ").title(),
        slug=slug,
        price=Decimal(price),
        currency="USD",
        billing_interval=billing_interval,
        trial_days=trial_days,
        active_ticket_limit=active,
        completed_ticket_limit=completed,
        total_ticket_limit=total,
        features=[],
        is_active=is_active,
        sort_order=sort_order,
    )
    async with SessionLocal() as session:
        session.add(plan)
        await session.commit()
    return plan


async def seed_catalog() -> dict[str, SubscriptionPlan]:
    return {
        "free": await seed_plan(slug="free-tier", price="0", trial_days=0, active=3, completed=10, total=13),
        "starter": await seed_plan(slug="starter", price="29", active=5, completed=50, total=100, sort_order=1),
        "pro": await seed_plan(slug="pro", price="79", active=100, completed=-1, total=-1, sort_order=2),
        "enterprise": await seed_plan(
            slug="enterprise", price="199", active=-1, completed=-1, total=-1, sort_order=3
        ),
    }


async def seed_tickets(
    tenant_id: str,
    *,
    active: int = 0,
    completed: int = 0,
    archived: int = 0,
    deleted: int = 0,
) -> None:
    archived_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    plan = [
        ("open", None, active),
        ("resolved", None, completed),
        ("closed", archived_at, archived),
        ("deleted", None, deleted),
    ]
    rows = [
        {"id": uuid4().hex, "tenant_id": tenant_id, "status": status, "archived_at": when}
        for status, when, count in plan
        for _ in range(count)
    ]
    if not rows:
        return
    async with SessionLocal() as session:
        await session.execute(insert(Ticket), rows)
        await session.commit()
