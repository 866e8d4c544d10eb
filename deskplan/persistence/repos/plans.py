from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from deskplan.core.config import get_settings
from deskplan.domain.models import SubscriptionPlan


async def get_plan(session: AsyncSession, plan_id: str) -> SubscriptionPlan | None:
    result = await session.execute(select(SubscriptionPlan).where(SubscriptionPlan.id == plan_id))
    return result.scalar_one_or_none()


async def find_plan_by_slug(session: AsyncSession, slug: str) -> SubscriptionPlan | None:
    result = await session.execute(select(SubscriptionPlan).where(SubscriptionPlan.slug == slug))
    return result.scalar_one_or_none()


async def get_free_tier(session: AsyncSession) -> SubscriptionPlan | None:
    # Expired trials fall back to this plan only while it is offered.
    result = await session.execute(
        select(SubscriptionPlan).where(
            SubscriptionPlan.slug == get_settings().free_tier_slug,
            SubscriptionPlan.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def list_active_plans(session: AsyncSession) -> list[SubscriptionPlan]:
    result = await session.execute(
        select(SubscriptionPlan)
        .where(SubscriptionPlan.is_active.is_(True))
        .order_by(SubscriptionPlan.sort_order, SubscriptionPlan.price, SubscriptionPlan.id)
    )
    return list(result.scalars().all())
