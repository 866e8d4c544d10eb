from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from deskplan.apps.api.deps import get_db
from deskplan.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from deskplan.apps.api.response import Envelope, envelope
from deskplan.domain.models import SubscriptionPlan
from deskplan.persistence.repos.plans import list_active_plans
from deskplan.services.usage import plan_limits


router = APIRouter(prefix="/plans", tags=["plans"], responses=DEFAULT_ERROR_RESPONSES)


class PlanResponse(BaseModel):
    id: str
    name: str
    slug: str
    price: str
    currency: str
    billing_interval: str
    trial_days: int
    limits: dict[str, int]
    features: list[Any]
    sort_order: int
    description: str | None


def to_plan_response(plan: SubscriptionPlan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        name=plan.name,
        slug=plan.slug,
        price=str(plan.price),
        currency=plan.currency,
        billing_interval=plan.billing_interval,
        trial_days=plan.trial_days,
        limits=plan_limits(plan).to_dict(),
        features=list(plan.features or []),
        sort_order=plan.sort_order,
        description=plan.description,
    )


@router.get("", response_model=Envelope[list[PlanResponse]])
async def list_plans(request: Request, db: AsyncSession = Depends(get_db)) -> Any:
    plans = await list_active_plans(db)
    return envelope(request, [to_plan_response(plan) for plan in plans])
