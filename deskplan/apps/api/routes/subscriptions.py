from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from deskplan.apps.api.deps import get_db, get_lifecycle
from deskplan.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from deskplan.apps.api.response import Envelope, envelope
from deskplan.domain.events import extension_history
from deskplan.domain.models import CustomerSubscription
from deskplan.services.lifecycle import SubscriptionLifecycleManager


router = APIRouter(tags=["subscriptions"], responses=DEFAULT_ERROR_RESPONSES)


class StartTrialRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    plan_slug: str = Field(min_length=1)
    trial_days: int | None = None
    metadata: dict[str, Any] | None = None


class ProvisionRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    plan_slug: str = Field(min_length=1)
    custom_pricing: dict[str, Any] | None = None


class ConvertRequest(BaseModel):
    payment_ref: str = Field(min_length=1)


class CancelTrialRequest(BaseModel):
    reason: str | None = None


class ExtendTrialRequest(BaseModel):
    # Range is enforced by the lifecycle manager so the error code stays stable.
    additional_days: int
    reason: str | None = None


class CancelSubscriptionRequest(BaseModel):
    at_period_end: bool = True
    reason: str | None = None


class ChangePlanRequest(BaseModel):
    plan_slug: str = Field(min_length=1)


class SubscriptionResponse(BaseModel):
    id: str
    tenant_id: str
    plan_id: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    trial_start: datetime | None
    trial_end: datetime | None
    cancelled_at: datetime | None
    cancel_at_period_end: bool
    payment_reference: str | None
    custom_pricing: dict[str, Any] | None
    version: int
    events: list[dict[str, Any]]
    extensions: int


class TrialStatusResponse(BaseModel):
    subscription_id: str
    in_trial: bool
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    days_remaining: int | None = None
    hours_remaining: int | None = None
    has_expired: bool | None = None
    can_convert: bool
    can_extend: bool


def to_subscription_response(row: CustomerSubscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=row.id,
        tenant_id=row.tenant_id,
        plan_id=row.plan_id,
        status=row.status,
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        trial_start=row.trial_start,
        trial_end=row.trial_end,
        cancelled_at=row.cancelled_at,
        cancel_at_period_end=row.cancel_at_period_end,
        payment_reference=row.payment_reference,
        custom_pricing=row.custom_pricing,
        version=row.version,
        events=list(row.metadata_json or []),
        extensions=len(extension_history(row.metadata_json)),
    )


@router.post(
    "/subscriptions/trials",
    status_code=status.HTTP_201_CREATED,
    response_model=Envelope[SubscriptionResponse],
)
async def start_trial(
    payload: StartTrialRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
) -> Any:
    row = await lifecycle.start_trial(
        db,
        tenant_id=payload.tenant_id,
        plan_slug=payload.plan_slug,
        trial_days=payload.trial_days,
        attributes=payload.metadata,
    )
    return envelope(request, to_subscription_response(row))


@router.post(
    "/subscriptions",
    status_code=status.HTTP_201_CREATED,
    response_model=Envelope[SubscriptionResponse],
)
async def provision_subscription(
    payload: ProvisionRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
) -> Any:
    row = await lifecycle.provision(
        db,
        tenant_id=payload.tenant_id,
        plan_slug=payload.plan_slug,
        custom_pricing=payload.custom_pricing,
    )
    return envelope(request, to_subscription_response(row))


@router.get(
    "/subscriptions/{subscription_id}",
    response_model=Envelope[SubscriptionResponse],
)
async def get_subscription(
    subscription_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
) -> Any:
    row = await lifecycle.get_subscription(db, subscription_id)
    return envelope(request, to_subscription_response(row))


@router.get(
    "/tenants/{tenant_id}/subscription",
    response_model=Envelope[SubscriptionResponse],
)
async def get_tenant_subscription(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
) -> Any:
    row = await lifecycle.get_tenant_subscription(db, tenant_id)
    return envelope(request, to_subscription_response(row))


@router.post(
    "/subscriptions/{subscription_id}/convert",
    response_model=Envelope[SubscriptionResponse],
)
async def convert_trial(
    subscription_id: str,
    payload: ConvertRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
) -> Any:
    row = await lifecycle.convert_to_paid(db, subscription_id, payment_ref=payload.payment_ref)
    return envelope(request, to_subscription_response(row))


@router.post(
    "/subscriptions/{subscription_id}/cancel-trial",
    response_model=Envelope[SubscriptionResponse],
)
async def cancel_trial(
    subscription_id: str,
    payload: CancelTrialRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
) -> Any:
    row = await lifecycle.cancel_trial(db, subscription_id, reason=payload.reason)
    return envelope(request, to_subscription_response(row))


@router.post(
    "/subscriptions/{subscription_id}/extend-trial",
    response_model=Envelope[SubscriptionResponse],
)
async def extend_trial(
    subscription_id: str,
    payload: ExtendTrialRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
) -> Any:
    row = await lifecycle.extend_trial(
        db,
        subscription_id,
        additional_days=payload.additional_days,
        reason=payload.reason,
    )
    return envelope(request, to_subscription_response(row))


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    response_model=Envelope[SubscriptionResponse],
)
async def cancel_subscription(
    subscription_id: str,
    payload: CancelSubscriptionRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
) -> Any:
    row = await lifecycle.cancel_subscription(
        db,
        subscription_id,
        at_period_end=payload.at_period_end,
        reason=payload.reason,
    )
    return envelope(request, to_subscription_response(row))


@router.post(
    "/subscriptions/{subscription_id}/change-plan",
    response_model=Envelope[SubscriptionResponse],
)
async def change_plan(
    subscription_id: str,
    payload: ChangePlanRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
) -> Any:
    row = await lifecycle.change_plan(db, subscription_id, plan_slug=payload.plan_slug)
    return envelope(request, to_subscription_response(row))


@router.get(
    "/subscriptions/{subscription_id}/trial-status",
    response_model=Envelope[TrialStatusResponse],
)
async def trial_status(
    subscription_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle),
) -> Any:
    result = await lifecycle.trial_status(db, subscription_id)
    payload = TrialStatusResponse(
        subscription_id=subscription_id,
        in_trial=result.in_trial,
        trial_start=result.trial_start,
        trial_end=result.trial_end,
        days_remaining=result.days_remaining,
        hours_remaining=result.hours_remaining,
        has_expired=result.has_expired,
        can_convert=result.can_convert,
        can_extend=result.can_extend,
    )
    return envelope(request, payload)
