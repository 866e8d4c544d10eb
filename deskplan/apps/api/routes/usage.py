from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from deskplan.apps.api.deps import get_db, get_enforcer
from deskplan.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from deskplan.apps.api.response import envelope
from deskplan.services.enforcement import LimitEnforcer


router = APIRouter(prefix="/tenants/{tenant_id}", tags=["usage"], responses=DEFAULT_ERROR_RESPONSES)


class LimitCheckRequest(BaseModel):
    operation: Literal["create", "complete"] = "create"
    count: int = Field(default=1, ge=1)


@router.get("/enforcement-status")
async def enforcement_status(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    enforcer: LimitEnforcer = Depends(get_enforcer),
) -> Any:
    data = await enforcer.enforcement_status(db, tenant_id)
    return envelope(request, data)


@router.get("/usage/warnings")
async def usage_warnings(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    enforcer: LimitEnforcer = Depends(get_enforcer),
) -> Any:
    warnings = await enforcer.usage_warnings(db, tenant_id)
    return envelope(request, warnings.to_dict())


@router.get("/upgrade-suggestions")
async def upgrade_suggestions(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    enforcer: LimitEnforcer = Depends(get_enforcer),
) -> Any:
    plans = await enforcer.suggested_plans(db, tenant_id)
    return envelope(request, plans)


@router.post("/limits/check")
async def check_limits(
    tenant_id: str,
    payload: LimitCheckRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    enforcer: LimitEnforcer = Depends(get_enforcer),
) -> Any:
    # Advisory: always 200, the decision is in the body.
    result = await enforcer.check_bulk(db, tenant_id, payload.operation, payload.count)
    return envelope(request, result.to_dict())


@router.post("/limits/require")
async def require_limits(
    tenant_id: str,
    payload: LimitCheckRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    enforcer: LimitEnforcer = Depends(get_enforcer),
) -> Any:
    # Denials surface as 429 SUBSCRIPTION_LIMIT_REACHED with the upgrade details.
    result = await enforcer.require(db, tenant_id, payload.operation, payload.count)
    return envelope(request, result.to_dict())
