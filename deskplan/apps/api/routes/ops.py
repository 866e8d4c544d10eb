from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from deskplan.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from deskplan.apps.api.response import envelope
from deskplan.persistence.db import pool_stats
from deskplan.services.sweeps import (
    run_daily_trial_jobs,
    run_expiration_sweep,
    run_reminder_sweep,
    run_usage_alert_sweep,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


@router.post("/sweeps/reminders")
async def trigger_reminder_sweep(request: Request) -> Any:
    report = await run_reminder_sweep()
    return envelope(request, report)


@router.post("/sweeps/expirations")
async def trigger_expiration_sweep(request: Request) -> Any:
    report = await run_expiration_sweep()
    return envelope(request, report)


@router.post("/sweeps/daily")
async def trigger_daily_jobs(request: Request) -> Any:
    report = await run_daily_trial_jobs()
    return envelope(request, report)


@router.post("/sweeps/usage-alerts")
async def trigger_usage_alert_sweep(request: Request) -> Any:
    report = await run_usage_alert_sweep()
    return envelope(request, report)


@router.get("/db-pool")
async def db_pool(request: Request) -> Any:
    return envelope(request, pool_stats())
