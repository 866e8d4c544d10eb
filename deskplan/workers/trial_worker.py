from __future__ import annotations

import logging
from typing import Any
from zoneinfo import ZoneInfo

from arq import cron
from arq.connections import RedisSettings

from deskplan.core.config import get_settings
from deskplan.core.logging import configure_logging
from deskplan.services.sweeps import run_expiration_sweep, run_reminder_sweep, run_usage_alert_sweep


logger = logging.getLogger(__name__)


async def send_trial_reminders(ctx) -> dict[str, Any]:
    report = await run_reminder_sweep()
    logger.info("trial_reminders_job job_id=%s status=%s", ctx.get("job_id"), report["status"])
    return report


async def expire_trials(ctx) -> dict[str, Any]:
    report = await run_expiration_sweep()
    logger.info("expire_trials_job job_id=%s status=%s", ctx.get("job_id"), report["status"])
    return report


async def alert_usage(ctx) -> dict[str, Any]:
    report = await run_usage_alert_sweep()
    logger.info(
        "usage_alerts_job job_id=%s status=%s sent=%s",
        ctx.get("job_id"),
        report["status"],
        report.get("sent", 0),
    )
    return report


async def _startup(ctx) -> None:
    configure_logging()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sweep_queue_name
    timezone = ZoneInfo(settings.sweep_timezone)
    functions = [send_trial_reminders, expire_trials, alert_usage]
    # Reminders fire first; both sweeps also hold their own lock across workers.
    cron_jobs = [
        cron(send_trial_reminders, hour={settings.sweep_cron_hour}, minute={0}, unique=True),
        cron(expire_trials, hour={settings.sweep_cron_hour}, minute={5}, unique=True),
        # Usage alerts run every hour, off the daily sweep minutes.
        cron(alert_usage, minute={30}, unique=True),
    ]
    on_startup = _startup
