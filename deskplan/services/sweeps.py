from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, time as dt_time, timedelta, timezone
import logging
from typing import Any
from uuid import uuid4
from zoneinfo import ZoneInfo

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deskplan.core.config import get_settings
from deskplan.core.errors import AppError, DependencyError
from deskplan.domain.models import ALERTABLE_SUBSCRIPTION_STATUSES
from deskplan.persistence.db import SessionLocal
from deskplan.persistence.repos import plans as plan_repo
from deskplan.persistence.repos import subscriptions as subscription_repo
from deskplan.services.enforcement import UsageWarning, build_usage_warnings
from deskplan.services.lifecycle import (
    OUTCOME_CANCELLED,
    OUTCOME_CONVERTED_TO_FREE,
    SubscriptionLifecycleManager,
    get_lifecycle_manager,
)
from deskplan.services.notifier import (
    EVENT_TRIAL_REMINDER,
    EVENT_USAGE_WARNING,
    Notifier,
    build_notifier,
    notify_safely,
)
from deskplan.services.usage import UsageAccountant, plan_limits, usage_for_type


logger = logging.getLogger(__name__)

JOB_REMINDERS = "reminders"
JOB_EXPIRATIONS = "expirations"
JOB_USAGE_ALERTS = "usage_alerts"

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()

_local_locks: dict[str, asyncio.Lock] = {}
_local_lock_owners: dict[str, str] = {}


def sweep_lock_key(job: str) -> str:
    return f"deskplan:sweeps:{job}:lock"


@dataclass(slots=True)
class SweepLock:
    job: str
    token: str
    redis: Any | None
    local: bool


@dataclass(frozen=True)
class PartialSweepFailure:
    subscription_id: str
    error_code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


async def get_sweep_redis() -> Redis | None:
    # Reuse one Redis connection per event loop for sweep coordination.
    settings = get_settings()
    if not settings.redis_enabled:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("sweep_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


async def acquire_sweep_lock(job: str) -> SweepLock | None:
    # One sweep of each kind at a time across all workers.
    settings = get_settings()
    token = uuid4().hex
    redis = await get_sweep_redis()
    ttl_s = max(5, int(settings.sweep_lock_ttl_s))
    if redis is not None:
        acquired = await redis.set(sweep_lock_key(job), token, nx=True, ex=ttl_s)
        if not acquired:
            return None
        return SweepLock(job=job, token=token, redis=redis, local=False)

    # In-process fallback for single-node deployments and tests.
    local_lock = _local_locks.setdefault(job, asyncio.Lock())
    if local_lock.locked():
        return None
    await local_lock.acquire()
    _local_lock_owners[job] = token
    return SweepLock(job=job, token=token, redis=None, local=True)


async def release_sweep_lock(lock: SweepLock) -> None:
    # Release only while still the owner; an expired lock may belong to another worker.
    if lock.local:
        local_lock = _local_locks.get(lock.job)
        if local_lock is not None and local_lock.locked() and _local_lock_owners.get(lock.job) == lock.token:
            _local_lock_owners.pop(lock.job, None)
            local_lock.release()
        return
    if lock.redis is None:
        return
    try:
        current = await lock.redis.get(sweep_lock_key(lock.job))
        value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
        if value == lock.token:
            await lock.redis.delete(sweep_lock_key(lock.job))
    except Exception as exc:  # noqa: BLE001 - the TTL reclaims the lock
        logger.warning("sweep_lock_release_failed job=%s", lock.job, exc_info=exc)


def reminder_window(now: datetime, offset_days: int, tz_name: str) -> tuple[datetime, datetime]:
    """Return the UTC bounds of the calendar day ``offset_days`` after ``now``.

    The day is taken in ``tz_name`` so "ends in 3 days" matches the operator's
    calendar rather than a rolling 72 hour window.
    """
    tz = ZoneInfo(tz_name)
    target_day = (now.astimezone(tz) + timedelta(days=offset_days)).date()
    start = datetime.combine(target_day, dt_time.min, tzinfo=tz)
    end = datetime.combine(target_day, dt_time.max, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


async def run_reminder_sweep(
    *,
    now: datetime | None = None,
    notifier: Notifier | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    lock = await acquire_sweep_lock(JOB_REMINDERS)
    if lock is None:
        logger.info("trial_reminder_sweep_skipped_lock")
        return {"status": "skipped_lock", "processed": 0, "sent": 0, "skipped": 0, "errors": 0}

    settings = get_settings()
    current = now or datetime.now(timezone.utc)
    notifier = notifier or build_notifier()
    factory = session_factory or SessionLocal
    processed = sent = skipped = errors = 0
    try:
        for offset in sorted(set(settings.trial_reminder_offsets_days), reverse=True):
            start, end = reminder_window(current, offset, settings.sweep_timezone)
            async with factory() as session:
                rows = await subscription_repo.list_trials_ending_between(session, start=start, end=end)
                plan_names = {plan.id: plan.name for plan in await plan_repo.list_active_plans(session)}
                # Snapshot before claiming: a rollback on a duplicate claim expires loaded rows.
                due = [(row.id, row.tenant_id, row.plan_id, row.trial_end) for row in rows]
                for subscription_id, tenant_id, plan_id, trial_end in due:
                    processed += 1
                    claimed = await subscription_repo.try_claim_reminder(
                        session,
                        subscription_id=subscription_id,
                        tenant_id=tenant_id,
                        trial_end=trial_end,
                        offset_days=offset,
                    )
                    if not claimed:
                        skipped += 1
                        continue
                    delivered = await notify_safely(
                        notifier,
                        EVENT_TRIAL_REMINDER,
                        tenant_id,
                        {
                            "subscription_id": subscription_id,
                            "plan_name": plan_names.get(plan_id),
                            "trial_end": trial_end.isoformat(),
                            "days_remaining": offset,
                            "upgrade_url": f"{settings.frontend_url}/subscription/upgrade",
                        },
                    )
                    if delivered:
                        sent += 1
                        continue
                    errors += 1
                    await subscription_repo.release_reminder_claim(
                        session,
                        subscription_id=subscription_id,
                        trial_end=trial_end,
                        offset_days=offset,
                    )
    finally:
        await release_sweep_lock(lock)

    logger.info(
        "trial_reminder_sweep_completed processed=%s sent=%s skipped=%s errors=%s",
        processed,
        sent,
        skipped,
        errors,
    )
    return {"status": "ok", "processed": processed, "sent": sent, "skipped": skipped, "errors": errors}


async def run_expiration_sweep(
    *,
    manager: SubscriptionLifecycleManager | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    lock = await acquire_sweep_lock(JOB_EXPIRATIONS)
    if lock is None:
        logger.info("trial_expiration_sweep_skipped_lock")
        return {
            "status": "skipped_lock",
            "processed": 0,
            "converted": 0,
            "cancelled": 0,
            "errors": 0,
            "failures": [],
        }

    # The manager's clock decides expiry, so listing uses the same clock.
    manager = manager or get_lifecycle_manager()
    current = manager.now()
    factory = session_factory or SessionLocal
    batch_size = max(1, int(get_settings().sweep_batch_size))
    attempted: set[str] = set()
    failures: list[PartialSweepFailure] = []
    converted = cancelled = 0
    try:
        while True:
            async with factory() as session:
                ids = await subscription_repo.list_expired_trial_ids(
                    session, now=current, limit=batch_size + len(failures)
                )
            # Failed rows stay in trial; skip them so each run attempts a row once.
            pending = [subscription_id for subscription_id in ids if subscription_id not in attempted]
            if not pending:
                break
            for subscription_id in pending:
                attempted.add(subscription_id)
                try:
                    async with factory() as session:
                        result = await manager.process_expired_trial(session, subscription_id)
                except AppError as exc:
                    failures.append(PartialSweepFailure(subscription_id, exc.code, exc.message))
                    logger.warning(
                        "trial_expiration_failed subscription_id=%s code=%s",
                        subscription_id,
                        exc.code,
                    )
                    continue
                except Exception as exc:  # noqa: BLE001 - one bad row must not stop the sweep
                    failures.append(PartialSweepFailure(subscription_id, "INTERNAL_ERROR", str(exc)))
                    logger.exception("trial_expiration_failed subscription_id=%s", subscription_id)
                    continue
                if result.outcome == OUTCOME_CONVERTED_TO_FREE:
                    converted += 1
                elif result.outcome == OUTCOME_CANCELLED:
                    cancelled += 1
    finally:
        await release_sweep_lock(lock)

    logger.info(
        "trial_expiration_sweep_completed processed=%s converted=%s cancelled=%s errors=%s",
        len(attempted),
        converted,
        cancelled,
        len(failures),
    )
    return {
        "status": "ok",
        "processed": len(attempted),
        "converted": converted,
        "cancelled": cancelled,
        "errors": len(failures),
        "failures": [failure.to_dict() for failure in failures],
    }


async def run_daily_trial_jobs(
    *,
    manager: SubscriptionLifecycleManager | None = None,
    notifier: Notifier | None = None,
) -> dict[str, Any]:
    # Reminders first so a trial ending today still gets its last notice before expiry.
    manager = manager or get_lifecycle_manager()
    reminders = await run_reminder_sweep(now=manager.now(), notifier=notifier)
    expirations = await run_expiration_sweep(manager=manager)
    return {"reminders": reminders, "expirations": expirations}


@dataclass(frozen=True)
class UsageAlertNotice:
    subscription_id: str
    tenant_id: str
    period_start: datetime
    plan_name: str
    warning: UsageWarning
    used: int
    limit: int


async def pending_usage_alerts(
    session: AsyncSession,
    subscription_id: str,
    accountant: UsageAccountant,
) -> list[UsageAlertNotice]:
    subscription = await subscription_repo.get_subscription(session, subscription_id)
    # Rows can move on between listing and checking.
    if subscription is None or subscription.status not in ALERTABLE_SUBSCRIPTION_STATUSES:
        return []
    plan = await plan_repo.get_plan(session, subscription.plan_id)
    if plan is None:
        raise DependencyError(
            "Plan for subscription is missing from the catalog",
            details={"subscription_id": subscription_id, "plan_id": subscription.plan_id},
        )
    limits = plan_limits(plan, subscription)
    if limits.is_unlimited:
        return []
    usage = await accountant.current_usage(session, subscription.tenant_id)
    warnings = build_usage_warnings(usage, limits, accountant.percentage_used(usage, limits))
    return [
        UsageAlertNotice(
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            period_start=subscription.current_period_start,
            plan_name=plan.name,
            warning=warning,
            used=usage_for_type(usage, warning.type),
            limit=limits.for_type(warning.type),
        )
        for warning in warnings
    ]


async def run_usage_alert_sweep(
    *,
    notifier: Notifier | None = None,
    accountant: UsageAccountant | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    """Notify tenants whose usage crossed a warning threshold.

    Each (subscription, quota, severity) alerts at most once per billing
    period: the claim row is written before sending and released again when
    delivery fails, so the next run retries it.
    """
    lock = await acquire_sweep_lock(JOB_USAGE_ALERTS)
    if lock is None:
        logger.info("usage_alert_sweep_skipped_lock")
        return {"status": "skipped_lock", "processed": 0, "sent": 0, "skipped": 0, "errors": 0}

    settings = get_settings()
    notifier = notifier or build_notifier()
    accountant = accountant or UsageAccountant()
    factory = session_factory or SessionLocal
    batch_size = max(1, int(settings.sweep_batch_size))
    processed = sent = skipped = errors = 0
    after_id: str | None = None
    try:
        while True:
            async with factory() as session:
                ids = await subscription_repo.list_alertable_subscription_ids(
                    session, after_id=after_id, limit=batch_size
                )
            if not ids:
                break
            after_id = ids[-1]
            for subscription_id in ids:
                processed += 1
                try:
                    async with factory() as session:
                        notices = await pending_usage_alerts(session, subscription_id, accountant)
                except Exception as exc:  # noqa: BLE001 - one bad subscription must not stop the sweep
                    errors += 1
                    logger.warning("usage_alert_check_failed subscription_id=%s", subscription_id, exc_info=exc)
                    continue
                for notice in notices:
                    delivered = await _deliver_usage_alert(factory, notifier, notice)
                    if delivered is None:
                        skipped += 1
                    elif delivered:
                        sent += 1
                    else:
                        errors += 1
    finally:
        await release_sweep_lock(lock)

    logger.info(
        "usage_alert_sweep_completed processed=%s sent=%s skipped=%s errors=%s",
        processed,
        sent,
        skipped,
        errors,
    )
    return {"status": "ok", "processed": processed, "sent": sent, "skipped": skipped, "errors": errors}


async def _deliver_usage_alert(
    factory: async_sessionmaker[AsyncSession],
    notifier: Notifier,
    notice: UsageAlertNotice,
) -> bool | None:
    # None means an earlier run already alerted for this scope.
    warning = notice.warning
    async with factory() as session:
        claimed = await subscription_repo.try_claim_usage_alert(
            session,
            subscription_id=notice.subscription_id,
            tenant_id=notice.tenant_id,
            limit_type=warning.type,
            severity=warning.severity,
            period_start=notice.period_start,
        )
        if not claimed:
            return None
        delivered = await notify_safely(
            notifier,
            EVENT_USAGE_WARNING,
            notice.tenant_id,
            {
                "subscription_id": notice.subscription_id,
                "plan_name": notice.plan_name,
                "limit_type": warning.type,
                "severity": warning.severity,
                "percentage": round(warning.percentage),
                "current_usage": notice.used,
                "limit": notice.limit,
                "message": warning.message,
                "upgrade_url": f"{get_settings().frontend_url}/subscription/upgrade",
            },
        )
        if not delivered:
            await subscription_repo.release_usage_alert_claim(
                session,
                subscription_id=notice.subscription_id,
                limit_type=warning.type,
                severity=warning.severity,
                period_start=notice.period_start,
            )
    return delivered


async def run_trial_sweep_loop() -> None:
    # Each cycle runs to completion before sleeping; transitions are never interrupted.
    interval = max(60, int(get_settings().sweep_interval_s))
    while True:
        for job in (run_daily_trial_jobs, run_usage_alert_sweep):
            try:
                await job()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("sweep cycle failed job=%s", job.__name__)
        await asyncio.sleep(interval)
