from __future__ import annotations

from datetime import datetime, timezone

import pytest

from deskplan.core.errors import StateConflictError
from deskplan.persistence.db import SessionLocal
from deskplan.services.lifecycle import SubscriptionLifecycleManager
from deskplan.services.notifier import EVENT_TRIAL_REMINDER
from deskplan.services.sweeps import (
    JOB_EXPIRATIONS,
    acquire_sweep_lock,
    release_sweep_lock,
    run_daily_trial_jobs,
    run_expiration_sweep,
    run_reminder_sweep,
)
from deskplan.tests.utils.fixtures import (
    FailingNotifier,
    FixedClock,
    RecordingNotifier,
    seed_catalog,
)


async def _start(manager: SubscriptionLifecycleManager, tenant_id: str, days: int) -> str:
    async with SessionLocal() as session:
        row = await manager.start_trial(session, tenant_id=tenant_id, plan_slug="starter", trial_days=days)
    return row.id


@pytest.mark.asyncio
async def test_reminders_are_sent_once_per_offset() -> None:
    await seed_catalog()
    clock = FixedClock()
    manager = SubscriptionLifecycleManager(notifier=RecordingNotifier(), time_provider=clock)
    three_day = await _start(manager, "t-3", 3)
    seven_day = await _start(manager, "t-7", 7)
    await _start(manager, "t-14", 14)
    notifier = RecordingNotifier()

    first = await run_reminder_sweep(now=clock.now, notifier=notifier)
    second = await run_reminder_sweep(now=clock.now, notifier=notifier)

    assert first == {"status": "ok", "processed": 2, "sent": 2, "skipped": 0, "errors": 0}
    assert second == {"status": "ok", "processed": 2, "sent": 0, "skipped": 2, "errors": 0}
    reminders = notifier.events(EVENT_TRIAL_REMINDER)
    assert {payload["subscription_id"]: payload["days_remaining"] for _, _, payload in reminders} == {
        seven_day: 7,
        three_day: 3,
    }


@pytest.mark.asyncio
async def test_extended_trial_gets_fresh_reminders() -> None:
    await seed_catalog()
    clock = FixedClock()
    manager = SubscriptionLifecycleManager(notifier=RecordingNotifier(), time_provider=clock)
    subscription_id = await _start(manager, "t-1", 3)
    notifier = RecordingNotifier()
    await run_reminder_sweep(now=clock.now, notifier=notifier)

    async with SessionLocal() as session:
        await manager.extend_trial(session, subscription_id, additional_days=4)
    report = await run_reminder_sweep(now=clock.now, notifier=notifier)

    assert report["sent"] == 1
    assert [payload["days_remaining"] for _, _, payload in notifier.events(EVENT_TRIAL_REMINDER)] == [3, 7]


@pytest.mark.asyncio
async def test_failed_reminder_is_retried_on_rerun() -> None:
    await seed_catalog()
    clock = FixedClock()
    manager = SubscriptionLifecycleManager(notifier=RecordingNotifier(), time_provider=clock)
    await _start(manager, "t-1", 1)

    failed = await run_reminder_sweep(now=clock.now, notifier=FailingNotifier())
    retried = await run_reminder_sweep(now=clock.now, notifier=RecordingNotifier())

    assert failed["errors"] == 1
    assert failed["sent"] == 0
    assert retried["sent"] == 1


@pytest.mark.asyncio
async def test_expiration_sweep_converts_all_expired_trials() -> None:
    await seed_catalog()
    clock = FixedClock()
    manager = SubscriptionLifecycleManager(notifier=RecordingNotifier(), time_provider=clock)
    for tenant_id in ("t-a", "t-b", "t-c"):
        await _start(manager, tenant_id, 3)
    await _start(manager, "t-later", 14)
    clock.advance(days=5)

    report = await run_expiration_sweep(manager=manager)
    rerun = await run_expiration_sweep(manager=manager)

    assert report["status"] == "ok"
    assert report["processed"] == 3
    assert report["converted"] == 3
    assert report["cancelled"] == 0
    assert report["errors"] == 0
    assert rerun["processed"] == 0
    async with SessionLocal() as session:
        later = await manager.get_tenant_subscription(session, "t-later")
        expired = await manager.get_tenant_subscription(session, "t-a")
    assert later.status == "trial"
    assert expired.status == "active"
    assert expired.plan_id == "plan_free-tier"


@pytest.mark.asyncio
async def test_expiration_sweep_skips_failing_items() -> None:
    await seed_catalog()
    clock = FixedClock()
    manager = SubscriptionLifecycleManager(notifier=RecordingNotifier(), time_provider=clock)
    ids = [await _start(manager, tenant_id, 3) for tenant_id in ("t-a", "t-b", "t-c", "t-d")]
    clock.advance(days=5)
    conflict_id, crash_id = ids[0], ids[1]
    original = manager.process_expired_trial

    async def _flaky(session, subscription_id):  # noqa: ANN001
        if subscription_id == conflict_id:
            raise StateConflictError("raced", code="CONCURRENT_MODIFICATION")
        if subscription_id == crash_id:
            raise RuntimeError("boom")
        return await original(session, subscription_id)

    manager.process_expired_trial = _flaky  # type: ignore[method-assign]
    report = await run_expiration_sweep(manager=manager)

    assert report["processed"] == 4
    assert report["converted"] == 2
    assert report["errors"] == 2
    codes = {failure["subscription_id"]: failure["error_code"] for failure in report["failures"]}
    assert codes == {conflict_id: "CONCURRENT_MODIFICATION", crash_id: "INTERNAL_ERROR"}


@pytest.mark.asyncio
async def test_sweep_skips_when_lock_is_held() -> None:
    lock = await acquire_sweep_lock(JOB_EXPIRATIONS)
    assert lock is not None
    try:
        report = await run_expiration_sweep()
    finally:
        await release_sweep_lock(lock)
    assert report["status"] == "skipped_lock"
    assert report["processed"] == 0


@pytest.mark.asyncio
async def test_daily_jobs_run_both_sweeps() -> None:
    await seed_catalog()
    clock = FixedClock(datetime(2020, 1, 1, 12, 0, tzinfo=timezone.utc))
    manager = SubscriptionLifecycleManager(notifier=RecordingNotifier(), time_provider=clock)
    await _start(manager, "t-old", 3)

    report = await run_daily_trial_jobs()

    assert report["reminders"]["status"] == "ok"
    assert report["expirations"]["converted"] == 1


@pytest.mark.asyncio
async def test_daily_jobs_follow_the_manager_clock() -> None:
    await seed_catalog()
    # Far enough ahead that the wall clock would still see these trials as running.
    clock = FixedClock(datetime(2031, 6, 1, 12, 0, tzinfo=timezone.utc))
    manager = SubscriptionLifecycleManager(notifier=RecordingNotifier(), time_provider=clock)
    subscription_id = await _start(manager, "t-future", 3)
    notifier = RecordingNotifier()

    first = await run_daily_trial_jobs(manager=manager, notifier=notifier)
    clock.advance(days=5)
    second = await run_daily_trial_jobs(manager=manager, notifier=notifier)

    assert first["reminders"]["sent"] == 1
    assert first["expirations"]["processed"] == 0
    assert second["expirations"]["converted"] == 1
    async with SessionLocal() as session:
        stored = await manager.get_subscription(session, subscription_id)
    assert stored.status == "active"
    assert stored.plan_id == "plan_free-tier"


@pytest.mark.asyncio
async def test_trial_cancelled_at_period_end_is_not_reminded_and_ends_cancelled() -> None:
    await seed_catalog()
    clock = FixedClock()
    manager = SubscriptionLifecycleManager(notifier=RecordingNotifier(), time_provider=clock)
    subscription_id = await _start(manager, "t-leaving", 3)
    kept_id = await _start(manager, "t-staying", 3)
    async with SessionLocal() as session:
        await manager.cancel_subscription(session, subscription_id, at_period_end=True)
    notifier = RecordingNotifier()

    reminders = await run_reminder_sweep(now=clock.now, notifier=notifier)
    clock.advance(days=5)
    expirations = await run_expiration_sweep(manager=manager)

    assert reminders["processed"] == 1
    assert [payload["subscription_id"] for _, _, payload in notifier.events(EVENT_TRIAL_REMINDER)] == [kept_id]
    assert expirations["cancelled"] == 1
    assert expirations["converted"] == 1
    async with SessionLocal() as session:
        leaving = await manager.get_subscription(session, subscription_id)
    assert leaving.status == "cancelled"
    assert leaving.plan_id == "plan_starter"
