from __future__ import annotations

import pytest

from deskplan.core.config import get_settings
from deskplan.persistence.db import SessionLocal
from deskplan.services.lifecycle import SubscriptionLifecycleManager
from deskplan.services.notifier import EVENT_USAGE_WARNING
from deskplan.services.sweeps import (
    JOB_USAGE_ALERTS,
    acquire_sweep_lock,
    release_sweep_lock,
    run_usage_alert_sweep,
)
from deskplan.services.usage import UsageAccountant
from deskplan.tests.utils.fixtures import (
    FailingNotifier,
    FixedClock,
    RecordingNotifier,
    seed_catalog,
    seed_tickets,
)


def _manager() -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(notifier=RecordingNotifier(), time_provider=FixedClock())


async def _provision(tenant_id: str, plan_slug: str = "starter") -> str:
    async with SessionLocal() as session:
        row = await _manager().provision(session, tenant_id=tenant_id, plan_slug=plan_slug)
    return row.id


@pytest.mark.asyncio
async def test_usage_alert_sent_once_per_threshold() -> None:
    await seed_catalog()
    subscription_id = await _provision("t-1")
    await seed_tickets("t-1", active=4)
    notifier = RecordingNotifier()

    first = await run_usage_alert_sweep(notifier=notifier)
    rerun = await run_usage_alert_sweep(notifier=notifier)

    assert first == {"status": "ok", "processed": 1, "sent": 1, "skipped": 0, "errors": 0}
    assert rerun == {"status": "ok", "processed": 1, "sent": 0, "skipped": 1, "errors": 0}
    [(_, tenant_id, payload)] = notifier.events(EVENT_USAGE_WARNING)
    assert tenant_id == "t-1"
    assert payload["subscription_id"] == subscription_id
    assert payload["limit_type"] == "active"
    assert payload["severity"] == "warning"
    assert payload["percentage"] == 80
    assert payload["current_usage"] == 4
    assert payload["limit"] == 5
    assert payload["upgrade_url"].endswith("/subscription/upgrade")


@pytest.mark.asyncio
async def test_crossing_critical_sends_a_second_alert() -> None:
    await seed_catalog()
    await _provision("t-1")
    await seed_tickets("t-1", active=4)
    notifier = RecordingNotifier()
    await run_usage_alert_sweep(notifier=notifier)

    await seed_tickets("t-1", active=1)
    report = await run_usage_alert_sweep(notifier=notifier)

    assert report["sent"] == 1
    assert [payload["severity"] for _, _, payload in notifier.events(EVENT_USAGE_WARNING)] == [
        "warning",
        "critical",
    ]


@pytest.mark.asyncio
async def test_each_quota_dimension_alerts_separately() -> None:
    await seed_catalog()
    await _provision("t-1")
    await seed_tickets("t-1", active=4, completed=46)
    notifier = RecordingNotifier()

    report = await run_usage_alert_sweep(notifier=notifier)

    assert report["sent"] == 2
    alerts = {payload["limit_type"]: payload["severity"] for _, _, payload in notifier.events(EVENT_USAGE_WARNING)}
    assert alerts == {"active": "warning", "completed": "critical"}


@pytest.mark.asyncio
async def test_failed_usage_alert_is_retried_on_rerun() -> None:
    await seed_catalog()
    await _provision("t-1")
    await seed_tickets("t-1", active=5)
    failing = FailingNotifier()

    failed = await run_usage_alert_sweep(notifier=failing)
    retried = await run_usage_alert_sweep(notifier=RecordingNotifier())

    assert failing.attempts == 1
    assert failed["errors"] == 1
    assert failed["sent"] == 0
    assert retried["sent"] == 1


@pytest.mark.asyncio
async def test_unlimited_and_ended_subscriptions_are_not_alerted() -> None:
    await seed_catalog()
    await _provision("t-big", plan_slug="enterprise")
    await seed_tickets("t-big", active=500, completed=500)
    gone_id = await _provision("t-gone")
    async with SessionLocal() as session:
        await _manager().cancel_subscription(session, gone_id, at_period_end=False)
    await seed_tickets("t-gone", active=5)
    notifier = RecordingNotifier()

    report = await run_usage_alert_sweep(notifier=notifier)

    assert report == {"status": "ok", "processed": 1, "sent": 0, "skipped": 0, "errors": 0}
    assert notifier.events(EVENT_USAGE_WARNING) == []


@pytest.mark.asyncio
async def test_usage_alert_sweep_pages_and_survives_lookup_errors(monkeypatch) -> None:
    monkeypatch.setenv("SWEEP_BATCH_SIZE", "1")
    get_settings.cache_clear()
    await seed_catalog()
    for tenant_id in ("t-a", "t-b", "t-c"):
        await _provision(tenant_id)
        await seed_tickets(tenant_id, active=4)
    original = UsageAccountant.current_usage

    async def _flaky(self, session, tenant_id):  # noqa: ANN001
        if tenant_id == "t-b":
            raise RuntimeError("usage store offline")
        return await original(self, session, tenant_id)

    monkeypatch.setattr(UsageAccountant, "current_usage", _flaky)
    notifier = RecordingNotifier()
    report = await run_usage_alert_sweep(notifier=notifier)

    assert report == {"status": "ok", "processed": 3, "sent": 2, "skipped": 0, "errors": 1}
    assert sorted(tenant_id for _, tenant_id, _ in notifier.events(EVENT_USAGE_WARNING)) == ["t-a", "t-c"]


@pytest.mark.asyncio
async def test_usage_alert_sweep_skips_when_lock_is_held() -> None:
    lock = await acquire_sweep_lock(JOB_USAGE_ALERTS)
    assert lock is not None
    try:
        report = await run_usage_alert_sweep(notifier=RecordingNotifier())
    finally:
        await release_sweep_lock(lock)
    assert report["status"] == "skipped_lock"
    assert report["sent"] == 0
