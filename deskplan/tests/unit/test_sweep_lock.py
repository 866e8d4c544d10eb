from __future__ import annotations

from datetime import datetime, timezone

import pytest

from deskplan.services import sweeps as sweeps_module
from deskplan.services.sweeps import (
    JOB_EXPIRATIONS,
    JOB_REMINDERS,
    acquire_sweep_lock,
    release_sweep_lock,
    reminder_window,
)


class _FakeRedis:
    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):  # noqa: ANN001
        if nx and key in self._values:
            return False
        self._values[key] = str(value)
        return True

    async def get(self, key: str):  # noqa: ANN001
        return self._values.get(key)

    async def delete(self, key: str) -> int:
        return 1 if self._values.pop(key, None) is not None else 0


@pytest.mark.asyncio
async def test_distributed_lock_single_owner(monkeypatch) -> None:
    redis = _FakeRedis()

    async def _redis():  # type: ignore[override]
        return redis

    monkeypatch.setattr(sweeps_module, "get_sweep_redis", _redis)
    lock_one = await acquire_sweep_lock(JOB_EXPIRATIONS)
    lock_two = await acquire_sweep_lock(JOB_EXPIRATIONS)
    other_job = await acquire_sweep_lock(JOB_REMINDERS)
    assert lock_one is not None
    assert lock_two is None
    assert other_job is not None
    await release_sweep_lock(lock_one)
    lock_three = await acquire_sweep_lock(JOB_EXPIRATIONS)
    assert lock_three is not None
    await release_sweep_lock(lock_three)
    await release_sweep_lock(other_job)


@pytest.mark.asyncio
async def test_release_does_not_clobber_new_owner(monkeypatch) -> None:
    redis = _FakeRedis()

    async def _redis():  # type: ignore[override]
        return redis

    monkeypatch.setattr(sweeps_module, "get_sweep_redis", _redis)
    stale = await acquire_sweep_lock(JOB_REMINDERS)
    assert stale is not None
    # Simulate TTL expiry followed by another worker taking the lock.
    await redis.delete(sweeps_module.sweep_lock_key(JOB_REMINDERS))
    fresh = await acquire_sweep_lock(JOB_REMINDERS)
    assert fresh is not None
    await release_sweep_lock(stale)
    assert await redis.get(sweeps_module.sweep_lock_key(JOB_REMINDERS)) == fresh.token


@pytest.mark.asyncio
async def test_local_lock_fallback_without_redis() -> None:
    # REDIS_ENABLED=false in tests, so the in-process lock is used.
    lock = await acquire_sweep_lock(JOB_REMINDERS)
    assert lock is not None and lock.local
    assert await acquire_sweep_lock(JOB_REMINDERS) is None
    await release_sweep_lock(lock)
    again = await acquire_sweep_lock(JOB_REMINDERS)
    assert again is not None
    await release_sweep_lock(again)


def test_reminder_window_uses_calendar_day_in_zone() -> None:
    now = datetime(2026, 3, 10, 23, 30, tzinfo=timezone.utc)
    start, end = reminder_window(now, 3, "UTC")
    assert start == datetime(2026, 3, 13, 0, 0, tzinfo=timezone.utc)
    assert end.date() == start.date()
    assert end.hour == 23 and end.minute == 59

    # 23:30 UTC is already 2026-03-11 in Tokyo (UTC+9).
    start_tokyo, end_tokyo = reminder_window(now, 3, "Asia/Tokyo")
    assert start_tokyo == datetime(2026, 3, 13, 15, 0, tzinfo=timezone.utc)
    assert end_tokyo < datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)
