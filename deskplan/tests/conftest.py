from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway sqlite file before any deskplan module builds it.
_DB_DIR = tempfile.mkdtemp(prefix="deskplan-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/deskplan.db")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("NOTIFY_WEBHOOK_ENABLED", "false")

import pytest  # noqa: E402

from deskplan.core.config import get_settings  # noqa: E402
from deskplan.domain.models import Base  # noqa: E402
from deskplan.persistence.db import engine  # noqa: E402
from deskplan.services.enforcement import reset_limit_enforcer  # noqa: E402
from deskplan.services.lifecycle import reset_lifecycle_manager  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Each test starts from empty tables.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_cached_services() -> None:
    yield
    get_settings.cache_clear()
    reset_lifecycle_manager()
    reset_limit_enforcer()
