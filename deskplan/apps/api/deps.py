from __future__ import annotations

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from deskplan.persistence.db import SessionLocal
from deskplan.services.enforcement import LimitEnforcer, get_limit_enforcer
from deskplan.services.lifecycle import SubscriptionLifecycleManager, get_lifecycle_manager


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with SessionLocal() as session:
        yield session


def get_lifecycle() -> SubscriptionLifecycleManager:
    return get_lifecycle_manager()


def get_enforcer() -> LimitEnforcer:
    return get_limit_enforcer()
