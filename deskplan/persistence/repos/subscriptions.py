from __future__ import annotations

from datetime import datetime
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from deskplan.core.errors import StateConflictError
from deskplan.domain.events import SubscriptionEvent, append_event
from deskplan.domain.models import (
    ALERTABLE_SUBSCRIPTION_STATUSES,
    LIVE_SUBSCRIPTION_STATUSES,
    SUBSCRIPTION_STATUS_TRIAL,
    CustomerSubscription,
    TrialReminder,
    UsageAlert,
)


logger = logging.getLogger(__name__)


async def get_subscription(
    session: AsyncSession,
    subscription_id: str,
    *,
    for_update: bool = False,
) -> CustomerSubscription | None:
    stmt = select(CustomerSubscription).where(CustomerSubscription.id == subscription_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_live_subscription(
    session: AsyncSession,
    tenant_id: str,
    *,
    for_update: bool = False,
) -> CustomerSubscription | None:
    # A tenant has at most one trial/active/suspended subscription.
    stmt = (
        select(CustomerSubscription)
        .where(
            CustomerSubscription.tenant_id == tenant_id,
            CustomerSubscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
        )
        .order_by(CustomerSubscription.created_at.desc())
        .limit(1)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def create_subscription(
    session: AsyncSession,
    *,
    tenant_id: str,
    plan_id: str,
    status: str,
    current_period_start: datetime,
    current_period_end: datetime,
    trial_start: datetime | None,
    trial_end: datetime | None,
    custom_pricing: dict[str, Any] | None,
    event: SubscriptionEvent,
) -> CustomerSubscription:
    # Insert and commit in one step; the live-tenant unique index arbitrates races.
    row = CustomerSubscription(
        id=str(uuid4()),
        tenant_id=tenant_id,
        plan_id=plan_id,
        status=status,
        current_period_start=current_period_start,
        current_period_end=current_period_end,
        trial_start=trial_start,
        trial_end=trial_end,
        custom_pricing=custom_pricing,
        metadata_json=append_event([], event),
        version=1,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise StateConflictError(
            "Tenant already has an active subscription or trial",
            code="ALREADY_SUBSCRIBED",
            details={"tenant_id": tenant_id},
        ) from exc
    await session.refresh(row)
    return row


async def apply_transition(
    session: AsyncSession,
    subscription: CustomerSubscription,
    *,
    expected_status: str | tuple[str, ...],
    changes: dict[str, Any],
    event: SubscriptionEvent,
) -> CustomerSubscription:
    # State change, metadata append and version bump land in a single UPDATE.
    # Rollback expires loaded rows, so only these locals are read after it.
    subscription_id = subscription.id
    version = subscription.version
    allowed = (expected_status,) if isinstance(expected_status, str) else expected_status
    values = dict(changes)
    values["metadata_json"] = append_event(subscription.metadata_json, event)
    values["version"] = version + 1
    stmt = (
        update(CustomerSubscription)
        .where(
            CustomerSubscription.id == subscription_id,
            CustomerSubscription.version == version,
            CustomerSubscription.status.in_(allowed),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if (result.rowcount or 0) != 1:
        await session.rollback()
        logger.warning(
            "subscription_write_conflict subscription_id=%s version=%s",
            subscription_id,
            version,
        )
        raise StateConflictError(
            "Subscription was modified concurrently; retry the operation",
            code="CONCURRENT_MODIFICATION",
            details={"subscription_id": subscription_id},
        )
    await session.commit()
    refreshed = await get_subscription(session, subscription_id)
    if refreshed is None:
        raise StateConflictError(
            "Subscription disappeared during update",
            code="CONCURRENT_MODIFICATION",
            details={"subscription_id": subscription_id},
        )
    return refreshed


async def list_expired_trial_ids(session: AsyncSession, *, now: datetime, limit: int) -> list[str]:
    result = await session.execute(
        select(CustomerSubscription.id)
        .where(
            CustomerSubscription.status == SUBSCRIPTION_STATUS_TRIAL,
            CustomerSubscription.trial_end.is_not(None),
            CustomerSubscription.trial_end < now,
        )
        .order_by(CustomerSubscription.trial_end, CustomerSubscription.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_trials_ending_between(
    session: AsyncSession,
    *,
    start: datetime,
    end: datetime,
) -> list[CustomerSubscription]:
    # Inclusive on both ends to mirror start-of-day/end-of-day windows.
    # Trials already cancelled at period end get no conversion reminders.
    result = await session.execute(
        select(CustomerSubscription)
        .where(
            CustomerSubscription.status == SUBSCRIPTION_STATUS_TRIAL,
            CustomerSubscription.cancel_at_period_end.is_(False),
            CustomerSubscription.trial_end >= start,
            CustomerSubscription.trial_end <= end,
        )
        .order_by(CustomerSubscription.trial_end, CustomerSubscription.id)
    )
    return list(result.scalars().all())


async def try_claim_reminder(
    session: AsyncSession,
    *,
    subscription_id: str,
    tenant_id: str,
    trial_end: datetime,
    offset_days: int,
) -> bool:
    return await _insert_claim(
        session,
        TrialReminder(
            subscription_id=subscription_id,
            tenant_id=tenant_id,
            offset_days=offset_days,
            trial_end=trial_end,
        ),
    )


async def release_reminder_claim(
    session: AsyncSession,
    *,
    subscription_id: str,
    trial_end: datetime,
    offset_days: int,
) -> None:
    # Undo a claim whose delivery failed so a rerun of the same sweep retries it.
    await session.execute(
        delete(TrialReminder).where(
            TrialReminder.subscription_id == subscription_id,
            TrialReminder.offset_days == offset_days,
            TrialReminder.trial_end == trial_end,
        )
    )
    await session.commit()


async def list_alertable_subscription_ids(
    session: AsyncSession,
    *,
    after_id: str | None,
    limit: int,
) -> list[str]:
    # Keyset pagination by id keeps long sweeps off OFFSET scans.
    stmt = (
        select(CustomerSubscription.id)
        .where(
            CustomerSubscription.status.in_(ALERTABLE_SUBSCRIPTION_STATUSES))
        .order_by(CustomerSubscription.id)
        .limit(limit)
    )
    if after_id is not None:
        stmt = stmt.where(CustomerSubscription.id > after_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def try_claim_usage_alert(
    session: AsyncSession,
    *,
    subscription_id: str,
    tenant_id: str,
    limit_type: str,
    severity: str,
    period_start: datetime,
) -> bool:
    return await _insert_claim(
        session,
        UsageAlert(
            subscription_id=subscription_id,
            tenant_id=tenant_id,
            limit_type=limit_type,
            severity=severity,
            period_start=period_start,
        ),
    )


async def release_usage_alert_claim(
    session: AsyncSession,
    *,
    subscription_id: str,
    limit_type: str,
    severity: str,
    period_start: datetime,
) -> None:
    await session.execute(
        delete(UsageAlert).where(
            UsageAlert.subscription_id == subscription_id,
            UsageAlert.limit_type == limit_type,
            UsageAlert.severity == severity,
            UsageAlert.period_start == period_start,
        )
    )
    await session.commit()


async def _insert_claim(session: AsyncSession, row: TrialReminder | UsageAlert) -> bool:
    # Insert the dedupe row first; a unique violation means it was already sent.
    session.add(row)
    try:
        await session.commit()
        return True
    except IntegrityError:
        await session.rollback()
        return False
