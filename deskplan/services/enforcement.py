from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import asyncio
import logging
from typing import Any, AsyncIterator
import weakref

from sqlalchemy.ext.asyncio import AsyncSession

from deskplan.core.config import get_settings
from deskplan.core.errors import DependencyError, LimitExceededError, ValidationError
from deskplan.domain.models import CustomerSubscription, SubscriptionPlan
from deskplan.persistence.repos import plans as plan_repo
from deskplan.persistence.repos import subscriptions as subscription_repo
from deskplan.services.usage import (
    LIMIT_ACTIVE,
    LIMIT_COMPLETED,
    LIMIT_TOTAL,
    PlanLimits,
    UsageAccountant,
    UsagePercentages,
    UsageStats,
    effective_price,
    plan_limits,
    usage_for_type,
    would_exceed,
)


logger = logging.getLogger(__name__)

OPERATION_CREATE = "create"
OPERATION_COMPLETE = "complete"
OPERATIONS = (OPERATION_CREATE, OPERATION_COMPLETE)

SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"

GENERIC_UPGRADE_MESSAGE = "Consider upgrading your plan to get higher limits and avoid interruptions."
FALLBACK_UPGRADE_MESSAGE = "Upgrade your plan to continue using all features without interruption."

_LIMIT_LABELS = {
    LIMIT_ACTIVE: "Active",
    LIMIT_COMPLETED: "Completed",
    LIMIT_TOTAL: "Total",
}


@dataclass(frozen=True)
class LimitEnforcementResult:
    allowed: bool
    reason: str | None = None
    limit_type: str | None = None
    current_usage: UsageStats | None = None
    limits: PlanLimits | None = None
    upgrade_message: str | None = None
    suggested_plans: list[dict[str, Any]] = field(default_factory=list)
    # Set when the decision was fail-open rather than a real allow.
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "limit_type": self.limit_type,
            "current_usage": self.current_usage.to_dict() if self.current_usage else None,
            "limits": self.limits.to_dict() if self.limits else None,
            "upgrade_message": self.upgrade_message,
            "suggested_plans": self.suggested_plans,
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class UsageWarning:
    type: str
    percentage: float
    message: str
    severity: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "percentage": self.percentage,
            "message": self.message,
            "severity": self.severity,
        }


@dataclass(frozen=True)
class UsageWarnings:
    warnings: list[UsageWarning] = field(default_factory=list)
    upgrade_message: str | None = None
    suggested_plans: list[dict[str, Any]] = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_warnings": self.has_warnings,
            "warnings": [warning.to_dict() for warning in self.warnings],
            "upgrade_message": self.upgrade_message,
            "suggested_plans": self.suggested_plans,
        }


def plan_summary(plan: SubscriptionPlan) -> dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.name,
        "slug": plan.slug,
        "price": str(plan.price),
        "currency": plan.currency,
        "billing_interval": plan.billing_interval,
        "limits": plan_limits(plan).to_dict(),
        "features": list(plan.features or []),
    }


def upgrade_message(limit_type: str | None, limits: PlanLimits | None) -> str:
    if limit_type is None or limits is None:
        return FALLBACK_UPGRADE_MESSAGE
    limit = limits.for_type(limit_type)
    if limit_type == LIMIT_ACTIVE:
        return (
            f"You've reached your active ticket limit of {limit}. Upgrade to a higher plan to create "
            "more tickets or complete some existing tickets to free up space."
        )
    if limit_type == LIMIT_COMPLETED:
        return (
            f"You've reached your completed ticket limit of {limit}. Upgrade to a higher plan or "
            "archive some completed tickets to continue."
        )
    if limit_type == LIMIT_TOTAL:
        return (
            f"You've reached your total ticket limit of {limit}. Upgrade to a higher plan to continue "
            "creating and managing tickets."
        )
    return FALLBACK_UPGRADE_MESSAGE


def _first_exceeded(
    usage: UsageStats,
    limits: PlanLimits,
    operation: str,
    count: int,
) -> str | None:
    # Active wins over total when a create would breach both.
    if operation == OPERATION_CREATE:
        candidates = (LIMIT_ACTIVE, LIMIT_TOTAL)
    else:
        candidates = (LIMIT_COMPLETED,)
    for limit_type in candidates:
        if would_exceed(usage_for_type(usage, limit_type), count, limits.for_type(limit_type)):
            return limit_type
    return None


class LimitEnforcer:
    """Admission decisions for ticket mutations against plan quotas.

    Lookups that fail fail open: the caller is allowed through with
    ``degraded=True`` so a store outage never blocks ticket work. Input
    errors fail closed and raise ``ValidationError``.
    """

    def __init__(self, *, accountant: UsageAccountant | None = None) -> None:
        self._accountant = accountant or UsageAccountant()
        self._tenant_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def check_create(self, session: AsyncSession, tenant_id: str) -> LimitEnforcementResult:
        return await self._check(session, tenant_id, OPERATION_CREATE, 1, bulk=False)

    async def check_complete(self, session: AsyncSession, tenant_id: str) -> LimitEnforcementResult:
        return await self._check(session, tenant_id, OPERATION_COMPLETE, 1, bulk=False)

    async def check_bulk(
        self,
        session: AsyncSession,
        tenant_id: str,
        operation: str,
        count: int,
    ) -> LimitEnforcementResult:
        _validate_request(operation, count)
        return await self._check(session, tenant_id, operation, count, bulk=True)

    async def require(
        self,
        session: AsyncSession,
        tenant_id: str,
        operation: str = OPERATION_CREATE,
        count: int = 1,
    ) -> LimitEnforcementResult:
        _validate_request(operation, count)
        result = await self._check(session, tenant_id, operation, count, bulk=count > 1)
        if not result.allowed:
            raise LimitExceededError(
                result.reason or "Subscription limit reached",
                details={
                    "limit_type": result.limit_type,
                    "current_usage": result.current_usage.to_dict() if result.current_usage else None,
                    "limits": result.limits.to_dict() if result.limits else None,
                    "upgrade_message": result.upgrade_message,
                    "suggested_plans": result.suggested_plans,
                },
            )
        return result

    @asynccontextmanager
    async def admit(
        self,
        session: AsyncSession,
        tenant_id: str,
        operation: str = OPERATION_CREATE,
        count: int = 1,
    ) -> AsyncIterator[LimitEnforcementResult]:
        """Hold the tenant's admission slot while the caller mutates tickets.

        Check-then-act is serialized per tenant: concurrent admissions for the
        same tenant wait on an in-process lock, and on PostgreSQL the live
        subscription row is also locked ``FOR UPDATE`` so other processes
        queue behind this transaction. The caller commits inside the block.
        """
        _validate_request(operation, count)
        lock = self._tenant_locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._tenant_locks[tenant_id] = lock
        async with lock:
            if _is_postgresql(session):
                await subscription_repo.get_live_subscription(session, tenant_id, for_update=True)
            result = await self.require(session, tenant_id, operation, count)
            yield result

    async def suggested_plans(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        subscription: CustomerSubscription | None = None,
        plan: SubscriptionPlan | None = None,
    ) -> list[dict[str, Any]]:
        active = await plan_repo.list_active_plans(session)
        if subscription is None:
            subscription = await subscription_repo.get_live_subscription(session, tenant_id)
        if subscription is None:
            return [plan_summary(item) for item in sorted(active, key=lambda item: item.price)]
        if plan is None:
            plan = await plan_repo.get_plan(session, subscription.plan_id)
        if plan is None:
            return [plan_summary(item) for item in sorted(active, key=lambda item: item.price)]
        current_price = effective_price(plan, subscription)
        upgrades = [item for item in active if item.price > current_price and item.id != plan.id]
        return [plan_summary(item) for item in sorted(upgrades, key=lambda item: item.price)]

    async def usage_warnings(self, session: AsyncSession, tenant_id: str) -> UsageWarnings:
        try:
            context = await self._load(session, tenant_id)
            if context is None:
                return UsageWarnings()
            subscription, plan, usage, limits = context
            warnings = build_usage_warnings(usage, limits, self._accountant.percentage_used(usage, limits))
            if not warnings:
                return UsageWarnings()
            suggestions = await self.suggested_plans(session, tenant_id, subscription=subscription, plan=plan)
        except Exception as exc:  # noqa: BLE001 - warnings are advisory
            logger.warning("usage_warnings_failed tenant_id=%s", tenant_id, exc_info=exc)
            return UsageWarnings()
        return UsageWarnings(
            warnings=warnings,
            upgrade_message=GENERIC_UPGRADE_MESSAGE,
            suggested_plans=suggestions,
        )

    async def enforcement_status(self, session: AsyncSession, tenant_id: str) -> dict[str, Any]:
        empty_usage = UsageStats()
        try:
            context = await self._load(session, tenant_id)
            if context is None:
                usage = await self._accountant.current_usage(session, tenant_id)
                return {
                    "tenant_id": tenant_id,
                    "has_subscription": False,
                    "can_create": True,
                    "can_complete": True,
                    "has_unlimited_plan": False,
                    "current_usage": usage.to_dict(),
                    "limits": None,
                    "percentage_used": UsagePercentages(0.0, 0.0, 0.0).to_dict(),
                    "warnings": [],
                }
            _, _, usage, limits = context
            percentages = self._accountant.percentage_used(usage, limits)
            warnings = build_usage_warnings(usage, limits, percentages)
        except Exception as exc:  # noqa: BLE001 - dashboard view falls back to safe defaults
            logger.warning("enforcement_status_failed tenant_id=%s", tenant_id, exc_info=exc)
            return {
                "tenant_id": tenant_id,
                "has_subscription": False,
                "can_create": True,
                "can_complete": True,
                "has_unlimited_plan": False,
                "current_usage": empty_usage.to_dict(),
                "limits": None,
                "percentage_used": UsagePercentages(0.0, 0.0, 0.0).to_dict(),
                "warnings": [],
                "degraded": True,
            }
        return {
            "tenant_id": tenant_id,
            "has_subscription": True,
            "can_create": _first_exceeded(usage, limits, OPERATION_CREATE, 1) is None,
            "can_complete": _first_exceeded(usage, limits, OPERATION_COMPLETE, 1) is None,
            "has_unlimited_plan": limits.is_unlimited,
            "current_usage": usage.to_dict(),
            "limits": limits.to_dict(),
            "percentage_used": percentages.to_dict(),
            "warnings": [warning.to_dict() for warning in warnings],
        }

    async def _load(
        self,
        session: AsyncSession,
        tenant_id: str,
    ) -> tuple[CustomerSubscription, SubscriptionPlan, UsageStats, PlanLimits] | None:
        subscription = await subscription_repo.get_live_subscription(session, tenant_id)
        if subscription is None:
            return None
        plan = await plan_repo.get_plan(session, subscription.plan_id)
        if plan is None:
            raise DependencyError(
                "Plan for subscription is missing from the catalog",
                details={"subscription_id": subscription.id, "plan_id": subscription.plan_id},
            )
        usage = await self._accountant.current_usage(session, tenant_id)
        return subscription, plan, usage, plan_limits(plan, subscription)

    async def _check(
        self,
        session: AsyncSession,
        tenant_id: str,
        operation: str,
        count: int,
        *,
        bulk: bool,
    ) -> LimitEnforcementResult:
        try:
            async with _isolated_lookups(session):
                context = await self._load(session, tenant_id)
                if context is None:
                    logger.info("enforcement_no_subscription tenant_id=%s operation=%s", tenant_id, operation)
                    return LimitEnforcementResult(allowed=True)
                subscription, plan, usage, limits = context
                if limits.is_unlimited:
                    return LimitEnforcementResult(allowed=True, current_usage=usage, limits=limits)
                limit_type = _first_exceeded(usage, limits, operation, count)
                if limit_type is None:
                    return LimitEnforcementResult(allowed=True, current_usage=usage, limits=limits)
                suggestions = await self.suggested_plans(
                    session, tenant_id, subscription=subscription, plan=plan
                )
        except Exception as exc:  # noqa: BLE001 - enforcement fails open
            logger.warning(
                "enforcement_fail_open tenant_id=%s operation=%s count=%s",
                tenant_id,
                operation,
                count,
                exc_info=exc,
            )
            return LimitEnforcementResult(allowed=True, degraded=True)

        reason = _denial_reason(limit_type, usage, limits, operation, count, bulk=bulk)
        logger.info(
            "enforcement_limit_denied tenant_id=%s operation=%s count=%s limit_type=%s used=%s limit=%s",
            tenant_id,
            operation,
            count,
            limit_type,
            usage_for_type(usage, limit_type),
            limits.for_type(limit_type),
        )
        return LimitEnforcementResult(
            allowed=False,
            reason=reason,
            limit_type=limit_type,
            current_usage=usage,
            limits=limits,
            upgrade_message=upgrade_message(limit_type, limits),
            suggested_plans=suggestions,
        )


def _validate_request(operation: str, count: int) -> None:
    if operation not in OPERATIONS:
        raise ValidationError(
            f"Unsupported operation: {operation}",
            code="INVALID_OPERATION",
            details={"operation": operation, "allowed": list(OPERATIONS)},
        )
    if count < 1:
        raise ValidationError(
            "Count must be at least 1",
            code="INVALID_COUNT",
            details={"count": count},
        )


def _is_postgresql(session: AsyncSession) -> bool:
    bind = session.get_bind()
    return bind.dialect.name == "postgresql"


@asynccontextmanager
async def _isolated_lookups(session: AsyncSession) -> AsyncIterator[None]:
    # A failed statement aborts the whole PostgreSQL transaction; the savepoint
    # keeps the caller's transaction usable after a fail-open decision.
    if not _is_postgresql(session):
        yield
        return
    async with session.begin_nested():
        yield


def _denial_reason(
    limit_type: str,
    usage: UsageStats,
    limits: PlanLimits,
    operation: str,
    count: int,
    *,
    bulk: bool,
) -> str:
    label = _LIMIT_LABELS[limit_type]
    limit = limits.for_type(limit_type)
    if not bulk:
        return f"{label} ticket limit reached ({limit})"
    verb = "complete" if operation == OPERATION_COMPLETE else "add"
    return (
        f"Bulk operation would exceed {label.lower()} ticket limit. "
        f"Current: {usage_for_type(usage, limit_type)}, Limit: {limit}, Attempting to {verb}: {count}"
    )


def build_usage_warnings(
    usage: UsageStats,
    limits: PlanLimits,
    percentages: UsagePercentages,
) -> list[UsageWarning]:
    settings = get_settings()
    warnings: list[UsageWarning] = []
    for limit_type in (LIMIT_ACTIVE, LIMIT_COMPLETED, LIMIT_TOTAL):
        percentage = percentages.for_type(limit_type)
        if percentage < settings.usage_warning_pct:
            continue
        severity = SEVERITY_CRITICAL if percentage >= settings.usage_critical_pct else SEVERITY_WARNING
        warnings.append(
            UsageWarning(
                type=limit_type,
                percentage=percentage,
                message=(
                    f"You're using {round(percentage)}% of your {limit_type} ticket limit "
                    f"({usage_for_type(usage, limit_type)}/{limits.for_type(limit_type)})"
                ),
                severity=severity,
            )
        )
    return warnings


_limit_enforcer: LimitEnforcer | None = None


def get_limit_enforcer() -> LimitEnforcer:
    # Share per-tenant admission locks across requests in this process.
    global _limit_enforcer
    if _limit_enforcer is None:
        _limit_enforcer = LimitEnforcer()
    return _limit_enforcer


def reset_limit_enforcer() -> None:
    # Reset cached services for deterministic tests.
    global _limit_enforcer
    _limit_enforcer = None
