from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import math
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from deskplan.core.config import get_settings
from deskplan.core.errors import (
    NotFoundError,
    PaymentRequiredError,
    StateConflictError,
    ValidationError,
)
from deskplan.domain.events import (
    PlanChanged,
    Provisioned,
    SubscriptionCancelled,
    TrialCancelled,
    TrialConverted,
    TrialExpired,
    TrialExtended,
    TrialStarted,
)
from deskplan.domain.models import (
    BILLING_INTERVALS,
    LIVE_SUBSCRIPTION_STATUSES,
    SUBSCRIPTION_STATUS_ACTIVE,
    SUBSCRIPTION_STATUS_CANCELLED,
    SUBSCRIPTION_STATUS_TRIAL,
    CustomerSubscription,
    SubscriptionPlan,
)
from deskplan.persistence.repos import plans as plan_repo
from deskplan.persistence.repos import subscriptions as subscription_repo
from deskplan.services.notifier import (
    EVENT_SUBSCRIPTION_CANCELLED,
    EVENT_SUBSCRIPTION_PLAN_CHANGED,
    EVENT_SUBSCRIPTION_PROVISIONED,
    EVENT_TRIAL_CANCELLED,
    EVENT_TRIAL_CONVERTED,
    EVENT_TRIAL_EXPIRED,
    EVENT_TRIAL_EXTENDED,
    EVENT_TRIAL_STARTED,
    Notifier,
    build_notifier,
    notify_safely,
)
from deskplan.services.payments import AcceptingPaymentGateway, PaymentGateway
from deskplan.services.usage import effective_price, normalize_custom_pricing


logger = logging.getLogger(__name__)

OUTCOME_CONVERTED_TO_FREE = "converted_to_free"
OUTCOME_CANCELLED = "cancelled"


@dataclass(frozen=True)
class TrialStatus:
    in_trial: bool
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    days_remaining: int | None = None
    hours_remaining: int | None = None
    has_expired: bool | None = None
    can_convert: bool = False
    can_extend: bool = False


@dataclass(frozen=True)
class ExpiredTrialOutcome:
    subscription: CustomerSubscription
    outcome: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def add_billing_interval(start: datetime, interval: str, count: int = 1) -> datetime:
    # Calendar-aware: Jan 31 + 1 month lands on the last day of February.
    if interval not in BILLING_INTERVALS:
        raise ValidationError(f"Unsupported billing interval: {interval}", code="INVALID_BILLING_INTERVAL")
    months = count * (12 if interval == "year" else 1)
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class SubscriptionLifecycleManager:
    def __init__(
        self,
        *,
        notifier: Notifier | None = None,
        payment_gateway: PaymentGateway | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._notifier = notifier or build_notifier()
        self._payments = payment_gateway or AcceptingPaymentGateway()
        # Allow time injection for deterministic trial-window tests.
        self._time_provider = time_provider or _utc_now

    def now(self) -> datetime:
        return self._time_provider()

    async def get_subscription(self, session: AsyncSession, subscription_id: str) -> CustomerSubscription:
        subscription = await subscription_repo.get_subscription(session, subscription_id)
        if subscription is None:
            raise NotFoundError(
                "Subscription not found",
                code="SUBSCRIPTION_NOT_FOUND",
                details={"subscription_id": subscription_id},
            )
        return subscription

    async def get_tenant_subscription(self, session: AsyncSession, tenant_id: str) -> CustomerSubscription:
        subscription = await subscription_repo.get_live_subscription(session, tenant_id)
        if subscription is None:
            raise NotFoundError(
                "No active subscription for tenant",
                code="SUBSCRIPTION_NOT_FOUND",
                details={"tenant_id": tenant_id},
            )
        return subscription

    async def start_trial(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        plan_slug: str,
        trial_days: int | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> CustomerSubscription:
        plan = await self._require_active_plan(session, plan_slug)
        await self._require_no_live_subscription(session, tenant_id)

        days = plan.trial_days if trial_days is None else trial_days
        if days is None or days <= 0:
            raise ValidationError(
                "Plan does not support trials",
                code="NO_TRIAL_SUPPORT",
                details={"plan_slug": plan_slug, "trial_days": days},
            )

        now = self.now()
        trial_end = now + timedelta(days=days)
        subscription = await subscription_repo.create_subscription(
            session,
            tenant_id=tenant_id,
            plan_id=plan.id,
            status=SUBSCRIPTION_STATUS_TRIAL,
            current_period_start=now,
            current_period_end=trial_end,
            trial_start=now,
            trial_end=trial_end,
            custom_pricing=None,
            event=TrialStarted(
                at=now,
                plan_id=plan.id,
                trial_days=days,
                trial_end=trial_end,
                attributes=attributes or {},
            ),
        )
        logger.info(
            "trial_started tenant_id=%s subscription_id=%s plan_id=%s trial_days=%s trial_end=%s",
            tenant_id,
            subscription.id,
            plan.id,
            days,
            trial_end.isoformat(),
        )
        await notify_safely(
            self._notifier,
            EVENT_TRIAL_STARTED,
            tenant_id,
            {
                "subscription_id": subscription.id,
                "plan_name": plan.name,
                "trial_end": trial_end.isoformat(),
                "days_remaining": days,
            },
        )
        return subscription

    async def provision(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        plan_slug: str,
        custom_pricing: dict[str, Any] | None = None,
    ) -> CustomerSubscription:
        # Direct provisioning skips the trial and starts a paid period immediately.
        custom_pricing = normalize_custom_pricing(custom_pricing)
        plan = await self._require_active_plan(session, plan_slug)
        await self._require_no_live_subscription(session, tenant_id)

        now = self.now()
        period_end = add_billing_interval(now, plan.billing_interval)
        subscription = await subscription_repo.create_subscription(
            session,
            tenant_id=tenant_id,
            plan_id=plan.id,
            status=SUBSCRIPTION_STATUS_ACTIVE,
            current_period_start=now,
            current_period_end=period_end,
            trial_start=None,
            trial_end=None,
            custom_pricing=custom_pricing,
            event=Provisioned(at=now, plan_id=plan.id, custom_pricing=custom_pricing),
        )
        logger.info(
            "subscription_provisioned tenant_id=%s subscription_id=%s plan_id=%s",
            tenant_id,
            subscription.id,
            plan.id,
        )
        await notify_safely(
            self._notifier,
            EVENT_SUBSCRIPTION_PROVISIONED,
            tenant_id,
            {"subscription_id": subscription.id, "plan_name": plan.name},
        )
        return subscription

    async def convert_to_paid(
        self,
        session: AsyncSession,
        subscription_id: str,
        *,
        payment_ref: str,
    ) -> CustomerSubscription:
        subscription = await self.get_subscription(session, subscription_id)
        self._require_status(subscription, SUBSCRIPTION_STATUS_TRIAL, code="NOT_IN_TRIAL")
        now = self.now()
        if subscription.trial_end is not None and now > subscription.trial_end:
            raise StateConflictError(
                "Trial has already expired",
                code="TRIAL_EXPIRED",
                details={
                    "subscription_id": subscription_id,
                    "trial_end": subscription.trial_end.isoformat(),
                },
            )

        plan = await self._require_plan_by_id(session, subscription.plan_id)
        payment = await self._payments.authorize(
            tenant_id=subscription.tenant_id,
            payment_ref=payment_ref,
            amount=effective_price(plan, subscription),
            currency=plan.currency,
        )
        if not payment.success:
            logger.warning(
                "trial_conversion_payment_failed subscription_id=%s message=%s",
                subscription_id,
                payment.message,
            )
            raise PaymentRequiredError(
                payment.message or "Payment was not authorized",
                details={"subscription_id": subscription_id},
            )

        reference = payment.reference or payment_ref
        period_end = add_billing_interval(now, plan.billing_interval)
        updated = await subscription_repo.apply_transition(
            session,
            subscription,
            expected_status=SUBSCRIPTION_STATUS_TRIAL,
            changes={
                "status": SUBSCRIPTION_STATUS_ACTIVE,
                "current_period_start": now,
                "current_period_end": period_end,
                "payment_reference": reference,
            },
            event=TrialConverted(at=now, payment_reference=reference, period_end=period_end),
        )
        logger.info(
            "trial_converted subscription_id=%s tenant_id=%s plan_id=%s",
            subscription_id,
            updated.tenant_id,
            updated.plan_id,
        )
        await notify_safely(
            self._notifier,
            EVENT_TRIAL_CONVERTED,
            updated.tenant_id,
            {
                "subscription_id": subscription_id,
                "plan_name": plan.name,
                "current_period_end": period_end.isoformat(),
                "dashboard_url": f"{get_settings().frontend_url}/dashboard",
            },
        )
        return updated

    async def cancel_trial(
        self,
        session: AsyncSession,
        subscription_id: str,
        *,
        reason: str | None = None,
    ) -> CustomerSubscription:
        subscription = await self.get_subscription(session, subscription_id)
        self._require_status(subscription, SUBSCRIPTION_STATUS_TRIAL, code="NOT_IN_TRIAL")
        now = self.now()
        updated = await subscription_repo.apply_transition(
            session,
            subscription,
            expected_status=SUBSCRIPTION_STATUS_TRIAL,
            changes={"status": SUBSCRIPTION_STATUS_CANCELLED, "cancelled_at": now},
            event=TrialCancelled(at=now, reason=reason),
        )
        logger.info(
            "trial_cancelled subscription_id=%s tenant_id=%s reason=%s",
            subscription_id,
            updated.tenant_id,
            reason,
        )
        await notify_safely(
            self._notifier,
            EVENT_TRIAL_CANCELLED,
            updated.tenant_id,
            {
                "subscription_id": subscription_id,
                "reason": reason or "No reason provided",
                "pricing_url": f"{get_settings().frontend_url}/pricing",
            },
        )
        return updated

    async def extend_trial(
        self,
        session: AsyncSession,
        subscription_id: str,
        *,
        additional_days: int,
        reason: str | None = None,
    ) -> CustomerSubscription:
        max_days = get_settings().trial_extension_max_days
        if additional_days < 1 or additional_days > max_days:
            raise ValidationError(
                f"Additional days must be between 1 and {max_days}",
                code="INVALID_EXTENSION",
                details={"additional_days": additional_days},
            )
        subscription = await self.get_subscription(session, subscription_id)
        self._require_status(subscription, SUBSCRIPTION_STATUS_TRIAL, code="NOT_IN_TRIAL")
        if subscription.trial_end is None:
            raise StateConflictError(
                "Trial end date not found",
                code="TRIAL_END_MISSING",
                details={"subscription_id": subscription_id},
            )

        now = self.now()
        previous_end = subscription.trial_end
        new_trial_end = previous_end + timedelta(days=additional_days)
        updated = await subscription_repo.apply_transition(
            session,
            subscription,
            expected_status=SUBSCRIPTION_STATUS_TRIAL,
            changes={"trial_end": new_trial_end, "current_period_end": new_trial_end},
            event=TrialExtended(
                at=now,
                additional_days=additional_days,
                reason=reason,
                previous_trial_end=previous_end,
                new_trial_end=new_trial_end,
            ),
        )
        logger.info(
            "trial_extended subscription_id=%s additional_days=%s new_trial_end=%s reason=%s",
            subscription_id,
            additional_days,
            new_trial_end.isoformat(),
            reason,
        )
        await notify_safely(
            self._notifier,
            EVENT_TRIAL_EXTENDED,
            updated.tenant_id,
            {
                "subscription_id": subscription_id,
                "additional_days": additional_days,
                "new_trial_end": new_trial_end.isoformat(),
            },
        )
        return updated

    async def process_expired_trial(
        self,
        session: AsyncSession,
        subscription_id: str,
    ) -> ExpiredTrialOutcome:
        # Only the expiration sweep calls this; users never trigger it directly.
        subscription = await self.get_subscription(session, subscription_id)
        self._require_status(subscription, SUBSCRIPTION_STATUS_TRIAL, code="NOT_IN_TRIAL")
        now = self.now()
        if subscription.trial_end is None or subscription.trial_end >= now:
            raise StateConflictError(
                "Trial has not expired yet",
                code="TRIAL_NOT_EXPIRED",
                details={"subscription_id": subscription_id},
            )

        # A trial cancelled at period end ends here; it never falls back to the free tier.
        free_plan: SubscriptionPlan | None = None
        if not subscription.cancel_at_period_end:
            free_plan = await plan_repo.get_free_tier(session)
        if free_plan is not None:
            outcome = OUTCOME_CONVERTED_TO_FREE
            changes: dict[str, Any] = {
                "status": SUBSCRIPTION_STATUS_ACTIVE,
                "plan_id": free_plan.id,
                "custom_pricing": None,
                "current_period_start": now,
                "current_period_end": add_billing_interval(now, free_plan.billing_interval),
            }
            target_plan_id = free_plan.id
        else:
            outcome = OUTCOME_CANCELLED
            changes = {"status": SUBSCRIPTION_STATUS_CANCELLED, "cancelled_at": now}
            target_plan_id = subscription.plan_id

        updated = await subscription_repo.apply_transition(
            session,
            subscription,
            expected_status=SUBSCRIPTION_STATUS_TRIAL,
            changes=changes,
            event=TrialExpired(
                at=now,
                outcome=outcome,
                previous_plan_id=subscription.plan_id,
                plan_id=target_plan_id,
            ),
        )
        logger.info(
            "trial_expired subscription_id=%s tenant_id=%s outcome=%s",
            subscription_id,
            updated.tenant_id,
            outcome,
        )
        settings = get_settings()
        await notify_safely(
            self._notifier,
            EVENT_TRIAL_EXPIRED,
            updated.tenant_id,
            {
                "subscription_id": subscription_id,
                "action": outcome,
                "pricing_url": f"{settings.frontend_url}/pricing",
                "dashboard_url": f"{settings.frontend_url}/dashboard",
            },
        )
        return ExpiredTrialOutcome(subscription=updated, outcome=outcome)

    async def cancel_subscription(
        self,
        session: AsyncSession,
        subscription_id: str,
        *,
        at_period_end: bool = True,
        reason: str | None = None,
    ) -> CustomerSubscription:
        subscription = await self.get_subscription(session, subscription_id)
        if subscription.status == SUBSCRIPTION_STATUS_CANCELLED:
            raise StateConflictError(
                "Subscription is already cancelled",
                code="ALREADY_CANCELLED",
                details={"subscription_id": subscription_id},
            )
        if at_period_end and subscription.cancel_at_period_end:
            raise StateConflictError(
                "Subscription is already scheduled for cancellation",
                code="ALREADY_CANCELLED",
                details={"subscription_id": subscription_id},
            )

        now = self.now()
        if at_period_end:
            changes: dict[str, Any] = {"cancel_at_period_end": True}
        else:
            changes = {"status": SUBSCRIPTION_STATUS_CANCELLED, "cancelled_at": now}
        updated = await subscription_repo.apply_transition(
            session,
            subscription,
            expected_status=LIVE_SUBSCRIPTION_STATUSES,
            changes=changes,
            event=SubscriptionCancelled(at=now, at_period_end=at_period_end, reason=reason),
        )
        logger.info(
            "subscription_cancelled subscription_id=%s at_period_end=%s",
            subscription_id,
            at_period_end,
        )
        await notify_safely(
            self._notifier,
            EVENT_SUBSCRIPTION_CANCELLED,
            updated.tenant_id,
            {
                "subscription_id": subscription_id,
                "at_period_end": at_period_end,
                "current_period_end": updated.current_period_end.isoformat(),
            },
        )
        return updated

    async def change_plan(
        self,
        session: AsyncSession,
        subscription_id: str,
        *,
        plan_slug: str,
    ) -> CustomerSubscription:
        subscription = await self.get_subscription(session, subscription_id)
        if subscription.status == SUBSCRIPTION_STATUS_CANCELLED:
            raise StateConflictError(
                "Cancelled subscriptions cannot change plan",
                code="SUBSCRIPTION_CANCELLED",
                details={"subscription_id": subscription_id},
            )
        target = await self._require_active_plan(session, plan_slug)
        current = await self._require_plan_by_id(session, subscription.plan_id)
        if target.id == current.id or target.price <= effective_price(current, subscription):
            raise ValidationError(
                "Cannot downgrade to a lower or same tier plan",
                code="DOWNGRADE_NOT_ALLOWED",
                details={"current_plan_id": current.id, "plan_slug": plan_slug},
            )

        now = self.now()
        updated = await subscription_repo.apply_transition(
            session,
            subscription,
            expected_status=LIVE_SUBSCRIPTION_STATUSES,
            # Negotiated terms were tied to the previous plan.
            changes={"plan_id": target.id, "custom_pricing": None},
            event=PlanChanged(at=now, previous_plan_id=current.id, plan_id=target.id),
        )
        logger.info(
            "subscription_plan_changed subscription_id=%s from=%s to=%s",
            subscription_id,
            current.id,
            target.id,
        )
        await notify_safely(
            self._notifier,
            EVENT_SUBSCRIPTION_PLAN_CHANGED,
            updated.tenant_id,
            {"subscription_id": subscription_id, "plan_name": target.name},
        )
        return updated

    async def trial_status(self, session: AsyncSession, subscription_id: str) -> TrialStatus:
        subscription = await self.get_subscription(session, subscription_id)
        if subscription.status != SUBSCRIPTION_STATUS_TRIAL or subscription.trial_end is None:
            return TrialStatus(in_trial=False)

        now = self.now()
        remaining_s = (subscription.trial_end - now).total_seconds()
        has_expired = remaining_s < 0
        return TrialStatus(
            in_trial=True,
            trial_start=subscription.trial_start,
            trial_end=subscription.trial_end,
            days_remaining=0 if has_expired else math.ceil(remaining_s / 86400),
            hours_remaining=0 if has_expired else math.ceil(remaining_s / 3600),
            has_expired=has_expired,
            can_convert=not has_expired,
            can_extend=not has_expired,
        )

    async def _require_active_plan(self, session: AsyncSession, plan_slug: str) -> SubscriptionPlan:
        plan = await plan_repo.find_plan_by_slug(session, plan_slug)
        if plan is None or not plan.is_active:
            raise ValidationError(
                "Invalid or inactive subscription plan",
                code="INVALID_PLAN",
                details={"plan_slug": plan_slug},
            )
        return plan

    async def _require_plan_by_id(self, session: AsyncSession, plan_id: str) -> SubscriptionPlan:
        plan = await plan_repo.get_plan(session, plan_id)
        if plan is None:
            raise NotFoundError(
                "Subscription plan not found",
                code="PLAN_NOT_FOUND",
                details={"plan_id": plan_id},
            )
        return plan

    async def _require_no_live_subscription(self, session: AsyncSession, tenant_id: str) -> None:
        existing = await subscription_repo.get_live_subscription(session, tenant_id)
        if existing is not None:
            raise StateConflictError(
                "Tenant already has an active subscription or trial",
                code="ALREADY_SUBSCRIBED",
                details={"tenant_id": tenant_id, "subscription_id": existing.id},
            )

    @staticmethod
    def _require_status(subscription: CustomerSubscription, status: str, *, code: str) -> None:
        if subscription.status != status:
            raise StateConflictError(
                f"Subscription is not in {status} status",
                code=code,
                details={"subscription_id": subscription.id, "status": subscription.status},
            )


_lifecycle_manager: SubscriptionLifecycleManager | None = None


def get_lifecycle_manager() -> SubscriptionLifecycleManager:
    # Cache the manager for reuse across requests and sweep runs.
    global _lifecycle_manager
    if _lifecycle_manager is None:
        _lifecycle_manager = SubscriptionLifecycleManager()
    return _lifecycle_manager


def reset_lifecycle_manager() -> None:
    # Reset cached services for deterministic tests.
    global _lifecycle_manager
    _lifecycle_manager = None
