from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Event(BaseModel):
    # Entries are immutable once appended to a subscription's log.
    model_config = ConfigDict(frozen=True)

    at: datetime


class TrialStarted(_Event):
    kind: Literal["trial_started"] = "trial_started"
    plan_id: str
    trial_days: int
    trial_end: datetime
    attributes: dict[str, Any] = Field(default_factory=dict)


class Provisioned(_Event):
    kind: Literal["provisioned"] = "provisioned"
    plan_id: str
    custom_pricing: dict[str, Any] | None = None


class TrialExtended(_Event):
    kind: Literal["trial_extended"] = "trial_extended"
    additional_days: int
    reason: str | None = None
    previous_trial_end: datetime
    new_trial_end: datetime


class TrialCancelled(_Event):
    kind: Literal["trial_cancelled"] = "trial_cancelled"
    cancelled_during_trial: bool = True
    reason: str | None = None


class TrialConverted(_Event):
    kind: Literal["trial_converted"] = "trial_converted"
    payment_reference: str
    period_end: datetime


class TrialExpired(_Event):
    kind: Literal["trial_expired"] = "trial_expired"
    outcome: Literal["converted_to_free", "cancelled"]
    previous_plan_id: str
    plan_id: str


class PlanChanged(_Event):
    kind: Literal["plan_changed"] = "plan_changed"
    previous_plan_id: str
    plan_id: str


class SubscriptionCancelled(_Event):
    kind: Literal["subscription_cancelled"] = "subscription_cancelled"
    at_period_end: bool
    reason: str | None = None


SubscriptionEvent = Annotated[
    Union[
        TrialStarted,
        Provisioned,
        TrialExtended,
        TrialCancelled,
        TrialConverted,
        TrialExpired,
        PlanChanged,
        SubscriptionCancelled,
    ],
    Field(discriminator="kind"),
]

_event_list_adapter: TypeAdapter[list[SubscriptionEvent]] = TypeAdapter(list[SubscriptionEvent])


def parse_event_log(raw: list[dict[str, Any]] | None) -> list[SubscriptionEvent]:
    # Rehydrate the stored JSON log into typed events, oldest first.
    return _event_list_adapter.validate_python(raw or [])


def append_event(raw: list[dict[str, Any]] | None, event: SubscriptionEvent) -> list[dict[str, Any]]:
    # Return a new list; callers must never mutate the stored log in place.
    return [*(raw or []), event.model_dump(mode="json")]


def extension_history(raw: list[dict[str, Any]] | None) -> list[TrialExtended]:
    return [event for event in parse_event_log(raw) if isinstance(event, TrialExtended)]
