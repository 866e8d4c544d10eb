from __future__ import annotations

from datetime import datetime, timedelta, timezone

from deskplan.domain.events import (
    TrialExtended,
    TrialStarted,
    append_event,
    extension_history,
    parse_event_log,
)


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_append_returns_new_list_and_keeps_existing_entries() -> None:
    started = TrialStarted(at=NOW, plan_id="plan_a", trial_days=14, trial_end=NOW + timedelta(days=14))
    log = append_event([], started)
    extended = TrialExtended(
        at=NOW,
        additional_days=7,
        reason="sales call",
        previous_trial_end=NOW + timedelta(days=14),
        new_trial_end=NOW + timedelta(days=21),
    )
    grown = append_event(log, extended)

    assert len(log) == 1
    assert len(grown) == 2
    assert grown[0] == log[0]
    assert grown[1]["kind"] == "trial_extended"


def test_parse_event_log_restores_typed_events() -> None:
    raw = [
        {
            "kind": "trial_started",
            "at": NOW.isoformat(),
            "plan_id": "plan_a",
            "trial_days": 14,
            "trial_end": (NOW + timedelta(days=14)).isoformat(),
        },
        {"kind": "trial_cancelled", "at": NOW.isoformat(), "reason": "too pricey"},
    ]
    events = parse_event_log(raw)
    assert isinstance(events[0], TrialStarted)
    assert events[1].kind == "trial_cancelled"
    assert events[1].cancelled_during_trial is True


def test_extension_history_filters_extensions() -> None:
    log = append_event(
        None,
        TrialStarted(at=NOW, plan_id="plan_a", trial_days=14, trial_end=NOW + timedelta(days=14)),
    )
    for days in (3, 5):
        log = append_event(
            log,
            TrialExtended(
                at=NOW,
                additional_days=days,
                previous_trial_end=NOW,
                new_trial_end=NOW + timedelta(days=days),
            ),
        )
    history = extension_history(log)
    assert [item.additional_days for item in history] == [3, 5]
    assert parse_event_log(None) == []
