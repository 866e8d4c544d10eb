from __future__ import annotations

from datetime import datetime, timezone

import pytest

from deskplan.core.errors import ValidationError
from deskplan.services.lifecycle import add_billing_interval


def test_month_end_is_clamped() -> None:
    start = datetime(2026, 1, 31, 9, 30, tzinfo=timezone.utc)
    assert add_billing_interval(start, "month") == datetime(2026, 2, 28, 9, 30, tzinfo=timezone.utc)


def test_month_rolls_over_year() -> None:
    start = datetime(2026, 12, 15, tzinfo=timezone.utc)
    assert add_billing_interval(start, "month") == datetime(2027, 1, 15, tzinfo=timezone.utc)


def test_yearly_interval_handles_leap_day() -> None:
    start = datetime(2028, 2, 29, tzinfo=timezone.utc)
    assert add_billing_interval(start, "year") == datetime(2029, 2, 28, tzinfo=timezone.utc)


def test_unknown_interval_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        add_billing_interval(datetime(2026, 1, 1, tzinfo=timezone.utc), "week")
    assert exc_info.value.code == "INVALID_BILLING_INTERVAL"
