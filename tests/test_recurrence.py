from datetime import date

import pytest

from models import BillingCycle
from recurrence import (
    add_months,
    days_in_month,
    month_key,
    months_after_until,
    next_due_date,
    parse_month_key,
)


def test_add_months_clamps_to_month_end():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)


def test_add_months_restores_desired_day():
    assert add_months(date(2025, 2, 28), 1, desired_day=31) == date(2025, 3, 31)


def test_days_in_month_handles_december_and_leap_years():
    assert days_in_month(2025, 12) == 31
    assert days_in_month(2024, 2) == 29


def test_month_keys_round_trip():
    assert month_key(date(2026, 3, 17)) == "2026-03"
    assert parse_month_key("2026-03") == date(2026, 3, 1)
    with pytest.raises(ValueError):
        parse_month_key("2026/03")


def test_months_after_until_excludes_start_and_current_month():
    assert months_after_until(date(2025, 11, 20), date(2026, 2, 3)) == [
        "2025-12",
        "2026-01",
    ]
    assert months_after_until(date(2026, 2, 1), date(2026, 2, 28)) == []


def test_next_due_date_per_cycle():
    anchor = date(2026, 1, 31)
    assert next_due_date(BillingCycle.monthly, anchor, anchor) == date(2026, 2, 28)
    assert next_due_date(BillingCycle.monthly, anchor, date(2026, 2, 28)) == date(
        2026, 3, 31
    )
    assert next_due_date(BillingCycle.yearly, anchor, anchor) == date(2027, 1, 31)
    assert next_due_date(BillingCycle.weekly, anchor, anchor) == date(2026, 2, 7)
    assert next_due_date(BillingCycle.weekly, anchor, date(2026, 1, 1)) == anchor
