from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import BillingCycle


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = desired_day or base.day
    return date(year, month, min(day, days_in_month(year, month)))


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def parse_month_key(key: str) -> date:
    try:
        year_str, month_str = key.split("-")
        return date(int(year_str), int(month_str), 1)
    except (ValueError, AttributeError) as exc:
        raise ValueError(f"Invalid month '{key}', expected YYYY-MM") from exc


def months_after_until(start: date, today: date) -> list[str]:
    """Month keys from the month after ``start`` up to the month before ``today``."""
    keys: list[str] = []
    cursor = add_months(date(start.year, start.month, 1), 1)
    stop = date(today.year, today.month, 1)
    while cursor < stop:
        keys.append(month_key(cursor))
        cursor = add_months(cursor, 1)
    return keys


def next_due_date(cycle: BillingCycle, anchor: date, after: date) -> date:
    if cycle == BillingCycle.weekly:
        if after < anchor:
            return anchor
        weeks = (after - anchor).days // 7 + 1
        return anchor + timedelta(weeks=weeks)
    step = 1 if cycle == BillingCycle.monthly else 12
    due = anchor
    count = 0
    while due <= after:
        count += step
        due = add_months(anchor, count, desired_day=anchor.day)
    return due
