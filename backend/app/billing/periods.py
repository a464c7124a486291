"""Calendar helpers for billing periods and anchor-aligned usage windows.

All datetimes are naive UTC, matching the database columns.
"""

import calendar
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert a Stripe Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by whole calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _fixed_window(anchor: datetime, now: datetime, step: timedelta) -> tuple[datetime, datetime]:
    if now < anchor:
        return anchor, anchor + step
    steps = (now - anchor) // step
    start = anchor + step * steps
    return start, start + step


def _month_window(anchor: datetime, now: datetime, months: int) -> tuple[datetime, datetime]:
    if now < anchor:
        return anchor, add_months(anchor, months)
    elapsed = (now.year - anchor.year) * 12 + (now.month - anchor.month)
    k = max(elapsed // months, 0)
    start = add_months(anchor, k * months)
    # Day clamping can land one step off in either direction.
    while start > now:
        k -= 1
        start = add_months(anchor, k * months)
    end = add_months(anchor, (k + 1) * months)
    while end <= now:
        k += 1
        start, end = end, add_months(anchor, (k + 1) * months)
    return start, end


def window_bounds(
    kind: str, anchor: datetime, now: datetime, interval_months: int = 1
) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` of the ``kind`` window containing ``now``.

    Windows are laid out on a grid starting at the subscription's billing
    anchor, so consecutive windows are contiguous and never overlap.
    """
    if kind == "daily":
        return _fixed_window(anchor, now, timedelta(days=1))
    if kind == "weekly":
        return _fixed_window(anchor, now, timedelta(days=7))
    if kind == "monthly":
        return _month_window(anchor, now, 1)
    if kind == "period":
        return _month_window(anchor, now, interval_months)
    raise ValueError(f"Unknown window kind: {kind}")


def period_start_for(next_billing_date: datetime, interval_months: int) -> datetime:
    """Start of the billing period that ends at ``next_billing_date``."""
    return add_months(next_billing_date, -interval_months)
