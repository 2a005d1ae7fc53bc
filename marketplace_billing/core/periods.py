"""
Calendar arithmetic for billing periods.

Month arithmetic clamps to the last valid day of the target month. A
contract keeps an anchor day, so billing on the 31st moves to Feb 28/29
and back to the 31st without drifting.
"""

import calendar
from datetime import date, datetime
from typing import Optional, Tuple, Union

DateLike = Union[date, datetime]

SECONDS_PER_DAY = 86400


def is_leap_year(year: int) -> bool:
    return (year % 4 == 0 and year % 100 != 0) or year % 400 == 0


def days_in_month(year: int, month: int) -> int:
    """Number of days in a month (month is 1-12)."""
    if month < 1 or month > 12:
        raise ValueError(f"month must be between 1 and 12, got {month}")
    return calendar.monthrange(year, month)[1]


def is_last_day_of_month(value: DateLike) -> bool:
    return value.day == days_in_month(value.year, value.month)


def add_months(value: DateLike, months: int, anchor_day: Optional[int] = None) -> DateLike:
    """Shift a date by whole months, clamping the day to the target month.

    The day used is min(anchor_day or the original day, last day of the
    target month). Year boundaries roll over in both directions and the
    time of day is preserved for datetimes.
    """
    month_index = value.year * 12 + (value.month - 1) + months
    year, month_zero = divmod(month_index, 12)
    month = month_zero + 1
    target_day = anchor_day if anchor_day else value.day
    day = min(target_day, days_in_month(year, month))
    return value.replace(year=year, month=month, day=day)


def add_years(value: DateLike, years: int) -> DateLike:
    """Shift a date by whole years (Feb 29 clamps to Feb 28)."""
    return add_months(value, years * 12)


def normalize_month_end_date(value: DateLike, target_month: int, target_year: int) -> DateLike:
    """Move a date into another month keeping month-end semantics.

    A date on the last day of its month becomes the last day of the target
    month. Any other date keeps its day, clamped to the target month.
    """
    last_day_of_target = days_in_month(target_year, target_month)
    if is_last_day_of_month(value):
        day = last_day_of_target
    else:
        day = min(value.day, last_day_of_target)
    return value.replace(year=target_year, month=target_month, day=day)


def days_between_inclusive(start: DateLike, end: DateLike) -> int:
    """Inclusive day count: floor((end - start) in days) + 1."""
    delta = as_datetime(end) - as_datetime(start)
    return int(delta.total_seconds() // SECONDS_PER_DAY) + 1


def billing_period_for(
    next_billing: Optional[DateLike],
    effective_date: DateLike,
) -> Tuple[DateLike, DateLike, bool]:
    """Compute the billing period that ends at a contract's next billing date.

    Args:
        next_billing: The contract's next billing date, may be None
        effective_date: The run's reference date, used when the contract
            has no usable next billing date

    Returns:
        (period_start, period_end, used_fallback). period_start is one
        calendar month before period_end, clamped to the earlier month's
        last day when that day does not exist there.
    """
    used_fallback = not isinstance(next_billing, (date, datetime))
    period_end = effective_date if used_fallback else next_billing
    period_start = add_months(period_end, -1)
    return period_start, period_end, used_fallback


def next_billing_date(effective_date: DateLike, anchor_day: Optional[int] = None) -> DateLike:
    """Next billing date after a successful run: one clamped month later."""
    return add_months(effective_date, 1, anchor_day=anchor_day)


def as_datetime(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)
