"""Calendar arithmetic for automation frequencies."""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from typing import Optional

from ..models import Frequency

_DAY_STEPS = {
    Frequency.DAILY: 1,
    Frequency.WEEKLY: 7,
    Frequency.BIWEEKLY: 14,
}

_MONTH_STEPS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
}


def add_months(moment: datetime, months: int) -> datetime:
    """Shift ``moment`` by whole calendar months, clamping to the month end.

    >>> add_months(datetime(2024, 1, 31), 1)
    datetime.datetime(2024, 2, 29, 0, 0)
    """

    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_execution(frequency: Frequency, from_time: datetime) -> datetime:
    """Return the run that follows ``from_time`` for ``frequency``."""

    frequency = Frequency(frequency)
    if frequency in _DAY_STEPS:
        return from_time + timedelta(days=_DAY_STEPS[frequency])
    return add_months(from_time, _MONTH_STEPS[frequency])


def first_execution(
    frequency: Optional[Frequency],
    start_date: datetime,
    created_at: datetime,
) -> datetime:
    """Return the first scheduled run for a new automation.

    Recurring automations fire one period after ``start_date`` and are rolled
    forward by whole periods until they are not earlier than ``created_at``.
    One-shot automations fire at ``start_date`` or immediately if it has passed.
    """

    if frequency is None:
        return max(start_date, created_at)
    candidate = roll_forward(frequency, start_date, created_at)
    if candidate == start_date:
        return next_execution(frequency, start_date)
    return candidate


def roll_forward(frequency: Frequency, anchor: datetime, not_before: datetime) -> datetime:
    """Return the first slot on ``anchor``'s cadence that is not earlier than ``not_before``."""

    candidate = anchor
    periods = 0
    while candidate < not_before:
        periods += 1
        # Recompute from the anchor so month-end clamping does not drift.
        candidate = _nth_execution(frequency, anchor, periods)
    return candidate


def _nth_execution(frequency: Frequency, anchor: datetime, periods: int) -> datetime:
    if frequency in _DAY_STEPS:
        return anchor + timedelta(days=_DAY_STEPS[frequency] * periods)
    return add_months(anchor, _MONTH_STEPS[frequency] * periods)


def retry_delay(failure_count: int, base_delay_seconds: float) -> timedelta:
    """Exponential backoff: ``base × 2^(failure_count − 1)``."""

    exponent = max(failure_count - 1, 0)
    return timedelta(seconds=base_delay_seconds * (2**exponent))
