"""
Recurrence date arithmetic.

Pure functions, no I/O. Every next date is strictly after its anchor (the
last generated date, or the start date before the first generation).

Rules:
- DAILY: anchor + interval days
- WEEKLY / BIWEEKLY: periods of 1 or 2 weeks. With a day_of_week
  (0=Monday .. 6=Sunday), an anchor already on that weekday moves by
  ``interval`` periods; otherwise it moves to the next matching weekday
  plus ``interval - 1`` periods.
- MONTHLY / YEARLY: anchor + interval months / years, landing on the
  preferred day clamped to the month's length. The preferred day is
  day_of_month, the last day for -1, or the start date's day when unset,
  so a Jan 31 schedule visits Feb 28 and returns to Mar 31.
"""

import datetime as dt
from datetime import timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

from ledger_engine.exceptions import ValidationError
from ledger_engine.models.ledger import LAST_DAY_OF_MONTH, RecurrenceFrequency


# relativedelta clamps an absolute day to the month length
_LAST_DAY = 31


def preferred_day(start_date: dt.date, day_of_month: Optional[int]) -> int:
    if day_of_month is None:
        return start_date.day
    if day_of_month == LAST_DAY_OF_MONTH:
        return _LAST_DAY
    return day_of_month


def next_occurrence(
    anchor: dt.date,
    frequency: RecurrenceFrequency,
    interval: int = 1,
    *,
    start_date: Optional[dt.date] = None,
    day_of_month: Optional[int] = None,
    day_of_week: Optional[int] = None,
) -> dt.date:
    """
    First scheduled date strictly after ``anchor``.

    Args:
        anchor: Last generated date, or the start date
        frequency: Recurrence frequency
        interval: Number of periods between occurrences (>= 1)
        start_date: Template start date; its day is the preferred
            day of month when day_of_month is unset (defaults to anchor)
        day_of_month: 1..31, or -1 for the last day of the month
        day_of_week: 0=Monday .. 6=Sunday

    Raises:
        ValidationError: On an interval below 1
    """
    if interval < 1:
        raise ValidationError(f"Interval must be at least 1, got {interval}")

    frequency = RecurrenceFrequency(frequency)

    if frequency == RecurrenceFrequency.DAILY:
        return anchor + timedelta(days=interval)

    if frequency in (RecurrenceFrequency.WEEKLY, RecurrenceFrequency.BIWEEKLY):
        period = timedelta(weeks=1 if frequency == RecurrenceFrequency.WEEKLY else 2)
        if day_of_week is None or anchor.weekday() == day_of_week:
            return anchor + period * interval
        days_ahead = (day_of_week - anchor.weekday()) % 7
        return anchor + timedelta(days=days_ahead) + period * (interval - 1)

    day = preferred_day(start_date or anchor, day_of_month)
    if frequency == RecurrenceFrequency.MONTHLY:
        return anchor + relativedelta(months=interval, day=day)
    return anchor + relativedelta(years=interval, day=day)


def next_for_template(template, anchor: dt.date) -> dt.date:
    """next_occurrence using a template's own schedule fields."""
    return next_occurrence(
        anchor,
        template.frequency,
        template.interval,
        start_date=template.start_date,
        day_of_month=template.day_of_month,
        day_of_week=template.day_of_week,
    )


def occurrences_between(
    template,
    first: dt.date,
    window_end: dt.date,
    limit: int = 366,
) -> list[dt.date]:
    """
    Scheduled dates from ``first`` up to ``window_end`` (inclusive),
    stopping at the template's end_date.
    """
    dates: list[dt.date] = []
    current = first
    while current <= window_end and len(dates) < limit:
        if template.end_date is not None and current > template.end_date:
            break
        dates.append(current)
        current = next_for_template(template, current)
    return dates
