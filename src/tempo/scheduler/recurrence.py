"""Next-occurrence arithmetic for repeat policies. All times are UTC."""

from __future__ import annotations

import calendar
from datetime import datetime

from tempo.scheduler.models import RepeatKind, RepeatPolicy


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_occurrence(
    anchor: datetime,
    repeat: RepeatPolicy,
    reference_now: datetime,
    last_run: datetime | None = None,
) -> datetime | None:
    """Return the next due time after ``reference_now``, or None when exhausted.

    Recurring policies return the first slot ``anchor + k * step`` (k >= 0)
    strictly after ``reference_now``, so a late scheduler skips missed slots
    instead of replaying them. A one-shot returns its anchor until it has run.
    """
    if reference_now < anchor:
        return anchor

    if repeat.kind == RepeatKind.NONE:
        if last_run is None or last_run < anchor:
            return anchor
        return None

    if repeat.kind == RepeatKind.MONTHLY:
        # Always count from the anchor so a clamped day (31 -> 30) recovers.
        k = max(
            (reference_now.year - anchor.year) * 12 + reference_now.month - anchor.month, 0
        )
        candidate = add_months(anchor, k)
        while candidate <= reference_now:
            k += 1
            candidate = add_months(anchor, k)
        return candidate

    step = repeat.step
    assert step is not None
    k = (reference_now - anchor) // step + 1
    return anchor + k * step


def initial_run(anchor: datetime, repeat: RepeatPolicy, now: datetime) -> datetime | None:
    """First ``next_run_at`` for a record that has never run.

    A future anchor is used as-is. A past one-shot anchor is due immediately;
    a past recurring anchor advances to its next slot.
    """
    if anchor > now:
        return anchor
    if repeat.kind == RepeatKind.NONE:
        return anchor
    return next_occurrence(anchor, repeat, now)
