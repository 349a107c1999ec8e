"""
Due-date proximity classification.

Classifies a task's expected completion date relative to "now" at
calendar-day granularity, producing the label and colour shown next to the
task on the list and detail pages.
"""

import math
from datetime import date, datetime, time, timedelta
from typing import Optional, Union

from .models import DueDateInfo

ONE_DAY = timedelta(days=1)

OVERDUE_COLOR = "#d32f2f"  # dark red
TODAY_COLOR = "#1976d2"  # blue
UPCOMING_COLOR = "rgba(0, 0, 0, 0.6)"  # grey

DateLike = Union[datetime, date]


def align_to(value: DateLike, reference: datetime) -> datetime:
    """
    Express ``value`` in the same kind of clock as ``reference``.

    Aware values are converted into the reference's timezone (or local time
    when the reference is naive); naive values are taken to already be on the
    reference's wall clock. Plain dates become midnight of that day.
    """
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=reference.tzinfo)
    if value.tzinfo is not None:
        if reference.tzinfo is not None:
            return value.astimezone(reference.tzinfo)
        return value.astimezone().replace(tzinfo=None)
    if reference.tzinfo is not None:
        return value.replace(tzinfo=reference.tzinfo)
    return value


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def classify_due_date(due: Optional[DateLike], now: Optional[datetime] = None) -> Optional[DueDateInfo]:
    """
    Classify ``due`` as overdue, due today or upcoming.

    Both values are normalized to midnight before differencing, so only the
    calendar day matters.

    Args:
        due: Expected completion date, or None
        now: Reference instant, defaults to the current local time

    Returns:
        DueDateInfo with label/color/kind, or None when there is no due date
    """
    if due is None:
        return None
    if now is None:
        now = datetime.now()

    today = start_of_day(now)
    due_day = start_of_day(align_to(due, now))
    diff_days = math.ceil((due_day - today) / ONE_DAY)

    if diff_days < 0:
        overdue = abs(diff_days)
        return DueDateInfo(
            label=f"Overdue by {overdue} {_days(overdue)}",
            color=OVERDUE_COLOR,
            kind="overdue",
        )
    if diff_days == 0:
        return DueDateInfo(label="Due today", color=TODAY_COLOR, kind="today")
    return DueDateInfo(
        label=f"Due in {diff_days} {_days(diff_days)}",
        color=UPCOMING_COLOR,
        kind="upcoming",
    )


def _days(count: int) -> str:
    return "day" if count == 1 else "days"
