"""
Task filter predicate.

Evaluates whether a task satisfies a FilterSpec: every populated dimension
must accept the task's value (AND across dimensions, OR within one). The
time-frame dimension is evaluated against windows anchored at midnight today.
"""

import calendar
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from .dates import align_to, start_of_day
from .models import FilterSpec, Task, TimeFrame


def time_frame_window(frame: TimeFrame, now: datetime):
    """
    Return ``(start, end, end_inclusive)`` for a time frame.

    - today: [midnight today, midnight tomorrow)
    - week:  [midnight today, midnight today + 7 days]
    - month: [midnight today, midnight after the last day of the month)
    """
    today = start_of_day(now)
    if frame == TimeFrame.TODAY:
        return today, today + timedelta(days=1), False
    if frame == TimeFrame.WEEK:
        return today, today + timedelta(days=7), True
    last_day = calendar.monthrange(today.year, today.month)[1]
    month_end = today.replace(day=last_day) + timedelta(days=1)
    return today, month_end, False


def _in_time_frame(due: datetime, frame: TimeFrame, now: datetime) -> bool:
    start, end, inclusive = time_frame_window(frame, now)
    if due < start:
        return False
    return due <= end if inclusive else due < end


def matches_time_frame(task: Task, frames: Iterable[TimeFrame], now: datetime) -> bool:
    """True when the task's due date falls inside any of ``frames``."""
    if task.expected_completion_date is None:
        return False
    due = align_to(task.expected_completion_date, now)
    return any(_in_time_frame(due, frame, now) for frame in frames)


def matches(task: Task, spec: FilterSpec, now: Optional[datetime] = None) -> bool:
    """
    Evaluate whether ``task`` passes every populated dimension of ``spec``.

    A missing task field never satisfies a populated dimension, and a task
    without a due date never satisfies a populated time frame.
    """
    if spec.priority and task.priority not in spec.priority:
        return False
    if spec.size and task.size not in spec.size:
        return False
    if spec.category and task.category not in spec.category:
        return False
    if spec.time_frame:
        if now is None:
            now = datetime.now()
        if not matches_time_frame(task, spec.time_frame, now):
            return False
    return True


def filter_tasks(tasks: Iterable[Task], spec: FilterSpec, now: Optional[datetime] = None) -> List[Task]:
    """Tasks passing ``spec``, in their original order."""
    if now is None:
        now = datetime.now()
    return [task for task in tasks if matches(task, spec, now)]
