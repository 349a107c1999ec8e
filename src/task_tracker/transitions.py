"""
Explicit status transition table.

Maps ``(current_status, requested_status)`` to the resulting status and the
timestamp side effects of the move, so the workflow rules can be tested
without any store or HTTP layer.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Tuple

from .models import Task, TaskStatus


@dataclass(frozen=True)
class Transition:
    """Effect of requesting a status."""

    status: TaskStatus
    touch_started: bool  # set started_at, only if it is still unset
    touch_completed: bool  # set completed_at, overwriting any previous value
    changed: bool


def _build_table() -> Dict[Tuple[TaskStatus, TaskStatus], Transition]:
    table = {}
    for current in TaskStatus:
        for requested in TaskStatus:
            changed = current != requested
            table[(current, requested)] = Transition(
                status=requested,
                touch_started=changed and requested == TaskStatus.IN_PROGRESS,
                touch_completed=changed and requested == TaskStatus.COMPLETED,
                changed=changed,
            )
    return table


STATUS_TRANSITIONS: Dict[Tuple[TaskStatus, TaskStatus], Transition] = _build_table()


def lookup(current: TaskStatus, requested: TaskStatus) -> Transition:
    return STATUS_TRANSITIONS[(TaskStatus(current), TaskStatus(requested))]


def apply_transition(task: Task, requested: TaskStatus, now: datetime) -> Dict[str, Any]:
    """
    Column patch for moving ``task`` to ``requested``.

    Returns an empty dict when the request does not change the status.
    """
    transition = lookup(task.status, requested)
    if not transition.changed:
        return {}

    patch: Dict[str, Any] = {"status": transition.status}
    if transition.touch_started and task.started_at is None:
        patch["started_at"] = now
    if transition.touch_completed:
        patch["completed_at"] = now
    return patch
