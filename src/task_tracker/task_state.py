"""
In-memory task list state for one view session.

Owns the authoritative task list, the active filter and sort, and the
derived filtered+sorted projection. Mutated only by load/upsert/remove
callbacks after successful remote writes; never talks to the store itself.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

from .filters import filter_tasks
from .models import FilterSpec, SortDirection, SortSpec, Task

logger = logging.getLogger(__name__)


def sort_by_due_date(tasks: List[Task], direction: SortDirection) -> List[Task]:
    """
    Stable sort on expected_completion_date.

    Tasks without a due date go last in both directions, keeping their
    relative order.
    """
    if direction == SortDirection.NONE:
        return list(tasks)
    dated = [t for t in tasks if t.expected_completion_date is not None]
    undated = [t for t in tasks if t.expected_completion_date is None]
    dated.sort(
        key=lambda t: t.expected_completion_date.timestamp(),
        reverse=direction == SortDirection.DESC,
    )
    return dated + undated


class TaskListState:
    """
    Projection engine for the task list page.

    Every mutation recomputes ``visible_tasks`` synchronously under a lock,
    so readers never observe a partially rebuilt projection. After
    ``close()`` the state ignores further mutations; request handlers that
    finish after the session ended therefore cannot resurrect it.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.now
        self._lock = threading.RLock()
        self._all: List[Task] = []
        self._filter = FilterSpec()
        self._sort = SortSpec()
        self._visible: List[Task] = []
        self._alive = True
        self.loaded = False

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def all_tasks(self) -> List[Task]:
        with self._lock:
            return list(self._all)

    @property
    def visible_tasks(self) -> List[Task]:
        with self._lock:
            return list(self._visible)

    @property
    def filter_spec(self) -> FilterSpec:
        return self._filter

    @property
    def sort_spec(self) -> SortSpec:
        return self._sort

    def load(self, tasks: List[Task]) -> None:
        """Replace the authoritative list wholesale (initial fetch / refresh)."""
        with self._lock:
            if not self._check_alive("load"):
                return
            self._all = list(tasks)
            self.loaded = True
            self._recompute()

    def upsert(self, task: Task) -> None:
        """Replace the entry with the same id in place, or prepend a new task."""
        with self._lock:
            if not self._check_alive("upsert"):
                return
            for index, existing in enumerate(self._all):
                if existing.id == task.id:
                    self._all[index] = task
                    break
            else:
                self._all.insert(0, task)
            self._recompute()

    def remove(self, task_id: int) -> None:
        with self._lock:
            if not self._check_alive("remove"):
                return
            self._all = [t for t in self._all if t.id != task_id]
            self._recompute()

    def set_filter(self, spec: FilterSpec) -> None:
        with self._lock:
            if not self._check_alive("set_filter"):
                return
            self._filter = spec
            self._recompute()

    def set_sort(self, spec: SortSpec) -> None:
        with self._lock:
            if not self._check_alive("set_sort"):
                return
            self._sort = spec
            self._recompute()

    def close(self) -> None:
        """Tear the state down; later mutation callbacks become no-ops."""
        with self._lock:
            self._alive = False
            self._all = []
            self._visible = []

    def _check_alive(self, operation: str) -> bool:
        if not self._alive:
            logger.debug(f"Ignoring {operation} on closed task list state")
        return self._alive

    def _recompute(self) -> None:
        candidates = filter_tasks(self._all, self._filter, self._clock())
        self._visible = sort_by_due_date(candidates, self._sort.direction)
