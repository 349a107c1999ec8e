"""
Task Remote Gateway

Translates task CRUD intents into record-store writes followed by the
matching history-log appends. Every read and write is scoped by both the
record id and the signed-in user's id; a write that matches zero rows
(another owner's task, or one already deleted) is reported as "nothing
changed" by returning None rather than raising.

The primary write and its history append are not wrapped in a transaction.
If the history insert fails after the write succeeded, HistoryWriteError is
raised carrying the written task, and the write stays applied.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from .auth import User
from .models import (
    Comment,
    HistoryAction,
    Task,
    TaskDraft,
    TaskHistoryRecord,
    TaskPatch,
    TaskStatus,
)
from .store import RecordStore, RecordStoreError
from .transitions import apply_transition

logger = logging.getLogger(__name__)

STATUS_UPDATE_ATTEMPTS = 3


class HistoryWriteError(Exception):
    """The primary write succeeded but its history record could not be appended."""

    def __init__(self, message: str, task: Optional[Task] = None):
        super().__init__(message)
        self.task = task


class StaleTaskError(Exception):
    """The task changed since the caller's snapshot; nothing was written."""


class StatusUpdate(NamedTuple):
    """Task after a status request; ``changed`` is False when it was already there."""

    task: Task
    changed: bool


def stringify(value: Any) -> str:
    """Render a field value for the history log; empty string for unset."""
    if value is None:
        return ""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class TaskRemoteGateway:
    """One operation per mutation kind, all scoped to ``user``."""

    def __init__(self, store: RecordStore, user: User, clock: Optional[Callable[[], datetime]] = None):
        self._store = store
        self.user = user
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # Reads

    def list_tasks(self) -> List[Task]:
        """All of the user's tasks, newest first."""
        rows = (
            self._store.table("tasks")
            .eq("user_id", self.user.id)
            .order("created_at", ascending=False)
            .order("id", ascending=False)
            .select()
        )
        return [Task(**row) for row in rows]

    def get_task(self, task_id: int) -> Optional[Task]:
        row = self._fetch_row(task_id)
        return Task(**row) if row else None

    def get_history(self, task_id: int) -> List[TaskHistoryRecord]:
        """History of one of the user's tasks, newest first."""
        if self._fetch_row(task_id) is None:
            return []
        rows = (
            self._store.table("task_history")
            .eq("task_id", task_id)
            .order("changed_at", ascending=False)
            .order("id", ascending=False)
            .select()
        )
        return [TaskHistoryRecord(**row) for row in rows]

    def get_comments(self, task_id: int) -> List[Comment]:
        if self._fetch_row(task_id) is None:
            return []
        rows = (
            self._store.table("task_comments")
            .eq("task_id", task_id)
            .order("created_at", ascending=False)
            .order("id", ascending=False)
            .select()
        )
        return [Comment(**row) for row in rows]

    # Writes

    def ensure_profile(self) -> bool:
        """
        Create the user's profile row if it is missing.

        Returns:
            True if a profile was created, False if it already existed
        """
        profiles = self._store.table("profiles")
        if profiles.eq("id", self.user.id).single() is not None:
            return False
        try:
            self._store.table("profiles").insert([{"id": self.user.id, "email": self.user.email}])
        except RecordStoreError:
            # Lost a race with a concurrent first sign-in; fine if the row exists now
            if self._store.table("profiles").eq("id", self.user.id).single() is None:
                raise
            return False
        logger.info(f"Created profile for user {self.user.id}")
        return True

    def create_task(self, draft: TaskDraft) -> Task:
        """Insert a new not-started task and log ``created``."""
        self.ensure_profile()
        now = self._clock()
        row = {
            "user_id": self.user.id,
            "status": TaskStatus.NOT_STARTED,
            "created_at": now,
            "updated_at": now,
            **draft.model_dump(),
        }
        task = Task(**self._store.table("tasks").insert([row])[0])
        logger.info(f"Task {task.id} created by {self.user.id}")

        self._append_history(task, [{
            "task_id": task.id,
            "action": HistoryAction.CREATED,
            "new_status": task.status,
        }])
        return task

    def update_status(self, task_id: int, new_status: TaskStatus) -> Optional[StatusUpdate]:
        """
        Move a task to ``new_status`` applying the transition table's side effects.

        The write only applies while the task still has the status it was read
        with; if another writer got in first, the transition is re-evaluated
        against the fresh row. Requesting the current status is a no-op and
        returns the task with ``changed=False``.

        Raises:
            StaleTaskError: the status kept changing underneath every attempt
        """
        for _ in range(STATUS_UPDATE_ATTEMPTS):
            current = self.get_task(task_id)
            if current is None:
                return None

            now = self._clock()
            patch = apply_transition(current, new_status, now)
            if not patch:
                logger.debug(f"Task {task_id} already {current.status.value}; nothing to do")
                return StatusUpdate(task=current, changed=False)
            patch["updated_at"] = now

            rows = self._scoped("tasks", task_id).eq("status", current.status).update(patch)
            if rows:
                break
            logger.debug(f"Task {task_id} status changed concurrently; re-reading")
        else:
            raise StaleTaskError(f"Task {task_id} status was modified concurrently")

        task = Task(**rows[0])
        logger.info(f"Task {task_id} status {current.status.value} -> {task.status.value}")

        self._append_history(task, [{
            "task_id": task_id,
            "action": HistoryAction.STATUS_CHANGED,
            "previous_status": current.status,
            "new_status": task.status,
        }])
        return StatusUpdate(task=task, changed=True)

    def update_fields(
        self,
        task_id: int,
        patch: TaskPatch,
        expected_updated_at: Optional[datetime] = None,
    ) -> Optional[Task]:
        """
        Apply field edits and log one ``field_updated`` record per changed field.

        The diff baseline is read here and the write is conditional on it, so
        a concurrent edit surfaces as StaleTaskError instead of a misleading
        history entry.

        Args:
            task_id: Task to edit
            patch: Fields to change
            expected_updated_at: updated_at the caller's form was opened with

        Raises:
            StaleTaskError: the task changed since ``expected_updated_at`` or
                between the baseline read and the write
        """
        row = self._fetch_row(task_id)
        if row is None:
            return None
        current = Task(**row)
        if expected_updated_at is not None and current.updated_at != expected_updated_at:
            raise StaleTaskError(f"Task {task_id} was modified since it was loaded")

        changes = patch.changed_fields()
        if not changes:
            return current

        update = dict(changes)
        update["updated_at"] = self._clock()
        rows = self._scoped("tasks", task_id).eq("updated_at", row["updated_at"]).update(update)
        if not rows:
            if self._fetch_row(task_id) is not None:
                raise StaleTaskError(f"Task {task_id} was modified concurrently")
            return None
        task = Task(**rows[0])

        history = []
        for field, value in changes.items():
            old = getattr(current, field)
            if old == value:
                continue
            history.append({
                "task_id": task_id,
                "action": HistoryAction.FIELD_UPDATED,
                "field_name": field,
                "old_value": stringify(old),
                "new_value": stringify(value),
            })
        logger.info(f"Task {task_id} fields updated: {', '.join(h['field_name'] for h in history) or 'none'}")
        if history:
            self._append_history(task, history)
        return task

    def delete_task(self, task_id: int) -> bool:
        """Remove the task; no history record. False when nothing matched."""
        removed = self._scoped("tasks", task_id).delete()
        if removed:
            logger.info(f"Task {task_id} deleted by {self.user.id}")
        return removed > 0

    def add_comment(self, task_id: int, text: str) -> Optional[Comment]:
        """Attach a comment to one of the user's tasks and log ``comment_added``."""
        task = self.get_task(task_id)
        if task is None:
            return None
        now = self._clock()
        row = self._store.table("task_comments").insert([{
            "task_id": task_id,
            "content": text,
            "author": self.user.email,
            "created_at": now,
            "updated_at": now,
        }])[0]
        comment = Comment(**row)
        logger.info(f"Comment {comment.id} added to task {task_id}")

        self._append_history(task, [{
            "task_id": task_id,
            "action": HistoryAction.COMMENT_ADDED,
        }])
        return comment

    # Helpers

    def _scoped(self, table: str, task_id: int):
        return self._store.table(table).eq("id", task_id).eq("user_id", self.user.id)

    def _fetch_row(self, task_id: int) -> Optional[Dict[str, Any]]:
        return self._scoped("tasks", task_id).single()

    def _append_history(self, task: Task, records: List[Dict[str, Any]]) -> None:
        rows = [{**record, "changed_by": self.user.id, "changed_at": self._clock()} for record in records]
        try:
            self._store.table("task_history").insert(rows)
        except RecordStoreError as e:
            logger.error(f"History append failed for task {task.id} after write succeeded: {e}")
            raise HistoryWriteError(f"Task {task.id} was saved but its history could not be recorded", task=task) from e
