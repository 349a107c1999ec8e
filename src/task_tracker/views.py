"""
Per-session view state.

Each signed-in session gets its own TaskListState (the list page's
projection) and a SubmissionGate playing the role of a form's "loading"
flag: a second submission of the same form while the first is in flight is
rejected, while submissions for different forms or tasks proceed.
"""

import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Dict, Optional, Set

from .auth import User
from .task_state import TaskListState

logger = logging.getLogger(__name__)


class BusyError(Exception):
    """A submission with the same key is already in flight."""


class SubmissionGate:
    """Set of in-flight submission keys, e.g. ``"create"`` or ``"task:7"``."""

    def __init__(self):
        self._in_flight: Set[str] = set()

    def is_busy(self, key: str) -> bool:
        return key in self._in_flight

    @asynccontextmanager
    async def hold(self, key: str):
        """
        Hold ``key`` for the duration of the block.

        Raises:
            BusyError: when ``key`` is already held
        """
        # No await between check and add, so this is atomic on the event loop
        if key in self._in_flight:
            raise BusyError(f"Submission '{key}' is already in progress")
        self._in_flight.add(key)
        try:
            yield
        finally:
            self._in_flight.discard(key)


class ViewSession:
    """UI state belonging to one session token."""

    def __init__(self, user: User, clock: Optional[Callable[[], datetime]] = None):
        self.user = user
        self.state = TaskListState(clock=clock)
        self.gate = SubmissionGate()

    def close(self) -> None:
        self.state.close()


class ViewSessionRegistry:
    """Thread-safe map from session token to ViewSession."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._sessions: Dict[str, ViewSession] = {}
        self._lock = threading.RLock()
        self._clock = clock

    def get_or_create(self, token: str, user: User) -> ViewSession:
        with self._lock:
            session = self._sessions.get(token)
            if session is None or session.user.id != user.id:
                session = ViewSession(user, clock=self._clock)
                self._sessions[token] = session
                logger.debug(f"View session created for user {user.id}")
            return session

    def discard(self, token: str) -> None:
        """Drop and close the session's state; in-flight handlers see it as dead."""
        with self._lock:
            session = self._sessions.pop(token, None)
        if session is not None:
            session.close()

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
