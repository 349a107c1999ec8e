"""
Backend client handle.

Explicitly constructed owner of the record store and the auth provider. The
web app creates one in its lifespan, keeps it on ``app.state`` and hands it
to request handlers through dependencies; nothing is initialized at import
time.
"""

import hmac
import logging
from datetime import datetime
from typing import Callable, Optional

from .auth import AuthProvider, User
from .config import ConfigurationError, Settings
from .gateway import TaskRemoteGateway
from .store import RecordStore

logger = logging.getLogger(__name__)


class BackendClient:
    """Record store + auth provider with an explicit open/close lifecycle."""

    def __init__(self, settings: Settings):
        if not settings.backend_url or not settings.backend_anon_key:
            raise ConfigurationError("Backend URL and anonymous key are required")
        self.settings = settings
        self._store: Optional[RecordStore] = None
        self._auth: Optional[AuthProvider] = None

    @property
    def store(self) -> RecordStore:
        if self._store is None:
            raise RuntimeError("Backend client is not open")
        return self._store

    @property
    def auth(self) -> AuthProvider:
        if self._auth is None:
            raise RuntimeError("Backend client is not open")
        return self._auth

    @property
    def is_open(self) -> bool:
        return self._store is not None

    def open(self) -> "BackendClient":
        if self._store is not None:
            return self
        store = RecordStore(self.settings.database_path)
        store.open()
        self._store = store
        self._auth = AuthProvider(store)
        logger.info("Backend client opened")
        return self

    def close(self) -> None:
        if self._store is not None:
            self._store.close()
        self._store = None
        self._auth = None
        logger.info("Backend client closed")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def check_api_key(self, key: Optional[str]) -> bool:
        """Constant-time comparison against the configured anonymous key."""
        if not key:
            return False
        return hmac.compare_digest(key.encode("utf-8"), self.settings.backend_anon_key.encode("utf-8"))

    def gateway_for(self, user: User, clock: Optional[Callable[[], datetime]] = None) -> TaskRemoteGateway:
        """Task gateway scoped to ``user``."""
        return TaskRemoteGateway(self.store, user, clock=clock)
