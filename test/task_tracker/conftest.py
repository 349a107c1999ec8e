"""
Shared fixtures for Task Tracker tests.

Provides isolated temporary SQLite record stores, signed-in users, a fixed
clock, and a FastAPI TestClient wired to a fresh backend per test.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict

import pytest
from fastapi.testclient import TestClient

project_root = Path(__file__).parent.parent.parent / "src"
sys.path.insert(0, str(project_root))

from task_tracker import auth as auth_module
from task_tracker.api import create_app
from task_tracker.auth import User
from task_tracker.config import Settings
from task_tracker.gateway import TaskRemoteGateway
from task_tracker.store import RecordStore

API_KEY = "test-anon-key"
FIXED_NOW = datetime(2024, 3, 15, 10, 30, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock whose time tests can move."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    """Keep PBKDF2 cheap so auth-heavy tests stay fast."""
    monkeypatch.setattr(auth_module, "PBKDF2_ITERATIONS", 1000)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store(tmp_path):
    record_store = RecordStore(str(tmp_path / "tasks.db"))
    record_store.open()
    yield record_store
    record_store.close()


@pytest.fixture
def user(store):
    return User(id="user-1", email="owner@example.com")


@pytest.fixture
def other_user(store):
    return User(id="user-2", email="other@example.com")


@pytest.fixture
def gateway(store, user, clock):
    return TaskRemoteGateway(store, user, clock=clock)


@pytest.fixture
def other_gateway(store, other_user, clock):
    return TaskRemoteGateway(store, other_user, clock=clock)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        backend_url=f"sqlite:///{tmp_path / 'api.db'}",
        backend_anon_key=API_KEY,
    )


@pytest.fixture
def client(settings, clock):
    app = create_app(settings, clock=clock)
    with TestClient(app) as test_client:
        yield test_client


def register_and_sign_in(client: TestClient, email: str = "ada@example.com", password: str = "secret-pw") -> Dict[str, str]:
    """Sign up, confirm and sign in; return headers for authenticated requests."""
    headers = {"apikey": API_KEY}
    response = client.post("/api/auth/signup", headers=headers, json={
        "email": email, "password": password, "confirm_password": password,
    })
    assert response.status_code == 200, response.text
    token = response.json()["confirmation_token"]

    response = client.post("/api/auth/confirm", headers=headers, json={"token": token})
    assert response.status_code == 200, response.text

    response = client.post("/api/auth/signin", headers=headers, json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    access_token = response.json()["access_token"]
    return {"apikey": API_KEY, "Authorization": f"Bearer {access_token}"}


@pytest.fixture
def auth_headers(client):
    return register_and_sign_in(client)
