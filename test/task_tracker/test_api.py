"""
Integration tests for the FastAPI surface.

Exercise the sign-up / sign-in flow, the task list projection (filters,
sort, chips), the add/edit/status/delete forms, the detail page and the
error mapping, each against a fresh SQLite-backed app.
"""

from datetime import datetime, timedelta
from unittest.mock import patch

from task_tracker.gateway import HistoryWriteError, TaskRemoteGateway
from task_tracker.store import RecordStoreError

from conftest import API_KEY, FIXED_NOW, register_and_sign_in


def create(client, headers, **fields):
    body = {"title": "Task", **fields}
    response = client.post("/api/tasks", headers=headers, json=body)
    assert response.status_code == 201, response.text
    return response.json()["task"]


def visible_titles(payload):
    return [view["task"]["title"] for group in payload["groups"] for view in group["tasks"]]


def iso(value: datetime) -> str:
    return value.isoformat()


class TestHealth:

    def test_health_check(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert data["active_sessions"] == 0
        assert data["signed_in_sessions"] == 0

    def test_health_counts_signed_in_sessions(self, client):
        headers = register_and_sign_in(client)
        register_and_sign_in_again(client)
        assert client.get("/healthz").json()["signed_in_sessions"] == 2

        client.post("/api/auth/signout", headers=headers)
        assert client.get("/healthz").json()["signed_in_sessions"] == 1


class TestAuthFlow:

    def test_api_key_required(self, client):
        response = client.post("/api/auth/signin", json={"email": "a@b.c", "password": "x"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"

        response = client.get("/api/tasks", headers={"apikey": "wrong"})
        assert response.status_code == 401

    def test_password_mismatch(self, client):
        response = client.post("/api/auth/signup", headers={"apikey": API_KEY}, json={
            "email": "ada@example.com", "password": "secret-pw", "confirm_password": "other-pw",
        })
        assert response.status_code == 400
        assert response.json()["detail"] == "Passwords do not match"

    def test_sign_up_message(self, client):
        response = client.post("/api/auth/signup", headers={"apikey": API_KEY}, json={
            "email": "ada@example.com", "password": "secret-pw", "confirm_password": "secret-pw",
        })
        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Please check your email to verify your account before signing in."
        assert data["user"]["email"] == "ada@example.com"
        assert data["redirect_to"] == "http://localhost:8080/signin"

    def test_weak_password(self, client):
        response = client.post("/api/auth/signup", headers={"apikey": API_KEY}, json={
            "email": "ada@example.com", "password": "123", "confirm_password": "123",
        })
        assert response.status_code == 400
        assert "at least 6 characters" in response.json()["detail"]

    def test_sign_in_before_confirmation(self, client):
        headers = {"apikey": API_KEY}
        client.post("/api/auth/signup", headers=headers, json={
            "email": "ada@example.com", "password": "secret-pw", "confirm_password": "secret-pw",
        })
        response = client.post("/api/auth/signin", headers=headers, json={"email": "ada@example.com", "password": "secret-pw"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Email not confirmed"

    def test_sign_in_creates_profile_and_session(self, client):
        headers = register_and_sign_in(client)
        response = client.get("/api/auth/user", headers=headers)
        assert response.status_code == 200
        assert response.json()["email"] == "ada@example.com"

        store = client.app.state.backend.store
        assert store.table("profiles").eq("email", "ada@example.com").single() is not None

    def test_task_routes_require_session(self, client):
        response = client.get("/api/tasks", headers={"apikey": API_KEY})
        assert response.status_code == 401
        assert response.json()["detail"] == "Not authenticated"

        response = client.get("/api/tasks", headers={"apikey": API_KEY, "Authorization": "Bearer forged"})
        assert response.status_code == 401

    def test_sign_out_ends_session(self, client, auth_headers):
        client.get("/api/tasks", headers=auth_headers)
        assert len(client.app.state.sessions) == 1

        response = client.post("/api/auth/signout", headers=auth_headers)
        assert response.status_code == 200
        assert len(client.app.state.sessions) == 0
        assert client.get("/api/auth/user", headers=auth_headers).status_code == 401


class TestTaskList:

    def test_empty_list(self, client, auth_headers):
        response = client.get("/api/tasks", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["total_count"] == 0
        assert data["groups"] == []
        assert data["sort"] == "none"

    def test_new_task_is_prepended(self, client, auth_headers):
        client.get("/api/tasks", headers=auth_headers)
        create(client, auth_headers, title="First")
        create(client, auth_headers, title="Second")

        data = client.get("/api/tasks", headers=auth_headers).json()
        assert visible_titles(data) == ["Second", "First"]

    def test_groups_only_non_empty_statuses_in_workflow_order(self, client, auth_headers):
        done = create(client, auth_headers, title="Done")
        create(client, auth_headers, title="Todo")
        client.post(f"/api/tasks/{done['id']}/status", headers=auth_headers, json={"status": "completed"})

        data = client.get("/api/tasks", headers=auth_headers).json()
        assert [g["status"] for g in data["groups"]] == ["not_started", "completed"]
        assert data["groups"][0]["display_name"] == "Not Started"
        assert data["groups"][1]["count"] == 1

    def test_due_date_and_size_annotations(self, client, auth_headers):
        create(client, auth_headers, title="Today", size="XS", expected_completion_date=iso(FIXED_NOW.replace(hour=18)))
        create(client, auth_headers, title="Late", expected_completion_date=iso(FIXED_NOW - timedelta(days=2)))

        views = {v["task"]["title"]: v for g in client.get("/api/tasks", headers=auth_headers).json()["groups"] for v in g["tasks"]}
        assert views["Today"]["due"]["label"] == "Due today"
        assert views["Today"]["size_description"] == "< 10 mins"
        assert views["Late"]["due"]["label"] == "Overdue by 2 days"
        assert views["Late"]["due"]["color"] == "#d32f2f"

    def test_sort_by_due_date_puts_undated_last(self, client, auth_headers):
        create(client, auth_headers, title="C")
        create(client, auth_headers, title="B", expected_completion_date=iso(FIXED_NOW + timedelta(days=3)))
        create(client, auth_headers, title="A", expected_completion_date=iso(FIXED_NOW))

        data = client.put("/api/tasks/view", headers=auth_headers, json={"sort": "asc"}).json()
        assert visible_titles(data) == ["A", "B", "C"]

        data = client.put("/api/tasks/view", headers=auth_headers, json={"sort": "desc"}).json()
        assert visible_titles(data) == ["B", "A", "C"]

    def test_filters_and_chip_removal(self, client, auth_headers):
        create(client, auth_headers, title="High", priority="high")
        create(client, auth_headers, title="Low", priority="low")
        create(client, auth_headers, title="Medium")

        data = client.put("/api/tasks/view", headers=auth_headers, json={
            "filters": {"priority": ["high", "low"]},
        }).json()
        assert sorted(visible_titles(data)) == ["High", "Low"]
        assert data["total_count"] == 3
        assert data["visible_count"] == 2

        data = client.delete("/api/tasks/view/filters/priority/low", headers=auth_headers).json()
        assert visible_titles(data) == ["High"]
        assert data["filters"]["priority"] == ["high"]

    def test_time_frame_filter(self, client, auth_headers):
        create(client, auth_headers, title="Today", expected_completion_date=iso(FIXED_NOW.replace(hour=20)))
        create(client, auth_headers, title="Next week", expected_completion_date=iso(FIXED_NOW + timedelta(days=5)))
        create(client, auth_headers, title="Undated")

        data = client.put("/api/tasks/view", headers=auth_headers, json={"filters": {"time_frame": ["today"]}}).json()
        assert visible_titles(data) == ["Today"]

        data = client.put("/api/tasks/view", headers=auth_headers, json={"filters": {"time_frame": ["week"]}}).json()
        assert sorted(visible_titles(data)) == ["Next week", "Today"]

    def test_unknown_filter_dimension(self, client, auth_headers):
        response = client.delete("/api/tasks/view/filters/colour/red", headers=auth_headers)
        assert response.status_code == 400

    def test_refresh_picks_up_writes_from_other_sessions(self, client, auth_headers):
        client.get("/api/tasks", headers=auth_headers)
        second_session = register_and_sign_in_again(client)
        create(client, second_session, title="From phone")

        assert visible_titles(client.get("/api/tasks", headers=auth_headers).json()) == []
        data = client.get("/api/tasks?refresh=true", headers=auth_headers).json()
        assert visible_titles(data) == ["From phone"]


def register_and_sign_in_again(client, email="ada@example.com", password="secret-pw"):
    """Second session for an already registered account."""
    response = client.post("/api/auth/signin", headers={"apikey": API_KEY}, json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"apikey": API_KEY, "Authorization": f"Bearer {response.json()['access_token']}"}


class TestTaskForms:

    def test_create_defaults(self, client, auth_headers):
        task = create(client, auth_headers, title="  Buy milk ")
        assert task["title"] == "Buy milk"
        assert task["status"] == "not_started"
        assert task["priority"] == "medium"
        assert task["size"] == "M"
        assert task["category"] == "personal"

    def test_create_rejects_blank_title(self, client, auth_headers):
        response = client.post("/api/tasks", headers=auth_headers, json={"title": "   "})
        assert response.status_code == 422

    def test_create_rejects_unknown_vocabulary(self, client, auth_headers):
        response = client.post("/api/tasks", headers=auth_headers, json={"title": "x", "size": "XXL"})
        assert response.status_code == 422

    def test_status_change_updates_list_and_timestamps(self, client, auth_headers):
        task = create(client, auth_headers, title="Write report")
        response = client.post(f"/api/tasks/{task['id']}/status", headers=auth_headers, json={"status": "in_progress"})

        assert response.status_code == 200
        data = response.json()
        assert data["changed"] is True
        assert data["task"]["status"] == "in_progress"
        assert data["task"]["started_at"] is not None

        groups = client.get("/api/tasks", headers=auth_headers).json()["groups"]
        assert [g["status"] for g in groups] == ["in_progress"]

    def test_requesting_current_status_reports_no_change(self, client, auth_headers):
        task = create(client, auth_headers, title="Write report")
        response = client.post(f"/api/tasks/{task['id']}/status", headers=auth_headers, json={"status": "not_started"})

        assert response.status_code == 200
        data = response.json()
        assert data["changed"] is False
        assert data["task"]["updated_at"] == task["updated_at"]

        detail = client.get(f"/api/tasks/{task['id']}", headers=auth_headers).json()
        assert [h["description"] for h in detail["history"]] == ["Task created"]

    def test_patch_fields(self, client, auth_headers):
        task = create(client, auth_headers, title="Draft")
        response = client.patch(f"/api/tasks/{task['id']}", headers=auth_headers, json={
            "patch": {"title": "Final", "priority": "high"},
            "expected_updated_at": task["updated_at"],
        })
        assert response.status_code == 200, response.text
        assert response.json()["task"]["title"] == "Final"
        assert visible_titles(client.get("/api/tasks", headers=auth_headers).json()) == ["Final"]

    def test_patch_rejects_null_title(self, client, auth_headers):
        task = create(client, auth_headers, title="Draft")
        response = client.patch(f"/api/tasks/{task['id']}", headers=auth_headers, json={"patch": {"title": None}})
        assert response.status_code == 422

    def test_patch_with_stale_snapshot(self, client, auth_headers):
        task = create(client, auth_headers, title="Draft")
        response = client.patch(f"/api/tasks/{task['id']}", headers=auth_headers, json={
            "patch": {"title": "Late edit"},
            "expected_updated_at": "2000-01-01T00:00:00Z",
        })
        assert response.status_code == 409

    def test_delete(self, client, auth_headers):
        task = create(client, auth_headers, title="Temporary")
        response = client.delete(f"/api/tasks/{task['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["changed"] is True
        assert client.get("/api/tasks", headers=auth_headers).json()["total_count"] == 0
        assert client.get(f"/api/tasks/{task['id']}", headers=auth_headers).status_code == 404

    def test_missing_task_reports_nothing_changed(self, client, auth_headers):
        response = client.post("/api/tasks/999/status", headers=auth_headers, json={"status": "completed"})
        assert response.status_code == 200
        assert response.json() == {"success": True, "changed": False, "task": None}


class TestTaskDetail:

    def test_history_and_comments_newest_first(self, client, auth_headers):
        task = create(client, auth_headers, title="Write report")
        client.post(f"/api/tasks/{task['id']}/status", headers=auth_headers, json={"status": "in_progress"})
        first = client.post(f"/api/tasks/{task['id']}/comments", headers=auth_headers, json={"content": "Outline done"})
        second = client.post(f"/api/tasks/{task['id']}/comments", headers=auth_headers, json={"content": "Draft done"})
        assert first.status_code == 201
        assert second.json()["comment"]["author"] == "ada@example.com"

        data = client.get(f"/api/tasks/{task['id']}", headers=auth_headers).json()
        assert [h["description"] for h in data["history"]] == [
            "Comment added",
            "Comment added",
            "Status changed from Not Started to In Progress",
            "Task created",
        ]
        assert [c["content"] for c in data["comments"]] == ["Draft done", "Outline done"]

    def test_blank_comment_rejected(self, client, auth_headers):
        task = create(client, auth_headers, title="Write report")
        response = client.post(f"/api/tasks/{task['id']}/comments", headers=auth_headers, json={"content": "  "})
        assert response.status_code == 422


class TestOwnership:

    def test_other_users_task_is_invisible_and_immutable(self, client, auth_headers):
        task = create(client, auth_headers, title="Private")
        intruder = register_and_sign_in(client, email="eve@example.com")

        assert client.get(f"/api/tasks/{task['id']}", headers=intruder).status_code == 404
        assert visible_titles(client.get("/api/tasks", headers=intruder).json()) == []

        response = client.patch(f"/api/tasks/{task['id']}", headers=intruder, json={"patch": {"title": "Mine"}})
        assert response.json()["changed"] is False
        response = client.post(f"/api/tasks/{task['id']}/status", headers=intruder, json={"status": "completed"})
        assert response.json()["changed"] is False
        response = client.delete(f"/api/tasks/{task['id']}", headers=intruder)
        assert response.json()["changed"] is False
        response = client.post(f"/api/tasks/{task['id']}/comments", headers=intruder, json={"content": "hi"})
        assert response.status_code == 404

        detail = client.get(f"/api/tasks/{task['id']}", headers=auth_headers).json()
        assert detail["task"]["task"]["title"] == "Private"
        assert detail["task"]["task"]["status"] == "not_started"


class TestFailures:

    def test_store_failure_leaves_local_state_unchanged(self, client, auth_headers):
        client.get("/api/tasks", headers=auth_headers)
        create(client, auth_headers, title="Existing")

        with patch.object(TaskRemoteGateway, "create_task", side_effect=RecordStoreError("database is locked")):
            response = client.post("/api/tasks", headers=auth_headers, json={"title": "Lost"})

        assert response.status_code == 502
        assert response.json()["detail"] == "Failed to create task"
        assert visible_titles(client.get("/api/tasks", headers=auth_headers).json()) == ["Existing"]

    def test_history_failure_reported(self, client, auth_headers):
        client.get("/api/tasks", headers=auth_headers)
        task = create(client, auth_headers, title="Existing")

        with patch.object(TaskRemoteGateway, "update_status", side_effect=HistoryWriteError("history down")):
            response = client.post(f"/api/tasks/{task['id']}/status", headers=auth_headers, json={"status": "completed"})

        assert response.status_code == 502
        groups = client.get("/api/tasks", headers=auth_headers).json()["groups"]
        assert [g["status"] for g in groups] == ["not_started"]

    def test_busy_form_rejects_duplicate_submission(self, client, auth_headers):
        client.get("/api/tasks", headers=auth_headers)
        token = auth_headers["Authorization"].split(" ", 1)[1]
        session = client.app.state.sessions._sessions[token]
        session.gate._in_flight.add("create")

        response = client.post("/api/tasks", headers=auth_headers, json={"title": "Double click"})
        assert response.status_code == 409

        session.gate._in_flight.discard("create")
        assert client.post("/api/tasks", headers=auth_headers, json={"title": "Retry"}).status_code == 201
