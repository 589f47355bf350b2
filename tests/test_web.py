"""Tests for the status and control API."""

import pytest
from starlette.testclient import TestClient

from opensprint.core.orchestrator import OrchestratorService
from opensprint.web.app import create_app


class IdleRunner:
    """Never expected to be asked for an agent in these tests."""

    def spawn_with_task_file(self, *args, **kwargs):
        raise AssertionError("unexpected agent spawn")


@pytest.fixture
def service(config, db):
    svc = OrchestratorService(config, runner=IdleRunner(), enable_reaper=False)
    yield svc
    svc.stop_all()


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


class TestProjects:
    def test_list_projects(self, client, git_repo):
        resp = client.get("/api/projects")
        assert resp.status_code == 200
        (project,) = resp.json()
        assert project["id"] == "demo"
        assert project["repo_path"] == git_repo
        assert project["settings"]["review_mode"] == "never"

    def test_status(self, client):
        resp = client.get("/api/projects/demo/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["project_id"] == "demo"
        assert data["running"] is False
        assert data["active_tasks"] == []
        assert data["max_slots"] == 1

    def test_status_unknown_project(self, client):
        resp = client.get("/api/projects/ghost/status")
        assert resp.status_code == 404
        assert "Project not found" in resp.json()["error"]

    def test_nudge(self, client):
        assert client.post("/api/projects/demo/nudge").json() == {"ok": True}
        assert client.post("/api/projects/ghost/nudge").status_code == 404

    def test_nudge_with_start(self, client, service):
        assert client.post("/api/projects/demo/nudge?start=1").status_code == 200
        assert service.get_orchestrator("demo").running


class TestEvents:
    @pytest.fixture
    def seeded(self, service):
        service.events.append("demo", "a", "task.dispatched", {"attempt": 1})
        service.events.append("demo", "b", "task.dispatched", {"attempt": 1})
        service.events.append("demo", "a", "task.completed", {"attempt": 1})
        service.events.append("other", "a", "task.dispatched", {})

    def test_list(self, client, seeded):
        events = client.get("/api/projects/demo/events").json()
        assert [(e["task_id"], e["event"]) for e in events] == [
            ("a", "task.dispatched"),
            ("b", "task.dispatched"),
            ("a", "task.completed"),
        ]
        assert events[0]["data"] == {"attempt": 1}

    def test_filters(self, client, seeded):
        first = client.get("/api/projects/demo/events").json()[0]
        after = client.get(f"/api/projects/demo/events?since={first['id']}").json()
        assert len(after) == 2
        by_task = client.get("/api/projects/demo/events?task=a").json()
        assert [e["event"] for e in by_task] == ["task.dispatched", "task.completed"]
        limited = client.get("/api/projects/demo/events?limit=1").json()
        assert len(limited) == 1

    def test_bad_query(self, client):
        resp = client.get("/api/projects/demo/events?since=abc")
        assert resp.status_code == 400


class TestNotifications:
    def test_list_and_filter(self, client, service):
        service.notifications.create_task_blocked("demo", "a", "Task a blocked")
        service.notifications.create_api_blocked("demo", "b", "429", "rate_limit")

        all_items = client.get("/api/projects/demo/notifications").json()
        assert [n["kind"] for n in all_items] == ["task_blocked", "api_blocked"]
        api = client.get("/api/projects/demo/notifications?kind=api_blocked").json()
        assert api[0]["error_code"] == "rate_limit"
        assert client.get("/api/projects/demo/notifications?status=resolved").json() == []

    def test_resolve(self, client, service):
        n = service.notifications.create_task_blocked("demo", "a", "Task a blocked")
        resp = client.post(
            f"/api/notifications/{n.id}/resolve", json={"approved": False, "notes": "won't fix"}
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "resolved"
        assert data["approved"] is False
        assert data["notes"] == "won't fix"

    def test_resolve_without_body_approves(self, client, service):
        n = service.notifications.create_task_blocked("demo", "a", "blocked")
        data = client.post(f"/api/notifications/{n.id}/resolve").json()
        assert data["approved"] is True

    def test_resolve_api_blocked_resumes_dispatch(self, client, service):
        n = service.notifications.create_api_blocked("demo", "a", "429", "rate_limit")
        orch = service.get_orchestrator("demo")
        orch._wake.clear()
        client.post(f"/api/notifications/{n.id}/resolve", json={"approved": True})
        assert orch._wake.is_set()
        assert not service.notifications.has_open_api_blocked("demo")

    def test_resolve_missing(self, client):
        assert client.post("/api/notifications/999/resolve", json={}).status_code == 404
