"""
End-to-end tests for the HTTP surface.

These tests drive the FastAPI app through TestClient:
- Health and installed-application status
- Start/stop/restart
- App store catalog, refresh and cache
- Install/uninstall/cancel with real worker subprocesses (scripted)
- Progress streaming
"""
import asyncio
import json
import time

import pytest
from fastapi.testclient import TestClient

from appliance_core.app import create_app

from conftest import COMPLETING_WORKER, FAILING_WORKER, SLEEPING_WORKER, python_worker


def sse_events(body: str):
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.fixture
def make_client(test_settings, gateway, registry):
    """Build a client around a specific worker script."""
    clients = []

    def factory(script, *extra):
        app = create_app(
            test_settings,
            gateway=gateway,
            registry_transport=registry.transport(),
            worker_command=python_worker(script, *extra),
        )
        c = TestClient(app)
        c.__enter__()
        clients.append(c)
        return c

    yield factory
    for c in clients:
        c.__exit__(None, None, None)


@pytest.mark.e2e
class TestPlatformHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["uptime_s"] >= 0


@pytest.mark.e2e
class TestInstalledApps:
    def test_list_apps(self, client, gateway):
        gateway.add("app-foo-web", status="Up 2 hours (healthy)", ports=[8080])
        gateway.add("app-foo-db", state="exited", status="Exited (0) 1 hour ago")

        response = client.get("/api/apps")

        assert response.status_code == 200
        apps = response.json()
        assert len(apps) == 1
        foo = apps[0]
        assert foo["id"] == "foo"
        assert foo["status"] == "partial"
        assert foo["progress"] == 50
        assert foo["containersTotal"] == 2
        assert foo["containersRunning"] == 1
        assert foo["containersStopped"] == 1
        assert foo["ports"] == [8080]

    def test_runtime_unavailable(self, client, gateway):
        gateway.unavailable = True
        response = client.get("/api/apps")
        assert response.status_code == 500
        assert response.json()["detail"]["code"] == "RUNTIME_UNAVAILABLE"

    def test_start_stop_restart(self, client, gateway):
        gateway.add("app-bar-web", state="exited", status="Exited (0) 1 hour ago")
        gateway.add("app-bar-db", state="exited", status="Exited (0) 1 hour ago")

        started = client.post("/api/apps/bar/start").json()
        assert started["success"] is True
        assert started["startedCount"] == 2

        stopped = client.post("/api/apps/bar/stop").json()
        assert stopped["stoppedCount"] == 2
        assert stopped["killedCount"] == 0

        restarted = client.post("/api/apps/bar/restart").json()
        assert restarted["success"] is True
        assert restarted["stop"]["stoppedCount"] == 0
        assert restarted["start"]["startedCount"] == 2

    def test_partial_failure_is_still_200(self, client, gateway):
        gateway.add("app-bar-web", state="exited", status="Exited (0)")
        bad = gateway.add("app-bar-db", state="exited", status="Exited (0)")
        gateway.fail_start.add(bad)

        response = client.post("/api/apps/bar/start")

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["errorCount"] == 1

    def test_unknown_app_is_404(self, client):
        response = client.post("/api/apps/nope/start")
        assert response.status_code == 404
        detail = response.json()["detail"]
        assert detail["code"] == "NO_CONTAINERS"
        assert detail["appId"] == "nope"


@pytest.mark.e2e
class TestAppStore:
    def test_empty_catalog(self, client):
        response = client.get("/api/appstore/apps")
        assert response.status_code == 200
        assert response.json() == {"success": True, "count": 0, "data": []}

    def test_refresh_then_list(self, client):
        refreshed = client.post("/api/appstore/update")
        assert refreshed.status_code == 200
        assert refreshed.json()["appsCount"] == 3

        data = client.get("/api/appstore/apps").json()
        assert data["count"] == 3
        assert {a["id"] for a in data["data"]} == {"foo", "bar", "baz"}

        foo = client.get("/api/appstore/apps/foo").json()["data"]
        assert foo["name"] == "Foo"
        assert foo["installed"] is False

    def test_unknown_catalog_app(self, client):
        client.post("/api/appstore/update")
        response = client.get("/api/appstore/apps/nope")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "APP_NOT_FOUND"

    def test_refresh_failure_is_502(self, client, registry):
        registry.fail_release = True
        response = client.post("/api/appstore/update")
        assert response.status_code == 502
        assert response.json()["detail"]["code"] == "REGISTRY_FETCH_FAILED"

    def test_health_and_rate_limit(self, client):
        before = client.get("/api/appstore/health").json()
        assert before["status"] == "ok"
        assert before["storage"]["hasData"] is False

        client.post("/api/appstore/update")

        after = client.get("/api/appstore/health").json()
        assert after["storage"]["hasData"] is True
        assert after["storage"]["releaseTag"] == "v2024.10.1"

        rate = client.get("/api/appstore/rate-limit").json()
        assert rate["remaining"] == 55
        assert rate["status"] == "ok"

    def test_cache_clear(self, client):
        client.post("/api/appstore/update")
        response = client.post("/api/appstore/cache/clear")
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert client.get("/api/appstore/apps").json()["count"] == 0


@pytest.mark.e2e
class TestInstallations:
    def test_install_acknowledges_immediately(self, make_client):
        client = make_client(SLEEPING_WORKER)
        client.post("/api/appstore/update")

        t0 = time.monotonic()
        response = client.post("/api/appstore/apps/foo/install")
        assert time.monotonic() - t0 < 5

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Install of 'foo' started", "appId": "foo"}
        assert client.get("/api/appstore/active-installations").json()["installations"] == ["foo"]

        cancelled = client.post("/api/appstore/apps/foo/cancel")
        assert cancelled.status_code == 200
        assert cancelled.json()["success"] is True

    def test_install_unknown_app_is_404(self, client):
        response = client.post("/api/appstore/apps/nope/install")
        assert response.status_code == 404

    def test_install_reads_catalog_off_the_event_loop(self, app, client, monkeypatch):
        calls = []
        original = app.state.catalog.get_entry

        def get_entry(app_id):
            try:
                asyncio.get_running_loop()
                calls.append("event-loop")
            except RuntimeError:
                calls.append("thread")
            return original(app_id)

        monkeypatch.setattr(app.state.catalog, "get_entry", get_entry)

        response = client.post("/api/appstore/apps/nope/install")

        assert response.status_code == 404
        assert calls == ["thread"]

    def test_cancel_without_installation_is_404(self, client):
        response = client.post("/api/appstore/apps/foo/cancel")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_ACTIVE"

    def test_progress_stream(self, make_client):
        client = make_client(COMPLETING_WORKER, "1.0")
        client.post("/api/appstore/update")
        client.post("/api/appstore/apps/foo/install")

        with client.stream("GET", "/api/appstore/progress/foo") as response:
            assert response.status_code == 200
            assert response.headers["content-type"].startswith("text/event-stream")
            body = "".join(response.iter_text())

        events = sse_events(body)
        assert events[-1]["progress"] == 100
        assert events[-1]["stage"] == "completed"
        assert all(e["appId"] == "foo" for e in events)

    def test_uninstall_waits_for_worker(self, make_client):
        client = make_client(COMPLETING_WORKER)
        response = client.delete("/api/appstore/apps/foo/uninstall")
        assert response.status_code == 200
        assert response.json()["exitCode"] == 0
        assert client.get("/api/appstore/active-installations").json()["installations"] == []

    def test_uninstall_failure_is_500(self, make_client):
        client = make_client(FAILING_WORKER)
        response = client.delete("/api/appstore/apps/foo/uninstall")
        assert response.status_code == 500
        detail = response.json()["detail"]
        assert detail["code"] == "UNINSTALL_FAILED"
        assert detail["exitCode"] == 3
