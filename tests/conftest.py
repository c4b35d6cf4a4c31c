"""
Pytest configuration and fixtures.

The container runtime is replaced by an in-memory gateway and the remote
registry by an httpx.MockTransport, so no test needs docker or network access.
"""
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
import pytest
from fastapi.testclient import TestClient

from appliance_core.app import create_app
from appliance_core.errors import ContainerNotFound, RuntimeUnavailable
from appliance_core.settings import Settings

REGISTRY_URL = "https://registry.test"
REGISTRY_REPO = "appliance/apps"


class FakeGateway:
    """In-memory RuntimeGateway. Containers use the engine's list shape."""

    def __init__(self) -> None:
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_start: set = set()
        self.fail_stop: set = set()
        self.fail_kill: set = set()
        self.unavailable = False
        self._next_id = 0

    def add(
        self,
        name: str,
        state: str = "running",
        status: str = "Up 5 minutes",
        labels: Optional[Mapping[str, str]] = None,
        ports: Optional[List[int]] = None,
    ) -> str:
        self._next_id += 1
        container_id = f"c{self._next_id:04d}"
        self.containers[container_id] = {
            "Id": container_id,
            "Names": [f"/{name}"],
            "State": state,
            "Status": status,
            "Labels": dict(labels or {}),
            "Ports": [{"PrivatePort": p, "PublicPort": p, "Type": "tcp"} for p in (ports or [])],
        }
        return container_id

    def set_status(self, container_id: str, state: str, status: str) -> None:
        self.containers[container_id]["State"] = state
        self.containers[container_id]["Status"] = status

    def _get(self, container_id: str) -> Dict[str, Any]:
        if self.unavailable:
            raise RuntimeUnavailable("Container runtime unavailable")
        if container_id not in self.containers:
            raise ContainerNotFound(f"Container '{container_id}' not found")
        return self.containers[container_id]

    async def list_containers(self, all: bool = True) -> List[Mapping[str, Any]]:
        if self.unavailable:
            raise RuntimeUnavailable("Container runtime unavailable")
        return [dict(c) for c in self.containers.values() if all or c["State"] == "running"]

    async def inspect(self, container_id: str) -> Mapping[str, Any]:
        self._get(container_id)
        return {"mounts": [], "health": None, "ports": {}}

    async def start(self, container_id: str) -> None:
        self.calls.append(("start", container_id))
        container = self._get(container_id)
        if container_id in self.fail_start:
            raise RuntimeUnavailable("start failed")
        container["State"] = "running"
        container["Status"] = "Up Less than a second"

    async def stop(self, container_id: str, timeout_seconds: int) -> None:
        self.calls.append(("stop", container_id))
        container = self._get(container_id)
        if container_id in self.fail_stop:
            raise RuntimeUnavailable("stop timed out")
        container["State"] = "exited"
        container["Status"] = "Exited (0) Less than a second ago"

    async def kill(self, container_id: str) -> None:
        self.calls.append(("kill", container_id))
        container = self._get(container_id)
        if container_id in self.fail_kill:
            raise RuntimeUnavailable("kill failed")
        container["State"] = "exited"
        container["Status"] = "Exited (137) Less than a second ago"

    async def remove(self, container_id: str, force: bool = True) -> None:
        self.calls.append(("remove", container_id))
        self._get(container_id)
        del self.containers[container_id]


class FakeRegistry:
    """Serves the releases/contents API shape the RegistryClient consumes."""

    def __init__(self) -> None:
        self.tag = "v2024.10.1"
        self.catalog: List[Dict[str, Any]] = [
            {
                "id": "foo",
                "name": "Foo",
                "version": "1.3.0",
                "description": "Photo library",
                "gallery": ["https://cdn.test/foo/icon.png", "https://cdn.test/foo/1.png"],
            },
            {"id": "bar", "name": "Bar", "version": "2.0.0"},
            {"id": "baz", "name": "Baz", "version": "v0.9"},
        ]
        self.files: Dict[str, Dict[str, bytes]] = {
            "foo": {
                "docker-compose.yml": b"services:\n  web:\n    image: foo:1.3.0\n    container_name: app-foo-web\n",
                "config/settings.ini": b"[foo]\n",
            }
        }
        self.fail_release = False
        self.fail_catalog = False
        self.requests: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        headers = {"x-ratelimit-limit": "60", "x-ratelimit-remaining": "55", "x-ratelimit-reset": "1700000000"}

        if path == f"/repos/{REGISTRY_REPO}/releases/latest":
            if self.fail_release:
                return httpx.Response(500, text="upstream error", headers=headers)
            return httpx.Response(
                200,
                headers=headers,
                json={
                    "tag_name": self.tag,
                    "name": self.tag,
                    "published_at": "2024-10-01T00:00:00Z",
                    "assets": [{"name": "apps.json", "url": f"{REGISTRY_URL}/assets/1"}],
                },
            )
        if path == "/assets/1":
            if self.fail_catalog:
                return httpx.Response(503, text="unavailable", headers=headers)
            return httpx.Response(200, headers=headers, content=json.dumps(self.catalog).encode())

        prefix = f"/repos/{REGISTRY_REPO}/contents/"
        if path.startswith(prefix):
            return self._contents(path[len(prefix):], headers)
        if path.startswith("/raw/"):
            app_id, _, rel = path[len("/raw/"):].partition("/")
            data = self.files.get(app_id, {}).get(rel)
            if data is None:
                return httpx.Response(404, headers=headers)
            return httpx.Response(200, headers=headers, content=data)
        return httpx.Response(404, headers=headers, json={"message": "Not Found"})

    def _contents(self, rel: str, headers: Dict[str, str]) -> httpx.Response:
        app_id, _, sub = rel.partition("/")
        files = self.files.get(app_id)
        if files is None:
            return httpx.Response(404, headers=headers, json={"message": "Not Found"})

        items = {}
        for file_path in files:
            if sub and not file_path.startswith(sub + "/"):
                continue
            remainder = file_path[len(sub) + 1:] if sub else file_path
            head, _, tail = remainder.partition("/")
            full = f"{sub}/{head}" if sub else head
            if tail:
                items[head] = {"name": head, "type": "dir", "path": f"{app_id}/{full}"}
            else:
                items[head] = {
                    "name": head,
                    "type": "file",
                    "path": f"{app_id}/{full}",
                    "download_url": f"{REGISTRY_URL}/raw/{app_id}/{full}",
                }
        return httpx.Response(200, headers=headers, json=list(items.values()))

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def make_settings(data_dir: Path, **overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        port=3002,
        log_level="DEBUG",
        log_format="console",
        catalog_dir=data_dir / "config" / "catalog",
        apps_dir=data_dir / "apps",
        manifests_dir=data_dir / "config" / "manifests",
        versions_file=data_dir / "config" / "apps-versions.json",
        registry_repo=REGISTRY_REPO,
        registry_api_url=REGISTRY_URL,
        registry_token=None,
        http_timeout_seconds=5,
        app_label="appliance.app.id",
        stop_timeout_seconds=1,
        restart_settle_seconds=0,
        startup_grace_seconds=30,
        status_cache_ttl_seconds=0,
        worker_start_wait_seconds=0,
        progress_stream_timeout_seconds=5,
        overrides_path=None,
        refresh_on_startup=False,
    )
    values.update(overrides)
    return Settings(**values)


def python_worker(script: str, *extra: str):
    """Worker command factory running `script` with argv [operation, app_id, *extra]."""

    def command(operation: str, app_id: str) -> List[str]:
        return [sys.executable, "-c", script, operation, app_id, *extra]

    return command


# Prints a log line, then two progress lines after an optional delay (argv[3]); the second is final.
COMPLETING_WORKER = """
import json, sys, time
op, app_id = sys.argv[1], sys.argv[2]
delay = float(sys.argv[3]) if len(sys.argv) > 3 else 0.0
print(json.dumps({"type": "log", "message": "starting " + op}), flush=True)
time.sleep(delay)
print(json.dumps({"type": "progress", "appId": app_id, "progress": 50, "message": "half", "stage": "download"}), flush=True)
print(json.dumps({"type": "progress", "appId": app_id, "progress": 100, "message": "done", "stage": "completed"}), flush=True)
"""

FAILING_WORKER = """
import json, sys
app_id = sys.argv[2]
print(json.dumps({"type": "progress", "appId": app_id, "progress": 10, "message": "starting", "stage": "init"}), flush=True)
sys.exit(3)
"""

SLEEPING_WORKER = """
import time
time.sleep(30)
"""


@pytest.fixture
def gateway():
    """Empty in-memory container runtime."""
    return FakeGateway()


@pytest.fixture
def registry():
    """Fake remote registry with a three-entry catalog."""
    return FakeRegistry()


@pytest.fixture
def test_settings(tmp_path):
    """Settings rooted in a temporary data dir, with all delays set to zero."""
    return make_settings(tmp_path)


@pytest.fixture
def app(test_settings, gateway, registry):
    """Create FastAPI app instance wired to the fakes."""
    return create_app(
        test_settings,
        gateway=gateway,
        registry_transport=registry.transport(),
        worker_command=python_worker(COMPLETING_WORKER),
    )


@pytest.fixture
def client(app):
    """Test client with a running event loop shared across requests."""
    with TestClient(app) as c:
        yield c
