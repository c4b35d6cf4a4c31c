from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class HealthState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class AppStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    PARTIAL = "partial"


class VersionStatus(str, Enum):
    UP_TO_DATE = "up-to-date"
    UPDATE_AVAILABLE = "update-available"
    AHEAD = "ahead"


@dataclass(frozen=True)
class ContainerRecord:
    id: str
    name: str
    app_id: Optional[str]
    state: str
    status: str
    health: HealthState
    ports: tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state,
            "status": self.status,
            "health": self.health.value,
        }


@dataclass(frozen=True)
class HealthCounts:
    total: int = 0
    healthy: int = 0
    starting: int = 0
    unhealthy: int = 0
    stopped: int = 0

    @property
    def running(self) -> int:
        return self.healthy + self.starting + self.unhealthy


@dataclass(frozen=True)
class AppRecord:
    id: str
    name: str
    containers: List[ContainerRecord]
    status: AppStatus
    progress: int
    counts: HealthCounts
    ports: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "progress": self.progress,
            "containersTotal": self.counts.total,
            "containersRunning": self.counts.running,
            "containersHealthy": self.counts.healthy,
            "containersStarting": self.counts.starting,
            "containersUnhealthy": self.counts.unhealthy,
            "containersStopped": self.counts.stopped,
            "ports": list(self.ports),
            "containers": [c.to_dict() for c in self.containers],
        }


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    version: str
    metadata: Mapping[str, Any]
    installed_version: Optional[str] = None
    update_available: bool = False
    version_status: Optional[VersionStatus] = None

    @property
    def installed(self) -> bool:
        return self.installed_version is not None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            k: v
            for k, v in self.metadata.items()
            if k not in {"installed", "installedVersion", "updateAvailable", "versionStatus"}
        }
        data["id"] = self.id
        data["version"] = self.version
        data["installed"] = self.installed

        gallery = self.metadata.get("gallery")
        if isinstance(gallery, list):
            urls = [str(u) for u in gallery]
            data["icon"] = next((u for u in urls if "icon" in u.lower()), None)
            data["previews"] = [u for u in urls if "icon" not in u.lower()]
        else:
            data["icon"] = None
            data["previews"] = []

        if self.installed:
            data["installedVersion"] = self.installed_version
            data["updateAvailable"] = self.update_available
            data["versionStatus"] = self.version_status.value if self.version_status else None
        return data


def _as_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, str):
        return value
    return str(value)


def parse_catalog_entry(data: Mapping[str, Any]) -> CatalogEntry:
    app_id = _as_str(data.get("id")).strip()
    version = _as_str(data.get("version")).strip()

    if not app_id:
        raise ValueError("Invalid catalog entry: missing required field 'id'")

    return CatalogEntry(id=app_id, version=version, metadata=dict(data))
