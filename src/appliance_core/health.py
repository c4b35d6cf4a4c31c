from __future__ import annotations

import re
import time
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .log import get_logger
from .manifests import ManifestStore
from .models import AppRecord, AppStatus, ContainerRecord, HealthCounts, HealthState
from .overrides import DEFAULT_TRANSIENT_MARKERS, Overrides
from .runtime import RuntimeGateway

logger = get_logger("health")

_HEALTH_PHASE_RE = re.compile(r"\(([^)]+)\)")
_SECONDS_RE = re.compile(r"(\d+)\s+seconds?\b", re.IGNORECASE)


def container_name(raw: Mapping[str, Any]) -> str:
    names = raw.get("Names") or []
    if names:
        return str(names[0]).lstrip("/")
    return str(raw.get("Name") or "").lstrip("/")


def is_transient(name: str, markers: Sequence[str] = DEFAULT_TRANSIENT_MARKERS) -> bool:
    return any(marker in name for marker in markers)


def belongs_to(raw: Mapping[str, Any], app_id: str, app_label: str) -> bool:
    labels = raw.get("Labels") or {}
    if labels.get(app_label) == app_id:
        return True
    name = container_name(raw)
    return name == f"app-{app_id}" or name.startswith(f"app-{app_id}-")


def app_id_for(raw: Mapping[str, Any], app_label: str, known_ids: Iterable[str] = ()) -> Optional[str]:
    """Resolve the owning app id: label, then the longest known id, then the first name segment."""
    labels = raw.get("Labels") or {}
    labelled = labels.get(app_label)
    if isinstance(labelled, str) and labelled:
        return labelled

    name = container_name(raw)
    if not name.startswith("app-"):
        return None
    for app_id in sorted(known_ids, key=len, reverse=True):
        if belongs_to(raw, app_id, app_label):
            return app_id
    rest = name[len("app-"):]
    return rest.split("-", 1)[0] or None


def _health_phase(status: str) -> Optional[HealthState]:
    match = _HEALTH_PHASE_RE.search(status)
    if not match:
        return None
    phase = match.group(1).lower()
    if "unhealthy" in phase:
        return HealthState.UNHEALTHY
    if "starting" in phase:
        return HealthState.STARTING
    if "healthy" in phase:
        return HealthState.HEALTHY
    return None


def _within_grace(status: str, grace_seconds: int) -> bool:
    text = status.lower()
    if "less than a second" in text:
        return True
    match = _SECONDS_RE.search(text)
    return bool(match) and int(match.group(1)) < grace_seconds


def classify(state: str, status: str = "", grace_seconds: int = 30) -> HealthState:
    """Map one container's raw runtime state and status text to a HealthState."""
    state = (state or "").lower()
    status = status or ""

    if state in {"created", "restarting"}:
        return HealthState.STARTING

    if state == "running":
        phase = _health_phase(status)
        if phase is not None:
            return phase
        if _within_grace(status, grace_seconds):
            return HealthState.STARTING
        # no health probe configured: healthy once past the startup grace window
        return HealthState.HEALTHY

    # exited, dead, paused, removing and anything unrecognised
    return HealthState.STOPPED


def count_states(states: Iterable[HealthState]) -> HealthCounts:
    counter = Counter(states)
    return HealthCounts(
        total=sum(counter.values()),
        healthy=counter[HealthState.HEALTHY],
        starting=counter[HealthState.STARTING],
        unhealthy=counter[HealthState.UNHEALTHY],
        stopped=counter[HealthState.STOPPED],
    )


def aggregate(states: Iterable[HealthState]) -> Tuple[AppStatus, int, HealthCounts]:
    """Fold per-container states into (status, progress, counts).

    Depends only on the multiset of states, never on their order.
    """
    counts = count_states(states)
    total = counts.total

    if total == 0:
        return AppStatus.STOPPED, 0, counts

    # round half up
    progress = (counts.healthy * 200 + total) // (2 * total)

    if counts.healthy == total:
        return AppStatus.RUNNING, 100, counts
    if counts.stopped == total:
        return AppStatus.STOPPED, 0, counts
    if counts.stopped > 0:
        return AppStatus.PARTIAL, progress, counts
    if counts.starting > 0:
        return AppStatus.STARTING, progress, counts
    return AppStatus.PARTIAL, progress, counts


def public_ports(raw: Mapping[str, Any]) -> Tuple[int, ...]:
    ports = []
    for port in raw.get("Ports") or []:
        public = port.get("PublicPort") if isinstance(port, Mapping) else None
        if public:
            ports.append(int(public))
    return tuple(ports)


def to_container_record(raw: Mapping[str, Any], app_id: Optional[str], grace_seconds: int = 30) -> ContainerRecord:
    state = str(raw.get("State") or "")
    status = str(raw.get("Status") or "")
    return ContainerRecord(
        id=str(raw.get("Id") or ""),
        name=container_name(raw),
        app_id=app_id,
        state=state,
        status=status,
        health=classify(state, status, grace_seconds),
        ports=public_ports(raw),
    )


def build_app_record(app_id: str, name: str, containers: Sequence[ContainerRecord]) -> AppRecord:
    status, progress, counts = aggregate(c.health for c in containers)
    ports = sorted({p for c in containers for p in c.ports})
    return AppRecord(
        id=app_id,
        name=name,
        containers=list(containers),
        status=status,
        progress=progress,
        counts=counts,
        ports=ports,
    )


class HealthClassifier:
    def __init__(
        self,
        gateway: RuntimeGateway,
        app_label: str,
        startup_grace_seconds: int = 30,
        cache_ttl_seconds: float = 5.0,
        overrides: Optional[Overrides] = None,
        manifests: Optional[ManifestStore] = None,
    ) -> None:
        self._gateway = gateway
        self._app_label = app_label
        self._grace = startup_grace_seconds
        self._cache_ttl_seconds = cache_ttl_seconds
        self._overrides = overrides or Overrides()
        self._manifests = manifests
        self._cached_at_s: float = 0.0
        self._cached: List[AppRecord] = []

    @property
    def transient_markers(self) -> Sequence[str]:
        return self._overrides.transient_markers

    def invalidate(self) -> None:
        self._cached_at_s = 0.0
        self._cached = []

    async def containers_for(self, app_id: str, include_transient: bool = False) -> List[Mapping[str, Any]]:
        """Raw runtime entries of every container belonging to `app_id`."""
        containers = await self._gateway.list_containers(all=True)
        matched = []
        for raw in containers:
            if not belongs_to(raw, app_id, self._app_label):
                continue
            if not include_transient and is_transient(container_name(raw), self.transient_markers):
                continue
            matched.append(raw)
        return matched

    async def app_status(self, app_id: str) -> AppRecord:
        containers = await self.containers_for(app_id)
        records = [to_container_record(raw, app_id, self._grace) for raw in containers]
        return build_app_record(app_id, self._display_name(app_id), records)

    async def list_apps(self, force: bool = False) -> List[AppRecord]:
        now = time.time()
        if not force and self._cached_at_s and (now - self._cached_at_s) < self._cache_ttl_seconds:
            return self._cached

        containers = await self._gateway.list_containers(all=True)
        grouped: Dict[str, List[ContainerRecord]] = {}

        manifest_names: Dict[str, str] = {}
        if self._manifests is not None:
            for manifest in self._manifests.list_installed():
                app_id = str(manifest["id"])
                grouped.setdefault(app_id, [])
                if manifest.get("name"):
                    manifest_names[app_id] = str(manifest["name"])

        # installed ids claim their containers before the name is split
        installed_ids = list(grouped)
        for raw in containers:
            name = container_name(raw)
            if is_transient(name, self.transient_markers):
                continue
            app_id = app_id_for(raw, self._app_label, installed_ids)
            if app_id is None:
                continue
            grouped.setdefault(app_id, []).append(to_container_record(raw, app_id, self._grace))

        records = [
            build_app_record(
                app_id,
                self._overrides.display_names.get(app_id) or manifest_names.get(app_id) or app_id,
                grouped[app_id],
            )
            for app_id in sorted(grouped)
        ]
        logger.debug("apps_classified", count=len(records))

        self._cached = records
        self._cached_at_s = now
        return records

    def _display_name(self, app_id: str) -> str:
        if app_id in self._overrides.display_names:
            return self._overrides.display_names[app_id]
        if self._manifests is not None:
            manifest = self._manifests.get(app_id)
            if manifest and manifest.get("name"):
                return str(manifest["name"])
        return app_id
