from __future__ import annotations

from typing import Any, Mapping, Optional


class ApplianceError(Exception):
    code = "ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_detail(self) -> Mapping[str, Any]:
        return {"status": "error", "error": self.message, "code": self.code, **self.details}


class RuntimeUnavailable(ApplianceError):
    """The container runtime could not be reached."""

    code = "RUNTIME_UNAVAILABLE"
    status_code = 500


class ContainerNotFound(ApplianceError):
    code = "CONTAINER_NOT_FOUND"
    status_code = 404


class NoMatchingContainers(ApplianceError):
    """The application id resolved to zero containers (as opposed to containers that are all stopped)."""

    code = "NO_CONTAINERS"
    status_code = 404

    def __init__(self, app_id: str) -> None:
        super().__init__(f"No containers found for application '{app_id}'", {"appId": app_id})
        self.app_id = app_id


class RegistryFetchFailure(ApplianceError):
    code = "REGISTRY_FETCH_FAILED"
    status_code = 502


class WorkerSpawnFailure(ApplianceError):
    code = "WORKER_SPAWN_FAILED"
    status_code = 500


class AppNotFound(ApplianceError):
    """The application id is not in the local catalog."""

    code = "APP_NOT_FOUND"
    status_code = 404

    def __init__(self, app_id: str) -> None:
        super().__init__(f"Application '{app_id}' not found in catalog", {"appId": app_id})
        self.app_id = app_id
