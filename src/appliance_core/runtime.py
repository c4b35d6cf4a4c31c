from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

import docker
from docker.errors import APIError, DockerException, NotFound

from .errors import ContainerNotFound, RuntimeUnavailable
from .log import get_logger

logger = get_logger("runtime")


class RuntimeGateway(Protocol):
    """Control/query surface of the container runtime, as consumed by the control plane."""

    async def list_containers(self, all: bool = True) -> List[Mapping[str, Any]]: ...

    async def inspect(self, container_id: str) -> Mapping[str, Any]: ...

    async def start(self, container_id: str) -> None: ...

    async def stop(self, container_id: str, timeout_seconds: int) -> None: ...

    async def kill(self, container_id: str) -> None: ...

    async def remove(self, container_id: str, force: bool = True) -> None: ...


class DockerGateway:
    """RuntimeGateway over the docker SDK's low-level API client.

    The SDK is blocking, so every call runs in a worker thread. Raw list entries
    keep the engine's shape (Id, Names, State, Status, Labels, Ports).
    """

    def __init__(self, base_url: Optional[str] = None, timeout_seconds: int = 60) -> None:
        self._base_url = base_url
        self._timeout = timeout_seconds
        self._api: Optional[docker.APIClient] = None
        self._lock = threading.Lock()

    def _client(self) -> docker.APIClient:
        with self._lock:
            if self._api is None:
                if self._base_url:
                    self._api = docker.APIClient(base_url=self._base_url, timeout=self._timeout)
                else:
                    self._api = docker.from_env(timeout=self._timeout).api
            return self._api

    def _call(self, fn: Callable[[docker.APIClient], Any], container_id: Optional[str] = None) -> Any:
        try:
            return fn(self._client())
        except NotFound as e:
            raise ContainerNotFound(f"Container '{container_id}' not found", {"container": container_id}) from e
        except APIError as e:
            # 304: the container is already in the requested state
            if e.status_code == 304:
                return None
            logger.warning("runtime_api_error", status=e.status_code, reason=str(e))
            raise RuntimeUnavailable(
                "Container runtime request failed", {"reason": str(e), "statusCode": e.status_code}
            ) from e
        except (DockerException, OSError) as e:
            self._api = None
            logger.warning("runtime_unavailable", reason=str(e))
            raise RuntimeUnavailable("Container runtime unavailable", {"reason": str(e)}) from e

    async def list_containers(self, all: bool = True) -> List[Mapping[str, Any]]:
        return await asyncio.to_thread(self._call, lambda api: api.containers(all=all))

    async def inspect(self, container_id: str) -> Mapping[str, Any]:
        attrs: Dict[str, Any] = await asyncio.to_thread(
            self._call, lambda api: api.inspect_container(container_id), container_id
        )
        state = attrs.get("State") or {}
        health = state.get("Health") or {}
        network = attrs.get("NetworkSettings") or {}
        return {
            "mounts": attrs.get("Mounts") or [],
            "health": health.get("Status"),
            "ports": network.get("Ports") or {},
        }

    async def start(self, container_id: str) -> None:
        await asyncio.to_thread(self._call, lambda api: api.start(container_id), container_id)

    async def stop(self, container_id: str, timeout_seconds: int) -> None:
        await asyncio.to_thread(self._call, lambda api: api.stop(container_id, timeout=timeout_seconds), container_id)

    async def kill(self, container_id: str) -> None:
        await asyncio.to_thread(self._call, lambda api: api.kill(container_id), container_id)

    async def remove(self, container_id: str, force: bool = True) -> None:
        await asyncio.to_thread(
            self._call, lambda api: api.remove_container(container_id, force=force), container_id
        )
