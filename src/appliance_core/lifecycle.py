from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping

from .errors import NoMatchingContainers
from .health import HealthClassifier, container_name
from .log import get_logger
from .runtime import RuntimeGateway

logger = get_logger("lifecycle")

_LIVE_STATES = {"running", "restarting"}


@dataclass(frozen=True)
class StartResult:
    app_id: str
    started_count: int
    error_count: int

    @property
    def success(self) -> bool:
        return self.error_count == 0

    @property
    def message(self) -> str:
        return f"{self.started_count} container(s) started, {self.error_count} failure(s)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "appId": self.app_id,
            "startedCount": self.started_count,
            "errorCount": self.error_count,
        }


@dataclass(frozen=True)
class StopResult:
    app_id: str
    stopped_count: int
    killed_count: int
    error_count: int

    @property
    def success(self) -> bool:
        return self.error_count == 0

    @property
    def message(self) -> str:
        text = f"{self.stopped_count} container(s) stopped, {self.error_count} failure(s)"
        if self.killed_count:
            text += f" ({self.killed_count} killed after stop timeout)"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "appId": self.app_id,
            "stoppedCount": self.stopped_count,
            "killedCount": self.killed_count,
            "errorCount": self.error_count,
        }


@dataclass(frozen=True)
class RestartResult:
    app_id: str
    stop: StopResult
    start: StartResult

    @property
    def success(self) -> bool:
        return self.stop.success and self.start.success

    @property
    def message(self) -> str:
        return f"stop: {self.stop.message}; start: {self.start.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "appId": self.app_id,
            "stop": self.stop.to_dict(),
            "start": self.start.to_dict(),
        }


class LifecycleController:
    """Start/stop/restart every container of an application.

    Every target in the group is attempted; per-container failures are logged
    and tallied in the result, never raised. Calls for the same app id are not
    serialised against each other.
    """

    def __init__(
        self,
        gateway: RuntimeGateway,
        classifier: HealthClassifier,
        stop_timeout_seconds: int = 5,
        restart_settle_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._gateway = gateway
        self._classifier = classifier
        self._stop_timeout = stop_timeout_seconds
        self._settle_seconds = restart_settle_seconds
        self._sleep = sleep

    async def _resolve(self, app_id: str, include_transient: bool) -> List[Mapping[str, Any]]:
        containers = await self._classifier.containers_for(app_id, include_transient=include_transient)
        if not containers:
            raise NoMatchingContainers(app_id)
        return containers

    async def start(self, app_id: str) -> StartResult:
        # one-shot helpers (migrations, seeders...) are not relaunched
        containers = await self._resolve(app_id, include_transient=False)

        started = 0
        errors = 0
        for raw in containers:
            if raw.get("State") in _LIVE_STATES:
                continue
            name = container_name(raw)
            try:
                await self._gateway.start(str(raw["Id"]))
                started += 1
            except Exception as e:  # noqa: BLE001
                errors += 1
                logger.warning("container_start_failed", app_id=app_id, container=name, error=str(e))

        self._classifier.invalidate()
        result = StartResult(app_id=app_id, started_count=started, error_count=errors)
        logger.info("app_started", app_id=app_id, started=started, errors=errors)
        return result

    async def stop(self, app_id: str) -> StopResult:
        containers = await self._resolve(app_id, include_transient=True)

        stopped = 0
        killed = 0
        errors = 0
        for raw in containers:
            if raw.get("State") not in _LIVE_STATES:
                continue
            container_id = str(raw["Id"])
            name = container_name(raw)
            try:
                await self._gateway.stop(container_id, self._stop_timeout)
                stopped += 1
                continue
            except Exception as e:  # noqa: BLE001
                logger.warning("container_stop_failed", app_id=app_id, container=name, error=str(e))

            try:
                await self._gateway.kill(container_id)
                stopped += 1
                killed += 1
            except Exception as e:  # noqa: BLE001
                errors += 1
                logger.error("container_kill_failed", app_id=app_id, container=name, error=str(e))

        self._classifier.invalidate()
        result = StopResult(app_id=app_id, stopped_count=stopped, killed_count=killed, error_count=errors)
        logger.info("app_stopped", app_id=app_id, stopped=stopped, killed=killed, errors=errors)
        return result

    async def restart(self, app_id: str) -> RestartResult:
        stop_result = await self.stop(app_id)
        # let the runtime release bound ports and mounts before starting again
        await self._sleep(self._settle_seconds)
        start_result = await self.start(app_id)
        return RestartResult(app_id=app_id, stop=stop_result, start=start_result)
