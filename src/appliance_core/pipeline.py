from __future__ import annotations

import asyncio
import os
import sys
import time
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set

from .errors import WorkerSpawnFailure
from .log import get_logger
from .messages import Log, ProgressEvent, decode
from .progress import ProgressBroadcaster

logger = get_logger("pipeline")

OPERATIONS = ("install", "update", "uninstall")

# worker stdout lines can carry long log messages
_STREAM_LIMIT = 1024 * 1024


class JobState(str, Enum):
    IDLE = "idle"
    SPAWNED = "spawned"
    COMPLETED = "completed"
    FAILED = "failed"
    REAPED = "reaped"


CommandFactory = Callable[[str, str], Sequence[str]]


def default_worker_command(operation: str, app_id: str) -> List[str]:
    return [sys.executable, "-m", "appliance_core.worker", operation, app_id]


class InstallJob:
    """Handle on one worker process. Exists only while the worker runs."""

    def __init__(self, app_id: str, operation: str, process: asyncio.subprocess.Process) -> None:
        self.app_id = app_id
        self.operation = operation
        self.process = process
        self.started_at = time.time()
        self.state = JobState.SPAWNED
        self.exit_code: Optional[int] = None
        self.outcome: Optional[JobState] = None
        self.cancelled = False
        self._done = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    async def wait(self) -> Optional[int]:
        """Wait until the worker has exited and been reaped; returns its exit code."""
        await self._done.wait()
        return self.exit_code

    def kill(self) -> None:
        self.cancelled = True
        if self.process.returncode is None:
            self.process.kill()

    def to_dict(self) -> Dict[str, object]:
        return {
            "appId": self.app_id,
            "operation": self.operation,
            "pid": self.pid,
            "startedAt": self.started_at,
            "state": self.state.value,
        }


class InstallPipeline:
    """Runs install/update/uninstall in one OS process per invocation.

    Overlapping jobs for the same app id are allowed; each gets its own worker.
    """

    def __init__(
        self,
        broadcaster: ProgressBroadcaster,
        command: CommandFactory = default_worker_command,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._broadcaster = broadcaster
        self._command = command
        self._env = {**os.environ, **env} if env else None
        self._jobs: Dict[str, Set[InstallJob]] = {}

    def active(self) -> List[str]:
        return sorted(self._jobs)

    def jobs_for(self, app_id: str) -> List[InstallJob]:
        return list(self._jobs.get(app_id, ()))

    def is_active(self, app_id: str) -> bool:
        return bool(self._jobs.get(app_id))

    async def spawn(self, app_id: str, operation: str = "install") -> InstallJob:
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation '{operation}'")

        argv = list(self._command(operation, app_id))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
                env=self._env,
            )
        except OSError as e:
            logger.error("worker_spawn_failed", app_id=app_id, operation=operation, error=str(e))
            raise WorkerSpawnFailure(
                f"Could not start {operation} worker for '{app_id}'", {"appId": app_id, "reason": str(e)}
            ) from e

        job = InstallJob(app_id, operation, process)
        self._jobs.setdefault(app_id, set()).add(job)
        job._task = asyncio.create_task(self._supervise(job))
        logger.info("worker_spawned", app_id=app_id, operation=operation, pid=process.pid)
        return job

    async def cancel(self, app_id: str) -> int:
        """Kill every worker for `app_id` out of band. Returns the number of workers killed."""
        jobs = self.jobs_for(app_id)
        for job in jobs:
            job.kill()
        if jobs:
            self._broadcaster.publish(
                ProgressEvent(app_id=app_id, progress=0, message="Installation cancelled", stage="cancelled")
            )
            logger.info("worker_cancelled", app_id=app_id, count=len(jobs))
        return len(jobs)

    async def _supervise(self, job: InstallJob) -> None:
        try:
            await self._relay(job)
            job.exit_code = await job.process.wait()
        except Exception as e:  # noqa: BLE001
            logger.exception("worker_supervision_failed", app_id=job.app_id, error=str(e))
            if job.process.returncode is None:
                job.process.kill()
            job.exit_code = await job.process.wait()
        finally:
            self._finish(job)

    async def _relay(self, job: InstallJob) -> None:
        stdout = job.process.stdout
        if stdout is None:
            return
        while True:
            line = await stdout.readline()
            if not line:
                return
            message = decode(line.decode("utf-8", errors="replace"))
            if isinstance(message, ProgressEvent):
                self._broadcaster.publish(message)
            elif isinstance(message, Log) and message.message:
                logger.info("worker_log", app_id=job.app_id, operation=job.operation, message=message.message)

    def _finish(self, job: InstallJob) -> None:
        code = job.exit_code
        if code == 0:
            job.state = job.outcome = JobState.COMPLETED
            logger.info("worker_exited", app_id=job.app_id, operation=job.operation, exit_code=code)
        else:
            job.state = job.outcome = JobState.FAILED
            if job.cancelled:
                logger.info("worker_killed", app_id=job.app_id, operation=job.operation, exit_code=code)
            else:
                logger.error("worker_failed", app_id=job.app_id, operation=job.operation, exit_code=code)
                self._broadcaster.publish(
                    ProgressEvent(
                        app_id=job.app_id,
                        progress=0,
                        message=f"{job.operation.capitalize()} failed",
                        stage="error",
                    )
                )

        jobs = self._jobs.get(job.app_id)
        if jobs is not None:
            jobs.discard(job)
            if not jobs:
                del self._jobs[job.app_id]
                self._broadcaster.forget(job.app_id)
        job.state = JobState.REAPED
        job._done.set()
