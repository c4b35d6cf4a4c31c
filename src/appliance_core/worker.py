"""
Install/update/uninstall worker.

Run as `python -m appliance_core.worker {install|update|uninstall} <appId>`.
Every message for the control plane is a JSON line on stdout (see
`appliance_core.messages`); logs go to stderr. Exit code 0 on success, 1 on
failure or timeout.
"""
from __future__ import annotations

import argparse
import asyncio
import shutil
import socket
import sys
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, List, Mapping, Optional, Sequence

import yaml

from .catalog import CatalogManager
from .health import HealthClassifier, container_name
from .log import get_logger, setup_logging
from .manifests import InstalledVersions, ManifestStore
from .messages import Log, ProgressEvent, WorkerMessage, encode
from .overrides import load_overrides
from .registry_client import RegistryClient
from .runtime import DockerGateway, RuntimeGateway
from .settings import Settings, load_settings

logger = get_logger("worker")

INSTALL_TIMEOUT_SECONDS = 10 * 60
UNINSTALL_TIMEOUT_SECONDS = 5 * 60

COMPOSE_FILES = ("docker-compose.yml", "docker-compose.yaml")


class WorkerError(Exception):
    pass


def send(message: WorkerMessage) -> None:
    sys.stdout.write(encode(message) + "\n")
    sys.stdout.flush()


def local_ip() -> str:
    # no packet is sent; connect() on UDP only selects the outbound interface
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("10.255.255.255", 1))
        return str(sock.getsockname()[0])
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()


def find_compose_file(app_dir: Path, manifest: Optional[Mapping[str, Any]] = None) -> Optional[Path]:
    if manifest and manifest.get("dockerComposePath"):
        candidate = app_dir / str(manifest["dockerComposePath"])
        if candidate.exists():
            return candidate
    for name in COMPOSE_FILES:
        candidate = app_dir / name
        if candidate.exists():
            return candidate
    return None


def compose_declared_container_names(compose_file: Path) -> List[str]:
    try:
        data = yaml.safe_load(compose_file.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        logger.warning("compose_unreadable", path=str(compose_file), error=str(e))
        return []
    if not isinstance(data, dict):
        return []
    services = data.get("services")
    if not isinstance(services, dict):
        return []

    names: List[str] = []
    for svc in services.values():
        if isinstance(svc, dict):
            cn = svc.get("container_name")
            if isinstance(cn, str) and cn.strip() and cn.strip() not in names:
                names.append(cn.strip())
    return names


def safe_target(app_dir: Path, relative: str) -> Path:
    parts = PurePosixPath(relative).parts
    if not parts or any(p in ("..", "") for p in parts) or PurePosixPath(relative).is_absolute():
        raise WorkerError(f"Refusing to write outside the app directory: {relative}")
    return app_dir.joinpath(*parts)


async def compose(args: Sequence[str], cwd: Path) -> None:
    """Run `docker compose ...`; its output goes to our stderr."""
    cmd = ["docker", "compose", *args]
    logger.info("compose_run", cmd=" ".join(cmd), cwd=str(cwd))
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=sys.stderr.fileno(),
        )
    except OSError as e:
        raise WorkerError(f"Could not run docker compose: {e}") from e
    try:
        code = await process.wait()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
        raise
    if code != 0:
        raise WorkerError(f"'{' '.join(cmd)}' exited with code {code}")


def _exit_code(status: str) -> Optional[int]:
    # docker status text: "Exited (137) 2 minutes ago"
    if not status.startswith("Exited ("):
        return None
    inner = status[len("Exited (") :].split(")", 1)[0]
    try:
        return int(inner)
    except ValueError:
        return None


class Worker:
    def __init__(
        self,
        settings: Settings,
        app_id: str,
        gateway: Optional[RuntimeGateway] = None,
        registry: Optional[RegistryClient] = None,
    ) -> None:
        self.settings = settings
        self.app_id = app_id
        self.gateway = gateway or DockerGateway()
        self.registry = registry or RegistryClient(
            api_url=settings.registry_api_url,
            repo=settings.registry_repo,
            token=settings.registry_token,
            timeout_seconds=settings.http_timeout_seconds,
        )
        self.manifests = ManifestStore(settings.manifests_dir, settings.apps_dir)
        self.installed = InstalledVersions(settings.versions_file, self.manifests)
        self.catalog = CatalogManager(settings.catalog_dir, self.registry, self.installed)
        self.classifier = HealthClassifier(
            self.gateway,
            settings.app_label,
            startup_grace_seconds=settings.startup_grace_seconds,
            cache_ttl_seconds=0,
            overrides=load_overrides(settings.overrides_path),
        )

    def progress(self, value: float, message: str, stage: str) -> None:
        send(ProgressEvent(app_id=self.app_id, progress=int(value), message=message, stage=stage))

    def log(self, message: str) -> None:
        send(Log(message=message))

    async def install(self, update: bool = False) -> None:
        app_id = self.app_id
        existing = self.manifests.get(app_id)
        if update and existing is None:
            raise WorkerError(f"'{app_id}' is not installed")
        is_update = existing is not None
        verb = "Updating" if is_update else "Installing"

        self.progress(0, f"{verb} {app_id}", "init")
        entry = self.catalog.get_entry(app_id)
        if entry is None:
            raise WorkerError(f"'{app_id}' is not in the catalog")
        self.progress(2, "Catalog entry found", "init")

        release = await self.registry.latest_release()
        self.progress(3, f"Using release {release.tag}", "download")

        app_dir = self.manifests.source_dir(app_id, existing)
        created = not app_dir.exists()
        try:
            await self._download(app_dir, release.tag)
        except Exception:
            if created:
                shutil.rmtree(app_dir, ignore_errors=True)
            raise

        compose_file = find_compose_file(app_dir, existing)
        if compose_file is None:
            raise WorkerError(f"No docker-compose.yml found for '{app_id}'")
        self.progress(66, "Compose file found", "prepare")

        env_file = app_dir / ".env"
        if not env_file.exists():
            env_file.write_text(f"LOCAL_IP={local_ip()}\n", encoding="utf-8")
            self.log(f"Wrote {env_file}")

        await self._remove_stale_containers(compose_file)
        self.progress(70, "Starting containers", "start")

        args = ["-f", compose_file.name, "up", "-d"]
        if is_update:
            args.append("--build")
        await compose(args, cwd=compose_file.parent)

        await self._wait_for_start()
        await self._verify()
        self.progress(92, "Containers are running", "verify")

        manifest = {
            "id": app_id,
            "name": str(entry.metadata.get("name") or app_id),
            "version": entry.version,
            "sourceDir": str(app_dir),
            "dockerComposePath": compose_file.relative_to(app_dir).as_posix(),
            "installedAt": datetime.now(timezone.utc).isoformat(),
        }
        self.manifests.write(app_id, manifest)
        self.installed.record(app_id, entry.version)
        self.progress(95, "Manifest written", "finalize")

        logger.info("install_completed", app_id=app_id, version=entry.version, update=is_update)
        self.progress(100, f"{app_id} {'updated' if is_update else 'installed'}", "completed")

    async def _download(self, app_dir: Path, ref: str) -> None:
        files = await self.registry.list_app_files(self.app_id, ref)
        if not files:
            raise WorkerError(f"No files published for '{self.app_id}' at {ref}")
        app_dir.mkdir(parents=True, exist_ok=True)
        for index, (relative, url) in enumerate(files, start=1):
            target = safe_target(app_dir, relative)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(await self.registry.download(url))
            self.progress(5 + 60 * index / len(files), f"Downloaded {relative}", "download")

    async def _remove_stale_containers(self, compose_file: Optional[Path]) -> None:
        stale = set(compose_declared_container_names(compose_file)) if compose_file else set()
        prefix = f"app-{self.app_id}"
        containers = await self.gateway.list_containers(all=True)
        for raw in containers:
            name = container_name(raw)
            if name in stale or name == prefix or name.startswith(prefix + "-"):
                await self.gateway.remove(str(raw.get("Id")), force=True)
                self.log(f"Removed stale container {name}")

    async def _wait_for_start(self) -> None:
        steps = 10
        delay = self.settings.worker_start_wait_seconds / steps
        for step in range(1, steps + 1):
            await asyncio.sleep(delay)
            self.progress(75 + 15 * step / steps, "Waiting for containers", "start")

    async def _verify(self) -> None:
        containers = await self.classifier.containers_for(self.app_id)
        if not containers:
            raise WorkerError(f"No containers found for '{self.app_id}' after start")

        failed = []
        live = 0
        for raw in containers:
            state = str(raw.get("State") or "").lower()
            if state in ("running", "restarting"):
                live += 1
            code = _exit_code(str(raw.get("Status") or ""))
            if code:
                failed.append(f"{container_name(raw)} (exit {code})")
        if failed:
            raise WorkerError("Containers exited with errors: " + ", ".join(failed))
        if not live:
            raise WorkerError(f"No container of '{self.app_id}' is running")

    async def uninstall(self) -> None:
        app_id = self.app_id
        manifest = self.manifests.get(app_id)
        if manifest is None:
            raise WorkerError(f"'{app_id}' is not installed")
        self.progress(0, f"Uninstalling {app_id}", "init")

        app_dir = self.manifests.source_dir(app_id, manifest)
        compose_file = find_compose_file(app_dir, manifest)
        if compose_file is not None:
            try:
                await compose(["-f", compose_file.name, "down", "-v"], cwd=compose_file.parent)
            except WorkerError as e:
                # leftover containers get removed below
                logger.warning("compose_down_failed", app_id=app_id, error=str(e))
        self.progress(40, "Containers stopped", "stop")

        await self._remove_stale_containers(compose_file)
        if app_dir.exists():
            shutil.rmtree(app_dir)
        self.progress(70, "Files removed", "cleanup")

        self.manifests.remove(app_id)
        self.installed.forget(app_id)
        logger.info("uninstall_completed", app_id=app_id)
        self.progress(100, f"{app_id} uninstalled", "completed")


async def run(operation: str, worker: Worker) -> None:
    if operation == "uninstall":
        await asyncio.wait_for(worker.uninstall(), timeout=UNINSTALL_TIMEOUT_SECONDS)
    else:
        await asyncio.wait_for(worker.install(update=operation == "update"), timeout=INSTALL_TIMEOUT_SECONDS)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="appliance-worker")
    parser.add_argument("operation", choices=["install", "update", "uninstall"])
    parser.add_argument("app_id")
    args = parser.parse_args(argv)

    settings = load_settings()
    setup_logging(settings.log_level, settings.log_format, stream=sys.stderr)

    try:
        asyncio.run(run(args.operation, Worker(settings, args.app_id)))
    except asyncio.TimeoutError:
        logger.error("worker_timeout", app_id=args.app_id, operation=args.operation)
        send(ProgressEvent(app_id=args.app_id, progress=0, message=f"{args.operation} timed out", stage="error"))
        return 1
    except Exception as e:  # noqa: BLE001
        logger.exception("worker_failed", app_id=args.app_id, operation=args.operation)
        send(ProgressEvent(app_id=args.app_id, progress=0, message=str(e) or type(e).__name__, stage="error"))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
