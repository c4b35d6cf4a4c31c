from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Literal, Mapping, Optional

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from . import __version__
from .catalog import CatalogManager
from .errors import AppNotFound, ApplianceError, RegistryFetchFailure
from .health import HealthClassifier
from .lifecycle import LifecycleController
from .log import get_logger
from .manifests import InstalledVersions, ManifestStore
from .overrides import load_overrides
from .pipeline import CommandFactory, InstallPipeline, default_worker_command
from .progress import ProgressBroadcaster
from .registry_client import RegistryClient
from .runtime import DockerGateway, RuntimeGateway
from .settings import Settings, settings_env

logger = get_logger("app")


class InstallRequest(BaseModel):
    operation: Literal["install", "update"] = Field(
        default="install", description="'update' requires the application to be installed"
    )


def _http_error(e: ApplianceError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


def create_app(
    settings: Settings,
    gateway: Optional[RuntimeGateway] = None,
    registry_transport: Optional[httpx.AsyncBaseTransport] = None,
    worker_command: CommandFactory = default_worker_command,
) -> FastAPI:
    overrides = load_overrides(settings.overrides_path)
    gateway = gateway or DockerGateway()
    manifests = ManifestStore(settings.manifests_dir, settings.apps_dir)
    installed = InstalledVersions(settings.versions_file, manifests)
    registry = RegistryClient(
        api_url=settings.registry_api_url,
        repo=settings.registry_repo,
        token=settings.registry_token,
        timeout_seconds=settings.http_timeout_seconds,
        transport=registry_transport,
    )
    catalog = CatalogManager(settings.catalog_dir, registry, installed)
    classifier = HealthClassifier(
        gateway,
        settings.app_label,
        startup_grace_seconds=settings.startup_grace_seconds,
        cache_ttl_seconds=settings.status_cache_ttl_seconds,
        overrides=overrides,
        manifests=manifests,
    )
    lifecycle = LifecycleController(
        gateway,
        classifier,
        stop_timeout_seconds=settings.stop_timeout_seconds,
        restart_settle_seconds=settings.restart_settle_seconds,
    )
    broadcaster = ProgressBroadcaster(timeout_seconds=settings.progress_stream_timeout_seconds)
    pipeline = InstallPipeline(broadcaster, command=worker_command, env=settings_env(settings))

    async def refresh_in_background() -> None:
        try:
            await catalog.refresh_catalog()
        except RegistryFetchFailure as e:
            logger.warning("startup_refresh_failed", error=e.message, **e.details)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        task = asyncio.create_task(refresh_in_background()) if settings.refresh_on_startup else None
        yield
        if task is not None and not task.done():
            task.cancel()

    app = FastAPI(title="Appliance Core", version=__version__, lifespan=lifespan)
    app.state.catalog = catalog
    app.state.pipeline = pipeline
    app.state.broadcaster = broadcaster

    started_at_s = time.time()

    @app.get("/health")
    def health() -> Mapping[str, Any]:
        return {"status": "healthy", "uptime_s": int(time.time() - started_at_s)}

    # Installed applications

    @app.get("/api/apps")
    async def list_apps() -> List[Mapping[str, Any]]:
        try:
            apps = await classifier.list_apps()
        except ApplianceError as e:
            raise _http_error(e)
        return [a.to_dict() for a in apps]

    @app.post("/api/apps/{app_id}/start")
    async def start_app(app_id: str) -> Mapping[str, Any]:
        try:
            result = await lifecycle.start(app_id)
        except ApplianceError as e:
            raise _http_error(e)
        return result.to_dict()

    @app.post("/api/apps/{app_id}/stop")
    async def stop_app(app_id: str) -> Mapping[str, Any]:
        try:
            result = await lifecycle.stop(app_id)
        except ApplianceError as e:
            raise _http_error(e)
        return result.to_dict()

    @app.post("/api/apps/{app_id}/restart")
    async def restart_app(app_id: str) -> Mapping[str, Any]:
        try:
            result = await lifecycle.restart(app_id)
        except ApplianceError as e:
            raise _http_error(e)
        return result.to_dict()

    # App store

    @app.get("/api/appstore/apps")
    def catalog_apps() -> Mapping[str, Any]:
        entries = catalog.list_entries()
        return {"success": True, "count": len(entries), "data": [e.to_dict() for e in entries]}

    @app.get("/api/appstore/apps/{app_id}")
    def catalog_app(app_id: str) -> Mapping[str, Any]:
        entry = catalog.get_entry(app_id)
        if entry is None:
            raise _http_error(AppNotFound(app_id))
        return {"success": True, "data": entry.to_dict()}

    @app.post("/api/appstore/apps/{app_id}/install")
    async def install_app(app_id: str, req: Optional[InstallRequest] = None) -> Mapping[str, Any]:
        operation = req.operation if req else "install"
        if await asyncio.to_thread(catalog.get_entry, app_id) is None:
            raise _http_error(AppNotFound(app_id))
        try:
            await pipeline.spawn(app_id, operation)
        except ApplianceError as e:
            raise _http_error(e)
        return {"success": True, "message": f"{operation.capitalize()} of '{app_id}' started", "appId": app_id}

    @app.post("/api/appstore/apps/{app_id}/cancel")
    async def cancel_install(app_id: str) -> Mapping[str, Any]:
        killed = await pipeline.cancel(app_id)
        if not killed:
            raise HTTPException(
                status_code=404,
                detail={
                    "status": "error",
                    "error": f"No active installation for '{app_id}'",
                    "appId": app_id,
                    "code": "NOT_ACTIVE",
                },
            )
        return {"success": True, "message": f"Installation of '{app_id}' cancelled", "appId": app_id}

    @app.delete("/api/appstore/apps/{app_id}/uninstall")
    async def uninstall_app(app_id: str) -> Mapping[str, Any]:
        try:
            job = await pipeline.spawn(app_id, "uninstall")
        except ApplianceError as e:
            raise _http_error(e)

        exit_code = await job.wait()
        classifier.invalidate()
        if exit_code != 0:
            raise HTTPException(
                status_code=500,
                detail={
                    "status": "error",
                    "error": f"Uninstall of '{app_id}' failed",
                    "appId": app_id,
                    "exitCode": exit_code,
                    "code": "UNINSTALL_FAILED",
                },
            )
        return {"success": True, "message": f"'{app_id}' uninstalled", "appId": app_id, "exitCode": exit_code}

    @app.get("/api/appstore/progress/{app_id}")
    async def progress_stream(app_id: str) -> StreamingResponse:
        initial = broadcaster.last(app_id) if pipeline.is_active(app_id) else None
        return StreamingResponse(
            broadcaster.stream(app_id, initial=initial),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/api/appstore/health")
    def catalog_health() -> Mapping[str, Any]:
        return catalog.get_health()

    @app.get("/api/appstore/rate-limit")
    def rate_limit() -> Mapping[str, Any]:
        return catalog.rate_limit_info()

    @app.get("/api/appstore/active-installations")
    def active_installations() -> Mapping[str, Any]:
        return {"success": True, "installations": pipeline.active()}

    @app.post("/api/appstore/update")
    async def refresh_catalog() -> Mapping[str, Any]:
        try:
            return await catalog.refresh_catalog()
        except RegistryFetchFailure as e:
            logger.warning("catalog_refresh_failed", error=e.message, **e.details)
            raise _http_error(e)

    @app.post("/api/appstore/cache/clear")
    def clear_cache() -> Mapping[str, Any]:
        catalog.clear_cache()
        return {"success": True, "message": "Catalog cache cleared"}

    return app
