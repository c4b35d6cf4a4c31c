from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Dict


@dataclass(frozen=True)
class Settings:
    port: int
    log_level: str
    log_format: str
    catalog_dir: Path
    apps_dir: Path
    manifests_dir: Path
    versions_file: Path
    registry_repo: str
    registry_api_url: str
    registry_token: str | None
    http_timeout_seconds: float
    app_label: str
    stop_timeout_seconds: int
    restart_settle_seconds: float
    startup_grace_seconds: int
    status_cache_ttl_seconds: float
    worker_start_wait_seconds: float
    progress_stream_timeout_seconds: float
    overrides_path: Path | None
    refresh_on_startup: bool


def load_settings() -> Settings:
    port = int(os.getenv("PORT", "3002"))
    log_level = os.getenv("LOG_LEVEL", "INFO")
    log_format = os.getenv("LOG_FORMAT", "console")

    data_dir = Path(os.getenv("DATA_DIR", "/data"))
    catalog_dir = Path(os.getenv("CATALOG_DIR", str(data_dir / "config" / "catalog")))
    apps_dir = Path(os.getenv("APPS_DIR", str(data_dir / "apps")))
    manifests_dir = Path(os.getenv("MANIFESTS_DIR", str(data_dir / "config" / "manifests")))
    versions_file = Path(os.getenv("VERSIONS_FILE", str(data_dir / "config" / "apps-versions.json")))

    registry_repo = os.getenv("REGISTRY_REPO", "appliance/apps")
    registry_api_url = os.getenv("REGISTRY_API_URL", "https://api.github.com").rstrip("/")
    registry_token = os.getenv("REGISTRY_TOKEN") or None

    http_timeout_seconds = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))

    app_label = os.getenv("APP_LABEL", "appliance.app.id")
    stop_timeout_seconds = int(os.getenv("STOP_TIMEOUT_SECONDS", "5"))
    restart_settle_seconds = float(os.getenv("RESTART_SETTLE_SECONDS", "5"))
    startup_grace_seconds = int(os.getenv("STARTUP_GRACE_SECONDS", "30"))
    status_cache_ttl_seconds = float(os.getenv("STATUS_CACHE_TTL_SECONDS", "5"))
    worker_start_wait_seconds = float(os.getenv("WORKER_START_WAIT_SECONDS", "20"))
    progress_stream_timeout_seconds = float(os.getenv("PROGRESS_STREAM_TIMEOUT_SECONDS", str(30 * 60)))

    overrides_env = os.getenv("OVERRIDES_PATH")
    overrides_path = Path(overrides_env) if overrides_env else None

    refresh_on_startup = os.getenv("REFRESH_ON_STARTUP", "true").lower() in {"1", "true", "yes"}

    return Settings(
        port=port,
        log_level=log_level,
        log_format=log_format,
        catalog_dir=catalog_dir,
        apps_dir=apps_dir,
        manifests_dir=manifests_dir,
        versions_file=versions_file,
        registry_repo=registry_repo,
        registry_api_url=registry_api_url,
        registry_token=registry_token,
        http_timeout_seconds=http_timeout_seconds,
        app_label=app_label,
        stop_timeout_seconds=stop_timeout_seconds,
        restart_settle_seconds=restart_settle_seconds,
        startup_grace_seconds=startup_grace_seconds,
        status_cache_ttl_seconds=status_cache_ttl_seconds,
        worker_start_wait_seconds=worker_start_wait_seconds,
        progress_stream_timeout_seconds=progress_stream_timeout_seconds,
        overrides_path=overrides_path,
        refresh_on_startup=refresh_on_startup,
    )


def settings_env(settings: Settings) -> Dict[str, str]:
    """Environment that makes `load_settings()` in a child process return `settings`."""
    env = {
        "PORT": str(settings.port),
        "LOG_LEVEL": settings.log_level,
        "LOG_FORMAT": settings.log_format,
        "CATALOG_DIR": str(settings.catalog_dir),
        "APPS_DIR": str(settings.apps_dir),
        "MANIFESTS_DIR": str(settings.manifests_dir),
        "VERSIONS_FILE": str(settings.versions_file),
        "REGISTRY_REPO": settings.registry_repo,
        "REGISTRY_API_URL": settings.registry_api_url,
        "HTTP_TIMEOUT_SECONDS": str(settings.http_timeout_seconds),
        "APP_LABEL": settings.app_label,
        "STOP_TIMEOUT_SECONDS": str(settings.stop_timeout_seconds),
        "RESTART_SETTLE_SECONDS": str(settings.restart_settle_seconds),
        "STARTUP_GRACE_SECONDS": str(settings.startup_grace_seconds),
        "STATUS_CACHE_TTL_SECONDS": str(settings.status_cache_ttl_seconds),
        "WORKER_START_WAIT_SECONDS": str(settings.worker_start_wait_seconds),
        "PROGRESS_STREAM_TIMEOUT_SECONDS": str(settings.progress_stream_timeout_seconds),
        "REFRESH_ON_STARTUP": "true" if settings.refresh_on_startup else "false",
    }
    if settings.registry_token:
        env["REGISTRY_TOKEN"] = settings.registry_token
    if settings.overrides_path is not None:
        env["OVERRIDES_PATH"] = str(settings.overrides_path)
    return env
