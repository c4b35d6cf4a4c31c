from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .files import read_json, write_json
from .log import get_logger

logger = get_logger("manifests")


class ManifestStore:
    """Installed applications, one `<manifests_dir>/<appId>/manifest.json` per app.

    A manifest carries at least `id`, and usually `name`, `version`, `sourceDir`
    and `dockerComposePath` (relative to `sourceDir`).
    """

    def __init__(self, manifests_dir: Path, apps_dir: Path) -> None:
        self._manifests_dir = manifests_dir
        self._apps_dir = apps_dir

    def path_for(self, app_id: str) -> Path:
        return self._manifests_dir / app_id / "manifest.json"

    def source_dir(self, app_id: str, manifest: Optional[Mapping[str, Any]] = None) -> Path:
        if manifest and manifest.get("sourceDir"):
            return Path(str(manifest["sourceDir"]))
        return self._apps_dir / app_id

    def get(self, app_id: str) -> Optional[Mapping[str, Any]]:
        data = read_json(self.path_for(app_id))
        if not isinstance(data, dict) or not data.get("id"):
            return None
        return data

    def list_installed(self) -> List[Mapping[str, Any]]:
        if not self._manifests_dir.exists():
            return []

        manifests: List[Mapping[str, Any]] = []
        for entry in sorted(self._manifests_dir.iterdir()):
            if not entry.is_dir():
                continue
            manifest = self.get(entry.name)
            if manifest is None:
                continue
            # manually removed apps leave a manifest behind without their source dir
            if not self.source_dir(entry.name, manifest).exists():
                logger.info("manifest_without_source", app_id=entry.name)
                continue
            manifests.append(manifest)
        return manifests

    def write(self, app_id: str, manifest: Mapping[str, Any]) -> None:
        write_json(self.path_for(app_id), dict(manifest))

    def remove(self, app_id: str) -> None:
        shutil.rmtree(self._manifests_dir / app_id, ignore_errors=True)


class InstalledVersions:
    """The installed-version snapshot: a JSON object mapping app id to version string."""

    def __init__(self, path: Path, manifests: Optional[ManifestStore] = None) -> None:
        self._path = path
        self._manifests = manifests

    @property
    def path(self) -> Path:
        return self._path

    def _read_file(self) -> Dict[str, str]:
        raw = read_json(self._path, default={})
        if not isinstance(raw, dict):
            return {}
        return {str(k): str(v) for k, v in raw.items() if v is not None and str(v).strip()}

    def load(self) -> Dict[str, str]:
        installed = self._read_file()
        if installed or self._manifests is None:
            return installed

        # no snapshot yet: fall back to versions recorded in manifests
        for manifest in self._manifests.list_installed():
            version = manifest.get("version")
            if version is not None and str(version).strip():
                installed[str(manifest["id"])] = str(version).strip()
        return installed

    def record(self, app_id: str, version: str) -> None:
        installed = self._read_file()
        installed[app_id] = version
        write_json(self._path, installed)

    def forget(self, app_id: str) -> None:
        installed = self._read_file()
        if installed.pop(app_id, None) is not None:
            write_json(self._path, installed)
