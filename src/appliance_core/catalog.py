from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .files import read_json, write_json
from .log import get_logger
from .manifests import InstalledVersions
from .models import CatalogEntry, VersionStatus, parse_catalog_entry
from .registry_client import RegistryClient
from .versions import compare_versions

logger = get_logger("catalog")


def _iso(epoch_ms: Optional[float]) -> Optional[str]:
    if epoch_ms is None:
        return None
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()


class CatalogManager:
    """Local cache of the remote application catalog.

    Two files live under `catalog_dir`: `apps.json` (the catalog entries as
    published) and `metadata.json` (`releaseTag`, `lastCheck` in epoch ms).
    Both are replaced whole, and only after a fully successful fetch.
    """

    def __init__(self, catalog_dir: Path, registry: RegistryClient, installed: InstalledVersions) -> None:
        self._catalog_dir = catalog_dir
        self._apps_file = catalog_dir / "apps.json"
        self._metadata_file = catalog_dir / "metadata.json"
        self._registry = registry
        self._installed = installed
        self._metadata: Dict[str, Any] = self._load_metadata()

    @property
    def apps_file(self) -> Path:
        return self._apps_file

    @property
    def metadata(self) -> Mapping[str, Any]:
        return dict(self._metadata)

    def _load_metadata(self) -> Dict[str, Any]:
        raw = read_json(self._metadata_file, default={})
        if not isinstance(raw, dict):
            raw = {}
        return {"releaseTag": raw.get("releaseTag"), "lastCheck": raw.get("lastCheck")}

    def load_raw_entries(self) -> Optional[List[Mapping[str, Any]]]:
        data = read_json(self._apps_file)
        if not isinstance(data, list):
            return None
        return [item for item in data if isinstance(item, Mapping)]

    async def refresh_catalog(self) -> Mapping[str, Any]:
        """Fetch the latest release and its catalog, then replace the cache.

        Raises RegistryFetchFailure without touching the cache if any step fails.
        """
        previous_tag = self._metadata.get("releaseTag")
        release = await self._registry.latest_release()
        entries = await self._registry.fetch_catalog(release)

        metadata = {"releaseTag": release.tag, "lastCheck": int(time.time() * 1000)}
        enriched = await asyncio.to_thread(self._store, entries, metadata)
        updates = [e.id for e in enriched if e.update_available]
        logger.info(
            "catalog_refreshed",
            release=release.tag,
            previous=previous_tag,
            entries=len(entries),
            updates=len(updates),
        )
        return {
            "success": True,
            "message": f"Catalog updated to {release.tag}",
            "version": release.tag,
            "appsCount": len(entries),
            "updated": release.tag != previous_tag,
            "updates": updates,
        }

    def _store(self, entries: List[Mapping[str, Any]], metadata: Dict[str, Any]) -> List[CatalogEntry]:
        write_json(self._apps_file, entries)
        write_json(self._metadata_file, metadata)
        self._metadata = metadata
        return self.enrich_with_installed_versions(self._parse(entries))

    def _parse(self, raw_entries: Iterable[Mapping[str, Any]]) -> List[CatalogEntry]:
        entries = []
        for raw in raw_entries:
            try:
                entries.append(parse_catalog_entry(raw))
            except ValueError as e:
                logger.warning("catalog_entry_skipped", error=str(e))
        return entries

    def enrich_with_installed_versions(self, entries: Iterable[CatalogEntry]) -> List[CatalogEntry]:
        installed = self._installed.load()
        enriched = []
        for entry in entries:
            installed_version = installed.get(entry.id)
            if installed_version is None:
                enriched.append(
                    CatalogEntry(id=entry.id, version=entry.version, metadata=entry.metadata)
                )
                continue

            status = compare_versions(installed_version, entry.version)
            enriched.append(
                CatalogEntry(
                    id=entry.id,
                    version=entry.version,
                    metadata=entry.metadata,
                    installed_version=installed_version,
                    update_available=status is VersionStatus.UPDATE_AVAILABLE,
                    version_status=status,
                )
            )
        return enriched

    def list_entries(self) -> List[CatalogEntry]:
        raw = self.load_raw_entries()
        if raw is None:
            return []
        return self.enrich_with_installed_versions(self._parse(raw))

    def get_entry(self, app_id: str) -> Optional[CatalogEntry]:
        for entry in self.list_entries():
            if entry.id == app_id:
                return entry
        return None

    def get_health(self) -> Mapping[str, Any]:
        raw = self.load_raw_entries()
        last_check = self._metadata.get("lastCheck")
        since = None
        if last_check is not None:
            since = max(0, int(time.time() - last_check / 1000))
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "registryRepo": self._registry.repo,
            "storage": {
                "type": "file",
                "hasData": raw is not None,
                "dataFile": str(self._apps_file),
                "entryCount": len(raw) if raw is not None else 0,
                "releaseTag": self._metadata.get("releaseTag"),
                "lastCheck": _iso(last_check),
                "secondsSinceLastCheck": since,
            },
        }

    def rate_limit_info(self) -> Mapping[str, Any]:
        return self._registry.rate_limit_info()

    def clear_cache(self) -> None:
        self._apps_file.unlink(missing_ok=True)
        self._metadata_file.unlink(missing_ok=True)
        self._metadata = {"releaseTag": None, "lastCheck": None}
        logger.info("catalog_cache_cleared")
