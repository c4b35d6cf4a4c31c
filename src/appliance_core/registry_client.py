from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from .errors import RegistryFetchFailure
from .log import get_logger

logger = get_logger("registry")

USER_AGENT = "appliance-core"
CATALOG_ASSET = "apps.json"


@dataclass(frozen=True)
class ReleaseAsset:
    name: str
    url: str
    browser_download_url: Optional[str] = None


@dataclass(frozen=True)
class Release:
    tag: str
    name: str
    published_at: Optional[str]
    assets: Tuple[ReleaseAsset, ...]

    def asset(self, name: str) -> Optional[ReleaseAsset]:
        for asset in self.assets:
            if asset.name == name:
                return asset
        return None


class RegistryClient:
    """HTTPS client for the remote application registry (GitHub releases/contents API shape)."""

    def __init__(
        self,
        api_url: str,
        repo: str,
        token: Optional[str] = None,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._repo = repo
        self._token = token
        self._timeout = timeout_seconds
        self._transport = transport
        self._rate_limit: Dict[str, Any] = {"limit": None, "remaining": None, "reset": None, "lastCheck": None}

    @property
    def repo(self) -> str:
        return self._repo

    def _headers(self, accept: str) -> Dict[str, str]:
        headers = {"Accept": accept, "User-Agent": USER_AGENT}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport, follow_redirects=True)

    async def _get(self, url: str, accept: str, params: Optional[Mapping[str, str]] = None) -> httpx.Response:
        async with self._client() as client:
            try:
                r = await client.get(url, headers=self._headers(accept), params=params)
            except httpx.HTTPError as e:
                raise RegistryFetchFailure("Registry unreachable", {"url": url, "reason": str(e)}) from e

        self._track_rate_limit(r)
        if r.status_code >= 400:
            raise _status_error(r, url)
        return r

    def _track_rate_limit(self, response: httpx.Response) -> None:
        limit = response.headers.get("x-ratelimit-limit")
        remaining = response.headers.get("x-ratelimit-remaining")
        reset = response.headers.get("x-ratelimit-reset")
        if not (limit and remaining and reset):
            return
        try:
            self._rate_limit = {
                "limit": int(limit),
                "remaining": int(remaining),
                "reset": int(reset),
                "lastCheck": datetime.now(timezone.utc).isoformat(),
            }
        except ValueError:
            return
        if self._rate_limit["remaining"] < self._rate_limit["limit"] * 0.2:
            logger.warning("registry_rate_limit_low", **self._rate_limit)

    def rate_limit_info(self) -> Mapping[str, Any]:
        info: Dict[str, Any] = {**self._rate_limit, "hasToken": bool(self._token)}
        limit = info["limit"]
        remaining = info["remaining"]
        if not limit:
            info["status"] = "unknown"
        elif remaining == 0:
            info["status"] = "exceeded"
        elif remaining < 10:
            info["status"] = "critical"
        elif remaining < limit * 0.2:
            info["status"] = "warning"
        else:
            info["status"] = "ok"
        if limit and remaining is not None:
            info["percentRemaining"] = round(remaining / limit * 100, 1)
        return info

    async def latest_release(self) -> Release:
        url = f"{self._api_url}/repos/{self._repo}/releases/latest"
        r = await self._get(url, "application/vnd.github+json")
        data = _json(r, url)
        if not isinstance(data, Mapping) or not data.get("tag_name"):
            raise RegistryFetchFailure("Malformed release descriptor", {"url": url})

        assets = []
        for item in data.get("assets") or []:
            if isinstance(item, Mapping) and item.get("name") and item.get("url"):
                assets.append(
                    ReleaseAsset(
                        name=str(item["name"]),
                        url=str(item["url"]),
                        browser_download_url=item.get("browser_download_url"),
                    )
                )

        tag = str(data["tag_name"])
        return Release(
            tag=tag,
            name=str(data.get("name") or tag),
            published_at=data.get("published_at"),
            assets=tuple(assets),
        )

    async def fetch_catalog(self, release: Release) -> List[Mapping[str, Any]]:
        asset = release.asset(CATALOG_ASSET)
        if asset is None:
            raise RegistryFetchFailure(
                f"{CATALOG_ASSET} not found in release assets", {"release": release.tag}
            )

        r = await self._get(asset.url, "application/octet-stream")
        data = _json(r, asset.url)
        if not isinstance(data, list):
            raise RegistryFetchFailure("Catalog payload is not a list", {"url": asset.url})
        logger.info("catalog_fetched", release=release.tag, entries=len(data))
        return data

    async def list_app_files(self, app_id: str, ref: str) -> List[Tuple[str, str]]:
        """(relative path, download url) of every file under the app's directory at `ref`."""
        base = f"{self._api_url}/repos/{self._repo}/contents/{app_id}"
        files: List[Tuple[str, str]] = []
        pending = [""]
        while pending:
            sub = pending.pop()
            url = f"{base}/{sub}" if sub else base
            r = await self._get(url, "application/vnd.github+json", params={"ref": ref})
            items = _json(r, url)
            if not isinstance(items, list):
                raise RegistryFetchFailure(f"'{app_id}' is not a directory in the registry", {"url": url})
            for item in items:
                if not isinstance(item, Mapping):
                    continue
                path = f"{sub}/{item.get('name')}" if sub else str(item.get("name"))
                if item.get("type") == "dir":
                    pending.append(path)
                elif item.get("type") == "file" and item.get("download_url"):
                    files.append((path, str(item["download_url"])))
        return sorted(files)

    async def download(self, url: str) -> bytes:
        r = await self._get(url, "application/octet-stream")
        return r.content


def _json(response: httpx.Response, url: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise RegistryFetchFailure("Registry returned invalid JSON", {"url": url}) from e


def _status_error(response: httpx.Response, url: str) -> RegistryFetchFailure:
    details: Dict[str, Any] = {"url": url, "status_code": response.status_code}
    if response.status_code == 401:
        return RegistryFetchFailure("Registry token invalid or expired", details)
    if response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0":
        details["reset"] = response.headers.get("x-ratelimit-reset")
        return RegistryFetchFailure("Registry rate limit exceeded", details)
    if response.status_code == 404:
        return RegistryFetchFailure("Not found in registry", details)
    details["body"] = _safe_text(response)
    return RegistryFetchFailure("Registry request failed", details)


def _safe_text(response: httpx.Response) -> str:
    try:
        return response.text[:4096]
    except Exception:  # noqa: BLE001
        return ""
