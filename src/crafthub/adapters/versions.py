"""Minecraft / Fabric version catalog backed by the public metadata APIs.

Results are cached in a TTLCache (1 hour by default) so validation during
instance creation does not hit Mojang or Fabric on every request.
"""

import asyncio
import logging

import httpx
from cachetools import TTLCache

from crafthub.app.config import VersionsConfig, get_settings
from crafthub.core.errors import UpstreamUnavailableError
from crafthub.core.interfaces import (
    FabricVersion,
    MinecraftVersion,
    VersionCatalog,
    VersionsSnapshot,
)
from crafthub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_SNAPSHOT_KEY = "versions"


class HttpVersionCatalog(VersionCatalog):
    """Read-through catalog over launchermeta.mojang.com and meta.fabricmc.net."""

    def __init__(
        self,
        config: VersionsConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or get_settings().versions
        self._client = client or httpx.AsyncClient(timeout=self._config.timeout)
        self._snapshot_cache: TTLCache[str, VersionsSnapshot] = TTLCache(
            maxsize=1, ttl=self._config.cache_ttl
        )
        self._fabric_cache: TTLCache[str, list[FabricVersion]] = TTLCache(
            maxsize=128, ttl=self._config.cache_ttl
        )
        self._lock = asyncio.Lock()

    async def list_versions(self) -> VersionsSnapshot:
        cached = self._snapshot_cache.get(_SNAPSHOT_KEY)
        if cached is not None:
            return cached

        async with self._lock:
            cached = self._snapshot_cache.get(_SNAPSHOT_KEY)
            if cached is not None:
                return cached

            minecraft_versions, fabric_versions = await asyncio.gather(
                self._fetch_minecraft_versions(),
                self._fetch_fabric_versions(),
            )
            snapshot = VersionsSnapshot(
                minecraft_versions=minecraft_versions,
                fabric_versions=fabric_versions,
            )
            self._snapshot_cache[_SNAPSHOT_KEY] = snapshot
            logger.info(
                "Version catalog refreshed",
                extra={
                    "event": LogEvent.VERSIONS_REFRESHED,
                    "minecraft_versions": len(minecraft_versions),
                    "fabric_versions": len(fabric_versions),
                },
            )
            return snapshot

    async def fabric_versions_for(self, minecraft_version: str) -> list[FabricVersion]:
        cached = self._fabric_cache.get(minecraft_version)
        if cached is not None:
            return cached

        url = f"{self._config.fabric_url}/{minecraft_version}"
        try:
            resp = await self._client.get(url)
            resp.raise_for_status()
            versions = [
                FabricVersion(
                    version=item["loader"]["version"],
                    stable=item["loader"].get("stable", False),
                )
                for item in resp.json()
            ]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning(
                "Fabric lookup for %s failed, falling back to all loaders",
                minecraft_version,
                extra={"event": LogEvent.VERSIONS_FETCH_FAILED, "error": str(e)},
            )
            return await self._fetch_fabric_versions()

        self._fabric_cache[minecraft_version] = versions
        return versions

    def clear_cache(self) -> None:
        self._snapshot_cache.clear()
        self._fabric_cache.clear()

    async def close(self) -> None:
        await self._client.aclose()

    async def _fetch_minecraft_versions(self) -> list[MinecraftVersion]:
        try:
            resp = await self._client.get(self._config.manifest_url)
            resp.raise_for_status()
            return [
                MinecraftVersion(
                    id=v["id"], type=v["type"], release_time=v.get("releaseTime", "")
                )
                for v in resp.json()["versions"]
                if v.get("type") == "release"
            ]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.error(
                "Failed to fetch Minecraft versions",
                extra={"event": LogEvent.VERSIONS_FETCH_FAILED, "error": str(e)},
            )
            raise UpstreamUnavailableError(
                "Failed to fetch Minecraft versions from Mojang API"
            ) from e

    async def _fetch_fabric_versions(self) -> list[FabricVersion]:
        try:
            resp = await self._client.get(self._config.fabric_url)
            resp.raise_for_status()
            return [
                FabricVersion(version=v["version"], stable=v.get("stable", False))
                for v in resp.json()
            ]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.error(
                "Failed to fetch Fabric versions",
                extra={"event": LogEvent.VERSIONS_FETCH_FAILED, "error": str(e)},
            )
            raise UpstreamUnavailableError(
                "Failed to fetch Fabric versions from Fabric API"
            ) from e
