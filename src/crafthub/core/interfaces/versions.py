"""Version catalog interface."""

from abc import ABC, abstractmethod

from pydantic import BaseModel


class MinecraftVersion(BaseModel):
    id: str
    type: str
    release_time: str


class FabricVersion(BaseModel):
    version: str
    stable: bool


class VersionsSnapshot(BaseModel):
    """Known Minecraft releases and Fabric loader versions."""

    minecraft_versions: list[MinecraftVersion]
    fabric_versions: list[FabricVersion]


class VersionCatalog(ABC):
    """Read-through catalog of known game and loader versions.

    Implementations: HttpVersionCatalog
    """

    @abstractmethod
    async def list_versions(self) -> VersionsSnapshot:
        """Return known versions.

        Raises:
            UpstreamUnavailableError: Catalog could not be fetched
        """
        ...

    @abstractmethod
    async def fabric_versions_for(self, minecraft_version: str) -> list[FabricVersion]:
        """Return Fabric loaders compatible with a Minecraft version."""
        ...

    async def is_known_minecraft_version(self, version: str) -> bool:
        snapshot = await self.list_versions()
        return any(v.id == version for v in snapshot.minecraft_versions)

    async def is_known_fabric_version(self, version: str) -> bool:
        snapshot = await self.list_versions()
        return any(v.version == version for v in snapshot.fabric_versions)
