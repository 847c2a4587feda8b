"""Version catalog endpoints."""

from fastapi import APIRouter

from crafthub.app.dependencies import CurrentPrincipal, Versions
from crafthub.core.interfaces import FabricVersion, VersionsSnapshot

router = APIRouter(prefix="/versions", tags=["versions"])


@router.get("", response_model=VersionsSnapshot)
async def list_versions(_principal: CurrentPrincipal, versions: Versions) -> VersionsSnapshot:
    """Minecraft releases and Fabric loader versions (cached)."""
    return await versions.list_versions()


@router.get("/fabric/{minecraft_version}", response_model=list[FabricVersion])
async def list_fabric_versions(
    minecraft_version: str, _principal: CurrentPrincipal, versions: Versions
) -> list[FabricVersion]:
    return await versions.fabric_versions_for(minecraft_version)
