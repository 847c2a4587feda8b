"""Unauthenticated server status list."""

from fastapi import APIRouter
from pydantic import BaseModel

from crafthub.adapters.runtime import ResourceNaming
from crafthub.app.config import get_settings
from crafthub.app.dependencies import Orchestrator

router = APIRouter(prefix="/public", tags=["public"])


class PublicServer(BaseModel):
    name: str
    status: str
    minecraft_version: str
    fabric_version: str | None
    server_port: int
    hostname: str


@router.get("/servers", response_model=list[PublicServer])
async def list_public_servers(orchestrator: Orchestrator) -> list[PublicServer]:
    """Connection info for every server. No secrets, no internal ids."""
    naming = ResourceNaming(get_settings().docker)
    return [
        PublicServer(
            name=instance.name,
            status=instance.status,
            minecraft_version=instance.minecraft_version,
            fabric_version=instance.fabric_version,
            server_port=instance.server_port,
            hostname=naming.hostname(instance.name),
        )
        for instance in await orchestrator.list_all_instances()
    ]
