"""Instance API endpoints."""

from datetime import datetime

from fastapi import APIRouter, Query, Response
from pydantic import BaseModel

from crafthub.app.dependencies import (
    AdminPrincipal,
    CurrentPrincipal,
    InstancePrincipal,
    Orchestrator,
)
from crafthub.app.config import get_settings
from crafthub.services import InstanceCreate, InstancePatch, LifecycleResult

router = APIRouter(prefix="/instances", tags=["instances"])

_settings = get_settings()


# =============================================================================
# Request/Response Models
# =============================================================================


class InstanceResponse(BaseModel):
    """Instance response. The RCON password is never exposed."""

    id: str
    name: str
    minecraft_version: str
    fabric_version: str | None
    memory_allocation: str
    max_players: int
    server_port: int
    rcon_port: int
    voice_chat_port: int | None
    geyser_enabled: bool
    geyser_port: int | None
    status: str
    container_id: str | None
    created_by: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class InstanceListResponse(BaseModel):
    items: list[InstanceResponse]
    total: int


class LogsResponse(BaseModel):
    logs: str


class GrantRequest(BaseModel):
    user_id: str


class GrantResponse(BaseModel):
    id: str
    user_id: str
    instance_id: str
    granted_by: str
    granted_at: datetime | None

    model_config = {"from_attributes": True}


def _to_response(instance) -> InstanceResponse:
    return InstanceResponse.model_validate(instance)


# =============================================================================
# Endpoints
# =============================================================================


@router.get("", response_model=InstanceListResponse)
async def list_instances(
    principal: CurrentPrincipal, orchestrator: Orchestrator
) -> InstanceListResponse:
    """List instances visible to the caller, newest first."""
    instances = await orchestrator.list_instances(principal.subject_id, principal.role)
    return InstanceListResponse(
        items=[_to_response(i) for i in instances],
        total=len(instances),
    )


@router.post("", response_model=InstanceResponse, status_code=201)
async def create_instance(
    request: InstanceCreate,
    principal: AdminPrincipal,
    orchestrator: Orchestrator,
) -> InstanceResponse:
    """Create an instance (container and volume, not started)."""
    instance = await orchestrator.create(request, principal.subject_id)
    return _to_response(instance)


@router.get("/{instance_id}", response_model=InstanceResponse)
async def get_instance(
    instance_id: str, _principal: InstancePrincipal, orchestrator: Orchestrator
) -> InstanceResponse:
    return _to_response(await orchestrator.get_by_id(instance_id))


@router.patch("/{instance_id}", response_model=InstanceResponse)
async def update_instance(
    instance_id: str,
    patch: InstancePatch,
    _principal: InstancePrincipal,
    orchestrator: Orchestrator,
) -> InstanceResponse:
    """Update configuration fields. The name can never change."""
    return _to_response(await orchestrator.update(instance_id, patch))


@router.delete("/{instance_id}", status_code=204)
async def delete_instance(
    instance_id: str, _principal: AdminPrincipal, orchestrator: Orchestrator
) -> Response:
    await orchestrator.delete(instance_id)
    return Response(status_code=204)


@router.post("/{instance_id}/start", response_model=LifecycleResult)
async def start_instance(
    instance_id: str, _principal: InstancePrincipal, orchestrator: Orchestrator
) -> LifecycleResult:
    return await orchestrator.start(instance_id)


@router.post("/{instance_id}/stop", response_model=LifecycleResult)
async def stop_instance(
    instance_id: str, _principal: InstancePrincipal, orchestrator: Orchestrator
) -> LifecycleResult:
    return await orchestrator.stop(instance_id)


@router.post("/{instance_id}/restart", response_model=LifecycleResult)
async def restart_instance(
    instance_id: str, _principal: InstancePrincipal, orchestrator: Orchestrator
) -> LifecycleResult:
    return await orchestrator.restart(instance_id)


@router.get("/{instance_id}/logs", response_model=LogsResponse)
async def get_instance_logs(
    instance_id: str,
    _principal: InstancePrincipal,
    orchestrator: Orchestrator,
    tail: int = Query(default=_settings.instance.log_tail, ge=1, le=10000),
) -> LogsResponse:
    return LogsResponse(logs=await orchestrator.get_logs(instance_id, tail))


# =============================================================================
# Grants (admin only)
# =============================================================================


@router.get("/{instance_id}/grants", response_model=list[GrantResponse])
async def list_grants(
    instance_id: str, _principal: AdminPrincipal, orchestrator: Orchestrator
) -> list[GrantResponse]:
    grants = await orchestrator.list_grants(instance_id)
    return [GrantResponse.model_validate(g) for g in grants]


@router.post("/{instance_id}/grants", response_model=GrantResponse, status_code=201)
async def create_grant(
    instance_id: str,
    request: GrantRequest,
    principal: AdminPrincipal,
    orchestrator: Orchestrator,
) -> GrantResponse:
    grant = await orchestrator.grant_access(
        instance_id, request.user_id, principal.subject_id
    )
    return GrantResponse.model_validate(grant)


@router.delete("/{instance_id}/grants/{user_id}", status_code=204)
async def delete_grant(
    instance_id: str,
    user_id: str,
    _principal: AdminPrincipal,
    orchestrator: Orchestrator,
) -> Response:
    await orchestrator.revoke_access(instance_id, user_id)
    return Response(status_code=204)
