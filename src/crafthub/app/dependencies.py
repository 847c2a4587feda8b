"""FastAPI dependencies: bearer authentication and shared services."""

from typing import Annotated

from fastapi import Depends, Header, Request

from crafthub.core.domain import Principal
from crafthub.core.errors import ForbiddenError, UnauthorizedError
from crafthub.core.interfaces import TokenVerifier, VersionCatalog
from crafthub.services import InstanceOrchestrator


def get_orchestrator(request: Request) -> InstanceOrchestrator:
    return request.app.state.orchestrator


def get_version_catalog(request: Request) -> VersionCatalog:
    return request.app.state.versions


def get_token_verifier(request: Request) -> TokenVerifier:
    return request.app.state.verifier


async def get_principal(
    verifier: Annotated[TokenVerifier, Depends(get_token_verifier)],
    authorization: Annotated[str | None, Header()] = None,
) -> Principal:
    """Resolve ``Authorization: Bearer <token>``. Raises UnauthorizedError."""
    if authorization is None:
        raise UnauthorizedError()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError()
    return await verifier.verify(token.strip())


async def require_admin(
    principal: Annotated[Principal, Depends(get_principal)],
) -> Principal:
    if not principal.is_admin:
        raise ForbiddenError("Admin role required")
    return principal


async def require_instance_access(
    instance_id: str,
    principal: Annotated[Principal, Depends(get_principal)],
    orchestrator: Annotated[InstanceOrchestrator, Depends(get_orchestrator)],
) -> Principal:
    """Check access before the instance is touched.

    A restricted subject gets 403 for instances it holds no grant for,
    whether or not the instance exists.
    """
    if not await orchestrator.has_access(principal.subject_id, instance_id, principal.role):
        raise ForbiddenError("Access denied to this instance")
    return principal


Orchestrator = Annotated[InstanceOrchestrator, Depends(get_orchestrator)]
Versions = Annotated[VersionCatalog, Depends(get_version_catalog)]
CurrentPrincipal = Annotated[Principal, Depends(get_principal)]
AdminPrincipal = Annotated[Principal, Depends(require_admin)]
InstancePrincipal = Annotated[Principal, Depends(require_instance_access)]
