"""Instance orchestrator.

Coordinates the container runtime with the relational store:

- create: validate -> create workload -> one insert transaction; a store
  failure after the workload exists deletes the workload again
- start/stop/restart/delete: serialized per instance, status written only
  on runtime-reported success
- update: sparse, configuration fields only
"""

import logging
import secrets
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete as sql_delete
from sqlalchemy import select
from sqlalchemy import update as sql_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from crafthub.app.config import InstanceDefaults, get_settings
from crafthub.core.domain import LifecycleState, PortKind, Role, is_valid_instance_name
from crafthub.core.errors import (
    CraftHubError,
    GrantExistsError,
    InstanceNotFoundError,
    InvalidInstanceNameError,
    InvalidRequestError,
    InvalidVersionError,
    NameExistsError,
    NameImmutableError,
    PortInUseError,
    RuntimeOperationError,
    UserNotFoundError,
)
from crafthub.core.interfaces import (
    OperationResult,
    RuntimeAdapter,
    VersionCatalog,
    WorkloadConfig,
)
from crafthub.core.logging_schema import ErrorClass, LogEvent
from crafthub.core.models import AccessGrant, Instance, User, utc_now
from crafthub.services import access
from crafthub.services.command_pool import CommandPool
from crafthub.services.lock import instance_lock
from crafthub.services.port_registry import check_port_values, validate_ports

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


# =============================================================================
# Requests / results
# =============================================================================


class InstanceCreate(BaseModel):
    """Create instance request."""

    name: str = Field(max_length=64)
    minecraft_version: str = Field(min_length=1, max_length=32)
    fabric_version: str | None = Field(default=None, max_length=32)
    server_port: int
    rcon_port: int
    rcon_password: str | None = Field(default=None, min_length=1, max_length=128)
    voice_chat_port: int | None = None
    geyser_enabled: bool = False
    geyser_port: int | None = None
    max_players: int | None = Field(default=None, ge=1, le=1000)
    memory_allocation: str | None = Field(
        default=None, pattern=r"^[1-9][0-9]*[MG]$", max_length=16
    )
    assigned_junior_admins: list[str] = Field(default_factory=list)


class InstancePatch(BaseModel):
    """Sparse instance update.

    ``name`` is accepted by the schema only so that its presence can be
    rejected explicitly. Unknown fields (ports included) are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    minecraft_version: str | None = Field(default=None, min_length=1, max_length=32)
    fabric_version: str | None = Field(default=None, max_length=32)
    max_players: int | None = Field(default=None, ge=1, le=1000)
    memory_allocation: str | None = Field(
        default=None, pattern=r"^[1-9][0-9]*[MG]$", max_length=16
    )


_NON_NULLABLE_PATCH_FIELDS = ("minecraft_version", "max_players", "memory_allocation")


class LifecycleResult(BaseModel):
    """Outcome of start/stop/restart."""

    success: bool
    message: str
    status: LifecycleState


# =============================================================================
# Integrity error mapping
# =============================================================================


def _conflict_from_integrity(
    e: IntegrityError, request: InstanceCreate | None = None
) -> CraftHubError | None:
    """Map a store constraint violation to a structured error.

    Works with PostgreSQL constraint names and SQLite column messages.
    """
    text = str(e.orig).lower()

    port_columns = [
        ("server_port", PortKind.SERVER),
        ("rcon_port", PortKind.RCON),
        ("geyser_port", PortKind.GEYSER),
    ]
    for column, kind in port_columns:
        if f"uq_instances_{column}" in text or f"instances.{column}" in text:
            port = getattr(request, column, None) if request is not None else None
            return PortInUseError(kind, port)

    if "uq_instances_name" in text or "instances.name" in text:
        return NameExistsError(request.name if request is not None else "")
    if "uq_access_grants_user_instance" in text or "access_grants.user_id" in text:
        return GrantExistsError()
    if "foreign key" in text:
        return UserNotFoundError()
    return None


# =============================================================================
# Orchestrator
# =============================================================================


class InstanceOrchestrator:
    """Transactional core over runtime adapter and store.

    Usage:
        orchestrator = InstanceOrchestrator(get_session_factory(), runtime, catalog)
        instance = await orchestrator.create(InstanceCreate(...), owner_id)
        result = await orchestrator.start(instance.id)
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        runtime: RuntimeAdapter,
        versions: VersionCatalog,
        commands: CommandPool | None = None,
        defaults: InstanceDefaults | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._runtime = runtime
        self._versions = versions
        self._commands = commands
        self._defaults = defaults or get_settings().instance

    @property
    def runtime(self) -> RuntimeAdapter:
        return self._runtime

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create(self, request: InstanceCreate, owner_id: str) -> Instance:
        """Create an instance.

        Raises:
            InvalidInstanceNameError, InvalidRequestError, InvalidVersionError:
                Rejected before any side effect
            NameExistsError, PortInUseError: Conflict with an existing instance
            ContainerExistsError, RuntimeOperationError: Workload creation failed
            UserNotFoundError: A grant subject does not exist
        """
        await self._validate_create(request)

        rcon_password = request.rcon_password or secrets.token_urlsafe(24)
        workload = WorkloadConfig(
            name=request.name,
            minecraft_version=request.minecraft_version,
            server_port=request.server_port,
            rcon_port=request.rcon_port,
            rcon_password=rcon_password,
            fabric_version=request.fabric_version,
            memory_allocation=request.memory_allocation or self._defaults.memory_allocation,
            max_players=request.max_players or self._defaults.max_players,
            voice_chat_port=request.voice_chat_port,
            geyser_enabled=request.geyser_enabled,
            geyser_port=request.geyser_port if request.geyser_enabled else None,
        )

        # Failure here leaves nothing behind
        container_id = await self._runtime.create_workload(workload)

        try:
            instance_id = await self._insert(request, workload, container_id, owner_id)
        except BaseException as e:
            # Cancellation after create_workload must not orphan the container
            await self._compensate_create(request.name, e)
            if isinstance(e, IntegrityError):
                mapped = _conflict_from_integrity(e, request)
                if mapped is not None:
                    raise mapped from e
            raise

        instance = await self.get_by_id(instance_id)
        logger.info(
            "Instance created",
            extra={
                "event": LogEvent.INSTANCE_CREATED,
                "instance_id": instance.id,
                "instance_name": instance.name,
                "owner_id": owner_id,
            },
        )
        return instance

    async def _validate_create(self, request: InstanceCreate) -> None:
        if not is_valid_instance_name(request.name):
            raise InvalidInstanceNameError()
        if request.geyser_enabled and request.geyser_port is None:
            raise InvalidRequestError("Geyser port is required when Geyser is enabled")

        geyser_port = request.geyser_port if request.geyser_enabled else None
        check_port_values(
            request.server_port,
            request.rcon_port,
            request.voice_chat_port,
            geyser_port,
        )

        async with self._session_factory() as db:
            if await self._find_by_name(db, request.name) is not None:
                raise NameExistsError(request.name)
            await validate_ports(db, request.server_port, request.rcon_port, geyser_port)

        await self._validate_versions(request.minecraft_version, request.fabric_version)

    async def _validate_versions(
        self, minecraft_version: str | None, fabric_version: str | None
    ) -> None:
        if minecraft_version is not None and not await self._versions.is_known_minecraft_version(
            minecraft_version
        ):
            raise InvalidVersionError("minecraft", minecraft_version)
        if fabric_version is not None and not await self._versions.is_known_fabric_version(
            fabric_version
        ):
            raise InvalidVersionError("fabric", fabric_version)

    async def _insert(
        self,
        request: InstanceCreate,
        workload: WorkloadConfig,
        container_id: str,
        owner_id: str,
    ) -> str:
        """Insert instance and grants in one transaction. Returns the new id."""
        async with self._session_factory() as db:
            async with db.begin():
                instance = Instance(
                    name=workload.name,
                    minecraft_version=workload.minecraft_version,
                    fabric_version=workload.fabric_version,
                    memory_allocation=workload.memory_allocation,
                    max_players=workload.max_players,
                    server_port=workload.server_port,
                    rcon_port=workload.rcon_port,
                    rcon_password=workload.rcon_password,
                    voice_chat_port=workload.voice_chat_port,
                    geyser_enabled=workload.geyser_enabled,
                    geyser_port=workload.geyser_port,
                    status=LifecycleState.STOPPED,
                    container_id=container_id,
                    created_by=owner_id,
                )
                db.add(instance)
                await db.flush()

                grant_subjects = list(dict.fromkeys(request.assigned_junior_admins))
                if grant_subjects:
                    await self._require_users(db, grant_subjects)
                for user_id in grant_subjects:
                    db.add(
                        AccessGrant(
                            user_id=user_id,
                            instance_id=instance.id,
                            granted_by=owner_id,
                        )
                    )
                instance_id = instance.id
            return instance_id

    async def _require_users(self, db: AsyncSession, user_ids: list[str]) -> None:
        result = await db.execute(select(User.id).where(User.id.in_(user_ids)))
        found = set(result.scalars().all())
        missing = [user_id for user_id in user_ids if user_id not in found]
        if missing:
            raise UserNotFoundError(f"User not found: {missing[0]}")

    async def _compensate_create(self, name: str, cause: BaseException) -> None:
        """Delete the workload created for a failed insert.

        Compensation itself is best-effort; the insert error is what the
        caller sees.
        """
        try:
            await self._runtime.delete(name, delete_volume=True)
        except Exception as e:
            logger.error(
                "Compensation failed, workload %s may be orphaned",
                name,
                extra={
                    "event": LogEvent.INSTANCE_COMPENSATED,
                    "instance_name": name,
                    "error": str(e),
                    "error_class": ErrorClass.PERMANENT,
                },
            )
            return
        logger.warning(
            "Instance insert failed, workload removed",
            extra={
                "event": LogEvent.INSTANCE_COMPENSATED,
                "instance_name": name,
                "error": str(cause),
            },
        )

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    async def list_instances(self, subject_id: str, role: Role) -> list[Instance]:
        async with self._session_factory() as db:
            return await access.visible_instances(db, subject_id, role)

    async def list_all_instances(self) -> list[Instance]:
        async with self._session_factory() as db:
            result = await db.execute(select(Instance).order_by(Instance.name))
            return list(result.scalars().all())

    async def get_by_id(self, instance_id: str) -> Instance:
        """Raises InstanceNotFoundError."""
        async with self._session_factory() as db:
            instance = await db.get(Instance, instance_id)
        if instance is None:
            raise InstanceNotFoundError()
        return instance

    async def get_by_name(self, name: str) -> Instance:
        """Raises InstanceNotFoundError."""
        async with self._session_factory() as db:
            instance = await self._find_by_name(db, name)
        if instance is None:
            raise InstanceNotFoundError()
        return instance

    async def _find_by_name(self, db: AsyncSession, name: str) -> Instance | None:
        result = await db.execute(select(Instance).where(Instance.name == name))
        return result.scalar_one_or_none()

    async def has_access(self, subject_id: str, instance_id: str, role: Role) -> bool:
        async with self._session_factory() as db:
            return await access.can_access(db, subject_id, role, instance_id)

    async def get_command_credential(self, instance_id: str) -> str | None:
        """RCON password of the instance, None when absent."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Instance.rcon_password).where(Instance.id == instance_id)
            )
            return result.scalar_one_or_none() or None

    async def get_logs(self, instance_id: str, tail: int | None = None) -> str:
        instance = await self.get_by_id(instance_id)
        return await self._runtime.logs(instance.name, tail or self._defaults.log_tail)

    # -------------------------------------------------------------------------
    # Update / delete
    # -------------------------------------------------------------------------

    async def update(self, instance_id: str, patch: InstancePatch) -> Instance:
        """Apply a sparse configuration update.

        Raises:
            NameImmutableError: ``name`` present in the patch
            InstanceNotFoundError
            InvalidVersionError
        """
        if "name" in patch.model_fields_set:
            raise NameImmutableError()

        current = await self.get_by_id(instance_id)
        values: dict[str, Any] = patch.model_dump(exclude_unset=True)
        if not values:
            return current

        # Only fabric_version may be cleared; null elsewhere means "leave as is"
        for field in _NON_NULLABLE_PATCH_FIELDS:
            if field in values and values[field] is None:
                del values[field]
        await self._validate_versions(
            values.get("minecraft_version"), values.get("fabric_version")
        )
        if not values:
            return current

        values["updated_at"] = utc_now()
        async with self._session_factory() as db:
            await db.execute(
                sql_update(Instance).where(Instance.id == instance_id).values(**values)
            )
            await db.commit()

        logger.info(
            "Instance updated",
            extra={
                "event": LogEvent.INSTANCE_UPDATED,
                "instance_id": instance_id,
                "fields": sorted(k for k in values if k != "updated_at"),
            },
        )
        return await self.get_by_id(instance_id)

    async def delete(self, instance_id: str) -> None:
        """Delete workload (best-effort), pooled connection and record."""
        async with instance_lock(instance_id):
            instance = await self.get_by_id(instance_id)

            try:
                await self._runtime.delete(instance.name, delete_volume=True)
            except CraftHubError as e:
                logger.warning(
                    "Failed to delete workload for %s, removing record anyway",
                    instance.name,
                    extra={
                        "event": LogEvent.OPERATION_FAILED,
                        "instance_id": instance_id,
                        "operation": "delete",
                        "error": str(e),
                    },
                )

            if self._commands is not None:
                await self._commands.close(instance_id)

            async with self._session_factory() as db:
                # Grants are removed explicitly so SQLite without cascades stays clean
                await db.execute(
                    sql_delete(AccessGrant).where(AccessGrant.instance_id == instance_id)
                )
                await db.execute(sql_delete(Instance).where(Instance.id == instance_id))
                await db.commit()

        logger.info(
            "Instance deleted",
            extra={
                "event": LogEvent.INSTANCE_DELETED,
                "instance_id": instance_id,
                "instance_name": instance.name,
            },
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, instance_id: str) -> LifecycleResult:
        return await self._lifecycle(
            instance_id, "start", LifecycleState.RUNNING, LogEvent.INSTANCE_STARTED
        )

    async def stop(self, instance_id: str) -> LifecycleResult:
        return await self._lifecycle(
            instance_id, "stop", LifecycleState.STOPPED, LogEvent.INSTANCE_STOPPED
        )

    async def restart(self, instance_id: str) -> LifecycleResult:
        return await self._lifecycle(
            instance_id, "restart", LifecycleState.RUNNING, LogEvent.INSTANCE_RESTARTED
        )

    async def _lifecycle(
        self,
        instance_id: str,
        operation: str,
        target: LifecycleState,
        event: LogEvent,
    ) -> LifecycleResult:
        async with instance_lock(instance_id):
            instance = await self.get_by_id(instance_id)
            call = getattr(self._runtime, operation)
            try:
                result: OperationResult = await call(instance.name)
            except RuntimeOperationError as e:
                await self._set_status(instance_id, LifecycleState.ERROR)
                logger.error(
                    "Failed to %s instance %s",
                    operation,
                    instance.name,
                    extra={
                        "event": LogEvent.OPERATION_FAILED,
                        "instance_id": instance_id,
                        "operation": operation,
                        "error": e.message,
                        "error_class": ErrorClass.TRANSIENT,
                    },
                )
                raise

            if not result.success:
                return LifecycleResult(
                    success=False, message=result.message, status=instance.status
                )

            await self._set_status(instance_id, target, result.container_id)

        logger.info(
            "Instance %s: %s",
            operation,
            instance.name,
            extra={"event": event, "instance_id": instance_id, "status": target},
        )
        return LifecycleResult(
            success=True,
            message=result.message or f"Instance {operation} completed",
            status=target,
        )

    async def _set_status(
        self,
        instance_id: str,
        status: LifecycleState,
        container_id: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status, "updated_at": utc_now()}
        if container_id:
            values["container_id"] = container_id
        async with self._session_factory() as db:
            await db.execute(
                sql_update(Instance).where(Instance.id == instance_id).values(**values)
            )
            await db.commit()
        logger.debug(
            "Instance status changed",
            extra={
                "event": LogEvent.STATE_CHANGED,
                "instance_id": instance_id,
                "status": status,
            },
        )

    async def sync_status(self, instance_id: str) -> Instance:
        """Align the stored status with what the runtime reports."""
        instance = await self.get_by_id(instance_id)
        inspection = await self._runtime.inspect(instance.name)
        observed = inspection.state if inspection is not None else LifecycleState.ERROR
        if observed != instance.status:
            await self._set_status(
                instance_id,
                observed,
                inspection.container_id if inspection is not None else None,
            )
            instance = await self.get_by_id(instance_id)
        return instance

    async def sync_all(self) -> int:
        """Reconcile every instance. Returns how many changed."""
        changed = 0
        for instance in await self.list_all_instances():
            before = instance.status
            try:
                after = (await self.sync_status(instance.id)).status
            except CraftHubError as e:
                logger.warning(
                    "Status sync failed for %s: %s",
                    instance.name,
                    e,
                    extra={"event": LogEvent.OPERATION_FAILED, "instance_id": instance.id},
                )
                continue
            if after != before:
                changed += 1
        return changed

    # -------------------------------------------------------------------------
    # Grants
    # -------------------------------------------------------------------------

    async def grant_access(
        self, instance_id: str, user_id: str, granted_by: str
    ) -> AccessGrant:
        """Grant a junior admin access to one instance.

        Raises:
            InstanceNotFoundError, UserNotFoundError
            InvalidRequestError: Subject is an admin (admins need no grant)
            GrantExistsError
        """
        async with self._session_factory() as db:
            if await db.get(Instance, instance_id) is None:
                raise InstanceNotFoundError()
            user = await db.get(User, user_id)
            if user is None:
                raise UserNotFoundError()
            if user.role == Role.ADMIN:
                raise InvalidRequestError("Admins already have access to every instance")

            grant = AccessGrant(user_id=user_id, instance_id=instance_id, granted_by=granted_by)
            db.add(grant)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise (_conflict_from_integrity(e) or GrantExistsError()) from e
            await db.refresh(grant)

        logger.info(
            "Access granted",
            extra={
                "event": LogEvent.GRANT_CREATED,
                "instance_id": instance_id,
                "user_id": user_id,
                "granted_by": granted_by,
            },
        )
        return grant

    async def revoke_access(self, instance_id: str, user_id: str) -> None:
        """Raises InstanceNotFoundError when no such grant exists."""
        async with self._session_factory() as db:
            result = await db.execute(
                sql_delete(AccessGrant).where(
                    AccessGrant.instance_id == instance_id,
                    AccessGrant.user_id == user_id,
                )
            )
            await db.commit()
        if result.rowcount == 0:
            raise InstanceNotFoundError("Access grant not found")
        logger.info(
            "Access revoked",
            extra={
                "event": LogEvent.GRANT_REVOKED,
                "instance_id": instance_id,
                "user_id": user_id,
            },
        )

    async def list_grants(self, instance_id: str) -> list[AccessGrant]:
        await self.get_by_id(instance_id)
        async with self._session_factory() as db:
            result = await db.execute(
                select(AccessGrant)
                .where(AccessGrant.instance_id == instance_id)
                .order_by(AccessGrant.granted_at)
            )
            return list(result.scalars().all())
