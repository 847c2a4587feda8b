"""Unit tests for InstanceOrchestrator."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from crafthub.core.domain import LifecycleState, PortKind, Role
from crafthub.core.errors import (
    ContainerExistsError,
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
from crafthub.core.models import AccessGrant, Instance
from crafthub.services import CommandPool, InstanceOrchestrator, InstancePatch


async def _count(session_factory, model) -> int:
    async with session_factory() as db:
        result = await db.execute(select(func.count()).select_from(model))
        return result.scalar_one()


class TestCreate:
    """Tests for InstanceOrchestrator.create."""

    async def test_create_persists_stopped_instance(
        self, orchestrator, runtime, admin_user, make_request
    ) -> None:
        """Create stores the runtime handle and starts in stopped state."""
        instance = await orchestrator.create(make_request(), admin_user.id)

        assert instance.name == "kids-survival"
        assert instance.status == LifecycleState.STOPPED
        assert instance.container_id == "cid-kids-survival"
        assert instance.created_by == admin_user.id
        assert runtime.count("create") == 1

    async def test_create_applies_defaults(
        self, orchestrator, runtime, admin_user, make_request
    ) -> None:
        """Missing memory/max players fall back to configured defaults."""
        instance = await orchestrator.create(make_request(), admin_user.id)

        assert instance.memory_allocation == "2G"
        assert instance.max_players == 20
        assert runtime.configs["kids-survival"].memory_allocation == "2G"

    async def test_create_generates_rcon_password(
        self, orchestrator, runtime, admin_user, make_request
    ) -> None:
        """A password is generated when none is supplied."""
        instance = await orchestrator.create(
            make_request(rcon_password=None), admin_user.id
        )

        assert instance.rcon_password
        assert runtime.configs["kids-survival"].rcon_password == instance.rcon_password

    async def test_invalid_name_rejected_before_side_effects(
        self, orchestrator, runtime, admin_user, make_request
    ) -> None:
        """Bad name shape never reaches the runtime."""
        bad_names = ["ab", "-kids", "kids-", "Kids", "kids_survival", "a" * 33, "kids\n"]
        for name in bad_names:
            with pytest.raises(InvalidInstanceNameError):
                await orchestrator.create(make_request(name=name), admin_user.id)

        assert runtime.count("create") == 0

    async def test_unknown_minecraft_version_rejected(
        self, orchestrator, runtime, admin_user, make_request
    ) -> None:
        with pytest.raises(InvalidVersionError) as exc_info:
            await orchestrator.create(
                make_request(minecraft_version="0.0.1"), admin_user.id
            )

        assert exc_info.value.kind == "minecraft"
        assert runtime.count("create") == 0

    async def test_unknown_fabric_version_rejected(
        self, orchestrator, runtime, admin_user, make_request
    ) -> None:
        with pytest.raises(InvalidVersionError) as exc_info:
            await orchestrator.create(
                make_request(fabric_version="9.9.9"), admin_user.id
            )

        assert exc_info.value.kind == "fabric"
        assert runtime.count("create") == 0

    async def test_port_sanity(self, orchestrator, runtime, admin_user, make_request) -> None:
        """Out of range and duplicate own ports are validation errors."""
        with pytest.raises(InvalidRequestError):
            await orchestrator.create(make_request(server_port=80), admin_user.id)
        with pytest.raises(InvalidRequestError):
            await orchestrator.create(make_request(rcon_port=25565), admin_user.id)

        assert runtime.count("create") == 0

    async def test_geyser_port_required_when_enabled(
        self, orchestrator, admin_user, make_request
    ) -> None:
        with pytest.raises(InvalidRequestError):
            await orchestrator.create(make_request(geyser_enabled=True), admin_user.id)

    async def test_name_conflict_creates_nothing(
        self, orchestrator, runtime, session_factory, admin_user, make_request
    ) -> None:
        """Duplicate name: conflict, no container, no record."""
        await orchestrator.create(make_request(), admin_user.id)

        with pytest.raises(NameExistsError):
            await orchestrator.create(
                make_request(server_port=25566, rcon_port=25576), admin_user.id
            )

        assert runtime.count("create") == 1
        assert await _count(session_factory, Instance) == 1

    async def test_server_port_conflict(
        self, orchestrator, runtime, admin_user, make_request
    ) -> None:
        await orchestrator.create(make_request(), admin_user.id)

        with pytest.raises(PortInUseError) as exc_info:
            await orchestrator.create(
                make_request(name="kids-creative", rcon_port=25576), admin_user.id
            )

        assert exc_info.value.port_kind == PortKind.SERVER
        assert exc_info.value.port == 25565
        assert runtime.count("create") == 1

    async def test_rcon_port_conflict(self, orchestrator, admin_user, make_request) -> None:
        await orchestrator.create(make_request(), admin_user.id)

        with pytest.raises(PortInUseError) as exc_info:
            await orchestrator.create(
                make_request(name="kids-creative", server_port=25566), admin_user.id
            )

        assert exc_info.value.port_kind == PortKind.RCON

    async def test_voice_chat_port_may_be_shared(
        self, orchestrator, admin_user, make_request
    ) -> None:
        await orchestrator.create(make_request(voice_chat_port=24454), admin_user.id)

        instance = await orchestrator.create(
            make_request(
                name="kids-creative",
                server_port=25566,
                rcon_port=25576,
                voice_chat_port=24454,
            ),
            admin_user.id,
        )

        assert instance.voice_chat_port == 24454

    async def test_runtime_failure_leaves_no_record(
        self, orchestrator, runtime, session_factory, admin_user, make_request
    ) -> None:
        """Workload creation failure: nothing persisted, nothing compensated."""
        runtime.fail.add("create")

        with pytest.raises(RuntimeOperationError):
            await orchestrator.create(make_request(), admin_user.id)

        assert await _count(session_factory, Instance) == 0
        assert runtime.count("delete") == 0

    async def test_container_exists_surfaces_conflict(
        self, orchestrator, runtime, session_factory, admin_user, make_request
    ) -> None:
        runtime.workloads["kids-survival"] = False

        with pytest.raises(ContainerExistsError):
            await orchestrator.create(make_request(), admin_user.id)

        assert await _count(session_factory, Instance) == 0

    async def test_store_failure_compensates_exactly_once(
        self, orchestrator, runtime, session_factory, admin_user, make_request
    ) -> None:
        """Grant insert failure deletes the created workload once."""
        request = make_request(assigned_junior_admins=["01HNOSUCHUSER0000000000000"])

        with pytest.raises(UserNotFoundError):
            await orchestrator.create(request, admin_user.id)

        assert runtime.count("create") == 1
        assert runtime.count("delete") == 1
        assert "kids-survival" not in runtime.workloads
        assert await _count(session_factory, Instance) == 0
        assert await _count(session_factory, AccessGrant) == 0

    async def test_unknown_owner_compensates(
        self, orchestrator, runtime, session_factory, make_request
    ) -> None:
        """Foreign key failure on the owner is mapped and compensated."""
        with pytest.raises(UserNotFoundError):
            await orchestrator.create(make_request(), "01HNOSUCHOWNER000000000000")

        assert runtime.count("delete") == 1
        assert await _count(session_factory, Instance) == 0

    async def test_compensation_failure_keeps_original_error(
        self, orchestrator, runtime, admin_user, make_request
    ) -> None:
        runtime.fail.add("delete")
        request = make_request(assigned_junior_admins=["01HNOSUCHUSER0000000000000"])

        with pytest.raises(UserNotFoundError):
            await orchestrator.create(request, admin_user.id)

        assert runtime.count("delete") == 1

    async def test_create_with_grants(
        self, orchestrator, admin_user, junior_user, make_request
    ) -> None:
        instance = await orchestrator.create(
            make_request(assigned_junior_admins=[junior_user.id]), admin_user.id
        )

        grants = await orchestrator.list_grants(instance.id)
        assert [g.user_id for g in grants] == [junior_user.id]
        assert grants[0].granted_by == admin_user.id

    async def test_store_constraint_is_final_arbiter(
        self, orchestrator, runtime, session_factory, admin_user, make_request
    ) -> None:
        """A port collision missed by the pre-check fails at the store."""
        await orchestrator.create(make_request(), admin_user.id)

        with patch(
            "crafthub.services.instance_service.validate_ports",
            AsyncMock(return_value=None),
        ):
            with pytest.raises(PortInUseError) as exc_info:
                await orchestrator.create(
                    make_request(name="kids-creative", rcon_port=25576), admin_user.id
                )

        assert exc_info.value.port_kind == PortKind.SERVER
        assert runtime.count("create") == 2
        assert runtime.count("delete") == 1
        assert set(runtime.workloads) == {"kids-survival"}
        assert await _count(session_factory, Instance) == 1

    async def test_concurrent_creates_keep_ports_unique(
        self, orchestrator, runtime, session_factory, admin_user, make_request
    ) -> None:
        """Two creates racing for one server port yield one instance."""
        results = await asyncio.gather(
            orchestrator.create(make_request(), admin_user.id),
            orchestrator.create(
                make_request(name="kids-creative", rcon_port=25576), admin_user.id
            ),
            return_exceptions=True,
        )

        assert sorted(type(r).__name__ for r in results) == ["Instance", "PortInUseError"]
        assert await _count(session_factory, Instance) == 1
        assert len(runtime.workloads) == 1

    async def test_cancelled_insert_compensates(
        self, orchestrator, runtime, session_factory, admin_user, make_request
    ) -> None:
        """Cancellation after the workload exists still removes it."""
        with patch.object(
            orchestrator, "_insert", AsyncMock(side_effect=asyncio.CancelledError)
        ):
            with pytest.raises(asyncio.CancelledError):
                await orchestrator.create(make_request(), admin_user.id)

        assert runtime.count("create") == 1
        assert runtime.count("delete") == 1
        assert runtime.workloads == {}
        assert await _count(session_factory, Instance) == 0


class TestReadAndUpdate:
    """Tests for get/list/update."""

    async def test_get_by_id_and_name(self, orchestrator, admin_user, make_request) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)

        assert (await orchestrator.get_by_id(created.id)).name == "kids-survival"
        assert (await orchestrator.get_by_name("kids-survival")).id == created.id

    async def test_get_missing(self, orchestrator) -> None:
        with pytest.raises(InstanceNotFoundError):
            await orchestrator.get_by_id("missing")
        with pytest.raises(InstanceNotFoundError):
            await orchestrator.get_by_name("missing")

    async def test_update_name_rejected(self, orchestrator, admin_user, make_request) -> None:
        """Name in the patch is refused even when value-identical."""
        created = await orchestrator.create(make_request(), admin_user.id)

        with pytest.raises(NameImmutableError):
            await orchestrator.update(created.id, InstancePatch(name="x"))
        with pytest.raises(NameImmutableError):
            await orchestrator.update(created.id, InstancePatch(name="kids-survival"))

        assert (await orchestrator.get_by_id(created.id)).name == "kids-survival"

    async def test_empty_patch_is_noop(self, orchestrator, admin_user, make_request) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)

        result = await orchestrator.update(created.id, InstancePatch())

        assert result.updated_at == created.updated_at
        assert result.max_players == created.max_players

    async def test_sparse_update(self, orchestrator, admin_user, make_request) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)

        result = await orchestrator.update(
            created.id, InstancePatch(max_players=10, fabric_version="0.15.6")
        )

        assert result.max_players == 10
        assert result.fabric_version == "0.15.6"
        assert result.memory_allocation == created.memory_allocation
        assert result.minecraft_version == "1.20.4"

    async def test_update_validates_versions(
        self, orchestrator, admin_user, make_request
    ) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)

        with pytest.raises(InvalidVersionError):
            await orchestrator.update(created.id, InstancePatch(minecraft_version="0.0.1"))

    async def test_unrecognized_fields_are_noop(
        self, orchestrator, admin_user, make_request
    ) -> None:
        """Ports are not patchable; a patch of only unknown fields changes nothing."""
        created = await orchestrator.create(make_request(), admin_user.id)

        result = await orchestrator.update(
            created.id, InstancePatch.model_validate({"server_port": 25570, "foo": 1})
        )

        assert result.server_port == 25565
        assert result.updated_at == created.updated_at

    @pytest.mark.parametrize(
        "field", ["minecraft_version", "max_players", "memory_allocation"]
    )
    async def test_null_leaves_required_field_unchanged(
        self, orchestrator, admin_user, make_request, field
    ) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)

        result = await orchestrator.update(
            created.id, InstancePatch.model_validate({field: None})
        )

        assert getattr(result, field) == getattr(created, field)

    async def test_null_clears_fabric_version(
        self, orchestrator, admin_user, make_request
    ) -> None:
        created = await orchestrator.create(
            make_request(fabric_version="0.15.6"), admin_user.id
        )

        result = await orchestrator.update(created.id, InstancePatch(fabric_version=None))

        assert result.fabric_version is None

    async def test_update_missing(self, orchestrator) -> None:
        with pytest.raises(InstanceNotFoundError):
            await orchestrator.update("missing", InstancePatch(max_players=5))


class TestLifecycle:
    """Tests for start/stop/restart/delete."""

    async def test_start_and_already_running(
        self, orchestrator, admin_user, make_request
    ) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)

        first = await orchestrator.start(created.id)
        second = await orchestrator.start(created.id)

        assert first.success is True
        assert first.status == LifecycleState.RUNNING
        assert second.success is False
        assert "already running" in second.message
        assert second.status == LifecycleState.RUNNING
        assert (await orchestrator.get_by_id(created.id)).status == LifecycleState.RUNNING

    async def test_stop_not_running_keeps_state(
        self, orchestrator, admin_user, make_request
    ) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)

        result = await orchestrator.stop(created.id)

        assert result.success is False
        assert (await orchestrator.get_by_id(created.id)).status == LifecycleState.STOPPED

    async def test_stop_running(self, orchestrator, admin_user, make_request) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)
        await orchestrator.start(created.id)

        result = await orchestrator.stop(created.id)

        assert result.success is True
        assert (await orchestrator.get_by_id(created.id)).status == LifecycleState.STOPPED

    async def test_restart(self, orchestrator, admin_user, make_request) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)

        result = await orchestrator.restart(created.id)

        assert result.success is True
        assert (await orchestrator.get_by_id(created.id)).status == LifecycleState.RUNNING

    async def test_runtime_failure_sets_error(
        self, orchestrator, runtime, admin_user, make_request
    ) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)
        runtime.fail.add("start")

        with pytest.raises(RuntimeOperationError):
            await orchestrator.start(created.id)

        assert (await orchestrator.get_by_id(created.id)).status == LifecycleState.ERROR

    async def test_lifecycle_missing_instance(self, orchestrator, runtime) -> None:
        with pytest.raises(InstanceNotFoundError):
            await orchestrator.start("missing")

        assert runtime.count("start") == 0

    async def test_delete_removes_record_and_grants(
        self, orchestrator, runtime, session_factory, admin_user, junior_user, make_request
    ) -> None:
        created = await orchestrator.create(
            make_request(assigned_junior_admins=[junior_user.id]), admin_user.id
        )

        await orchestrator.delete(created.id)

        assert runtime.count("delete") == 1
        assert await _count(session_factory, Instance) == 0
        assert await _count(session_factory, AccessGrant) == 0

    async def test_delete_tolerates_runtime_failure(
        self, orchestrator, runtime, session_factory, admin_user, make_request
    ) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)
        runtime.fail.add("delete")

        await orchestrator.delete(created.id)

        assert await _count(session_factory, Instance) == 0

    async def test_delete_closes_pooled_connection(
        self, session_factory, runtime, versions, admin_user, make_request
    ) -> None:
        commands = AsyncMock(spec=CommandPool)
        orchestrator = InstanceOrchestrator(session_factory, runtime, versions, commands)
        created = await orchestrator.create(make_request(), admin_user.id)

        await orchestrator.delete(created.id)

        commands.close.assert_awaited_once_with(created.id)

    async def test_concurrent_start_and_delete_serialized(
        self, orchestrator, runtime, admin_user, make_request
    ) -> None:
        """Start and delete on one instance never interleave."""
        created = await orchestrator.create(make_request(), admin_user.id)

        results = await asyncio.gather(
            orchestrator.start(created.id),
            orchestrator.delete(created.id),
            return_exceptions=True,
        )

        assert results[0].success is True
        assert results[1] is None
        ops = [op for op, _ in runtime.calls if op in ("start", "delete")]
        assert ops == ["start", "delete"]

    async def test_get_logs(self, orchestrator, runtime, admin_user, make_request) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)
        runtime.log_text["kids-survival"] = "a\nb\nc"

        assert await orchestrator.get_logs(created.id, 2) == "b\nc"

    async def test_sync_status(self, orchestrator, runtime, admin_user, make_request) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)
        runtime.workloads["kids-survival"] = True

        synced = await orchestrator.sync_status(created.id)

        assert synced.status == LifecycleState.RUNNING

    async def test_sync_status_missing_container(
        self, orchestrator, runtime, admin_user, make_request
    ) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)
        runtime.workloads.clear()

        assert await orchestrator.sync_all() == 1
        assert (await orchestrator.get_by_id(created.id)).status == LifecycleState.ERROR


class TestAccessAndGrants:
    """Tests for has_access and grant management."""

    async def test_junior_needs_grant(
        self, orchestrator, admin_user, junior_user, make_request
    ) -> None:
        """No grant: denied and invisible. After grant: allowed and listed."""
        created = await orchestrator.create(make_request(), admin_user.id)

        assert not await orchestrator.has_access(junior_user.id, created.id, Role.JUNIOR_ADMIN)
        assert await orchestrator.list_instances(junior_user.id, Role.JUNIOR_ADMIN) == []

        await orchestrator.grant_access(created.id, junior_user.id, admin_user.id)

        assert await orchestrator.has_access(junior_user.id, created.id, Role.JUNIOR_ADMIN)
        visible = await orchestrator.list_instances(junior_user.id, Role.JUNIOR_ADMIN)
        assert [i.id for i in visible] == [created.id]
        assert (await orchestrator.get_by_id(created.id)).status == LifecycleState.STOPPED

    async def test_admin_always_has_access(self, orchestrator, admin_user) -> None:
        assert await orchestrator.has_access(admin_user.id, "anything", Role.ADMIN)

    async def test_duplicate_grant(
        self, orchestrator, admin_user, junior_user, make_request
    ) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)
        await orchestrator.grant_access(created.id, junior_user.id, admin_user.id)

        with pytest.raises(GrantExistsError):
            await orchestrator.grant_access(created.id, junior_user.id, admin_user.id)

    async def test_grant_to_admin_rejected(
        self, orchestrator, admin_user, make_request
    ) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)

        with pytest.raises(InvalidRequestError):
            await orchestrator.grant_access(created.id, admin_user.id, admin_user.id)

    async def test_grant_unknown_user(self, orchestrator, admin_user, make_request) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)

        with pytest.raises(UserNotFoundError):
            await orchestrator.grant_access(created.id, "nobody", admin_user.id)

    async def test_revoke(self, orchestrator, admin_user, junior_user, make_request) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)
        await orchestrator.grant_access(created.id, junior_user.id, admin_user.id)

        await orchestrator.revoke_access(created.id, junior_user.id)

        assert not await orchestrator.has_access(junior_user.id, created.id, Role.JUNIOR_ADMIN)
        with pytest.raises(InstanceNotFoundError):
            await orchestrator.revoke_access(created.id, junior_user.id)

    async def test_command_credential(self, orchestrator, admin_user, make_request) -> None:
        created = await orchestrator.create(make_request(), admin_user.id)

        assert await orchestrator.get_command_credential(created.id) == "secret"
        assert await orchestrator.get_command_credential("missing") is None
