"""End-to-end scenario over orchestrator and hub with in-memory collaborators."""

import json
from unittest.mock import AsyncMock

from sqlalchemy import func, select

from crafthub.core.domain import LifecycleState, Principal, Role
from crafthub.core.errors import PortInUseError
from crafthub.core.interfaces import TokenVerifier
from crafthub.core.models import Instance
from crafthub.services import CommandPool, SessionHub, ViewerChannel


class RecordingChannel(ViewerChannel):
    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send(self, message: dict) -> None:
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        pass


class TestKidsServers:
    """Two servers for the kids: one created, one rejected, commands gated."""

    async def test_scenario(
        self, orchestrator, runtime, session_factory, admin_user, make_request, hub_config
    ) -> None:
        survival = await orchestrator.create(
            make_request("kids-survival", server_port=25565, rcon_port=25575),
            admin_user.id,
        )
        assert survival.status == LifecycleState.STOPPED

        try:
            await orchestrator.create(
                make_request("kids-creative", server_port=25565, rcon_port=25576),
                admin_user.id,
            )
        except PortInUseError as e:
            assert e.port_kind == "server"
        else:
            raise AssertionError("expected port conflict")

        async with session_factory() as db:
            count = (await db.execute(select(func.count()).select_from(Instance))).scalar_one()
        assert count == 1
        assert "kids-creative" not in runtime.workloads

        started = await orchestrator.start(survival.id)
        assert started.success and started.status == LifecycleState.RUNNING

        again = await orchestrator.start(survival.id)
        assert again.success is False
        assert (await orchestrator.get_by_id(survival.id)).status == LifecycleState.RUNNING

        # A creative server that exists but was never started
        creative = await orchestrator.create(
            make_request("kids-creative", server_port=25566, rcon_port=25576),
            admin_user.id,
        )

        verifier = AsyncMock(spec=TokenVerifier)
        verifier.verify.return_value = Principal(admin_user.id, Role.ADMIN)
        pool = AsyncMock(spec=CommandPool)
        hub = SessionHub(orchestrator, verifier, pool, hub_config, rcon_host="localhost")
        channel = RecordingChannel()
        session = await hub.connect(channel)
        await hub.handle_message(session, json.dumps({"type": "auth", "token": "t"}))

        await hub.handle_message(
            session,
            json.dumps({"type": "rcon_command", "instanceId": creative.id, "command": "list"}),
        )

        assert channel.sent[-1] == {
            "type": "rcon_response",
            "instanceId": creative.id,
            "success": False,
            "error": "Instance is not running",
        }
        pool.execute.assert_not_awaited()
        await hub.shutdown()
