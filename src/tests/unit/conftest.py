"""Shared fixtures for crafthub unit tests.

Store-backed tests run against an in-memory SQLite database (aiosqlite)
with foreign keys enabled. The container runtime and version catalog are
replaced by in-memory fakes.
"""

from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crafthub.app.config import HubConfig, InstanceDefaults, RconConfig
from crafthub.core.domain import LifecycleState, Role
from crafthub.core.errors import ContainerExistsError, RuntimeOperationError
from crafthub.core.interfaces import (
    FabricVersion,
    MinecraftVersion,
    OperationResult,
    OperationStatus,
    RuntimeAdapter,
    VersionCatalog,
    VersionsSnapshot,
    WorkloadConfig,
    WorkloadInspection,
)
from crafthub.core.models import User
from crafthub.infra import close_db, get_session_factory, init_db
from crafthub.services import InstanceCreate, InstanceOrchestrator


class FakeRuntime(RuntimeAdapter):
    """In-memory runtime: name -> running flag, plus a call journal."""

    def __init__(self) -> None:
        self.workloads: dict[str, bool] = {}
        self.configs: dict[str, WorkloadConfig] = {}
        self.calls: list[tuple[str, str]] = []
        self.log_text: dict[str, str] = {}
        self.fail: set[str] = set()

    def _check(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        if operation in self.fail:
            raise RuntimeOperationError(f"{operation} container", "daemon unavailable")

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    async def create_workload(self, config: WorkloadConfig) -> str:
        self._check("create", config.name)
        if config.name in self.workloads:
            raise ContainerExistsError(f"mck-minecraft-{config.name}")
        self.workloads[config.name] = False
        self.configs[config.name] = config
        return f"cid-{config.name}"

    async def start(self, name: str) -> OperationResult:
        self._check("start", name)
        if self.workloads.get(name):
            return OperationResult(
                status=OperationStatus.ALREADY_RUNNING,
                message=f"Container mck-minecraft-{name} is already running",
            )
        self.workloads[name] = True
        return OperationResult(status=OperationStatus.COMPLETED, container_id=f"cid-{name}")

    async def stop(self, name: str, grace_period: int | None = None) -> OperationResult:
        self._check("stop", name)
        if not self.workloads.get(name):
            return OperationResult(
                status=OperationStatus.NOT_RUNNING,
                message=f"Container mck-minecraft-{name} is not running",
            )
        self.workloads[name] = False
        return OperationResult(status=OperationStatus.COMPLETED)

    async def restart(self, name: str, grace_period: int | None = None) -> OperationResult:
        self._check("restart", name)
        self.workloads[name] = True
        return OperationResult(status=OperationStatus.COMPLETED)

    async def delete(self, name: str, delete_volume: bool = True) -> OperationResult:
        self._check("delete", name)
        self.workloads.pop(name, None)
        self.configs.pop(name, None)
        return OperationResult(status=OperationStatus.COMPLETED)

    async def logs(
        self,
        name: str,
        tail: int = 100,
        since: int | None = None,
        timestamps: bool = False,
    ) -> str:
        self._check("logs", name)
        lines = self.log_text.get(name, "").splitlines()
        if timestamps:
            # Line n of the stream is stamped n microseconds past the minute
            lines = [
                f"2024-01-01T12:00:00.{n:06d}Z {line}" for n, line in enumerate(lines, 1)
            ]
        return "\n".join(lines[-tail:])

    async def inspect(self, name: str) -> WorkloadInspection | None:
        self._check("inspect", name)
        if name not in self.workloads:
            return None
        running = self.workloads[name]
        return WorkloadInspection(
            name=name,
            container_id=f"cid-{name}",
            state=LifecycleState.RUNNING if running else LifecycleState.STOPPED,
            running=running,
        )

    async def list_workloads(self) -> list[WorkloadInspection]:
        return [await self.inspect(name) for name in list(self.workloads)]

    async def ping(self) -> None:
        self._check("ping", "")


class FakeVersionCatalog(VersionCatalog):
    def __init__(self) -> None:
        self.snapshot = VersionsSnapshot(
            minecraft_versions=[
                MinecraftVersion(id="1.20.4", type="release", release_time=""),
                MinecraftVersion(id="1.20.1", type="release", release_time=""),
            ],
            fabric_versions=[
                FabricVersion(version="0.15.6", stable=True),
                FabricVersion(version="0.14.24", stable=True),
            ],
        )

    async def list_versions(self) -> VersionsSnapshot:
        return self.snapshot

    async def fabric_versions_for(self, minecraft_version: str) -> list[FabricVersion]:
        return self.snapshot.fabric_versions


@pytest.fixture
async def session_factory() -> async_sessionmaker[AsyncSession]:
    """Fresh in-memory database per test."""
    await init_db("sqlite+aiosqlite:///:memory:", create_tables=True)
    yield get_session_factory()
    await close_db()


@pytest.fixture
async def admin_user(session_factory) -> User:
    user = User(username="admin", role=Role.ADMIN, created_at=datetime.now(UTC))
    async with session_factory() as db:
        db.add(user)
        await db.commit()
    return user


@pytest.fixture
async def junior_user(session_factory) -> User:
    user = User(username="junior", role=Role.JUNIOR_ADMIN, created_at=datetime.now(UTC))
    async with session_factory() as db:
        db.add(user)
        await db.commit()
    return user


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def versions() -> FakeVersionCatalog:
    return FakeVersionCatalog()


@pytest.fixture
def instance_defaults() -> InstanceDefaults:
    return InstanceDefaults()


@pytest.fixture
def rcon_config() -> RconConfig:
    return RconConfig(timeout=1.0, idle_timeout=300.0)


@pytest.fixture
def hub_config() -> HubConfig:
    return HubConfig(poll_interval=0.01, log_tail=100, heartbeat_interval=30.0)


@pytest.fixture
def orchestrator(
    session_factory, runtime: FakeRuntime, versions: FakeVersionCatalog, instance_defaults
) -> InstanceOrchestrator:
    return InstanceOrchestrator(
        session_factory, runtime, versions, defaults=instance_defaults
    )


@pytest.fixture
def make_request():
    """Factory for create requests with sensible defaults."""

    def _make(name: str = "kids-survival", **overrides) -> InstanceCreate:
        data = {
            "name": name,
            "minecraft_version": "1.20.4",
            "server_port": 25565,
            "rcon_port": 25575,
            "rcon_password": "secret",
        }
        data.update(overrides)
        return InstanceCreate(**data)

    return _make
