"""Runtime adapter interface for Minecraft workloads.

A workload is one container plus one persistent data volume. Workloads are
addressed by instance name; the runtime derives container and volume names
from it, and the container id returned on creation is stored as the
instance's runtime handle.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel

from crafthub.core.domain import LifecycleState


class OperationStatus(str, Enum):
    """Runtime operation status values."""

    COMPLETED = "completed"
    ALREADY_RUNNING = "already_running"
    NOT_RUNNING = "not_running"


class OperationResult(BaseModel):
    """Outcome of a lifecycle call that reached the runtime.

    ALREADY_RUNNING / NOT_RUNNING are reported, not raised: the caller
    relays them without touching persisted state.
    """

    status: OperationStatus
    message: str = ""
    container_id: str | None = None

    @property
    def success(self) -> bool:
        return self.status == OperationStatus.COMPLETED


@dataclass(frozen=True)
class WorkloadConfig:
    """Everything needed to create a workload."""

    name: str
    minecraft_version: str
    server_port: int
    rcon_port: int
    rcon_password: str
    fabric_version: str | None = None
    memory_allocation: str = "2G"
    max_players: int = 20
    voice_chat_port: int | None = None
    geyser_enabled: bool = False
    geyser_port: int | None = None


@dataclass
class WorkloadInspection:
    """Observed runtime state of a workload."""

    name: str
    container_id: str
    state: LifecycleState
    running: bool
    ports: dict[str, int] = field(default_factory=dict)
    message: str = ""


class RuntimeAdapter(ABC):
    """Interface for container runtime operations.

    Implementations: DockerRuntimeAdapter
    """

    @abstractmethod
    async def create_workload(self, config: WorkloadConfig) -> str:
        """Create volume and container (not started).

        Returns:
            Runtime-assigned container id

        Raises:
            ContainerExistsError: Container with the derived name exists
            RuntimeOperationError: Runtime rejected the request
        """
        ...

    @abstractmethod
    async def start(self, name: str) -> OperationResult:
        """Start workload. ALREADY_RUNNING when it is running."""
        ...

    @abstractmethod
    async def stop(self, name: str, grace_period: int | None = None) -> OperationResult:
        """Stop workload. NOT_RUNNING when it is not running."""
        ...

    @abstractmethod
    async def restart(
        self, name: str, grace_period: int | None = None
    ) -> OperationResult:
        """Restart workload."""
        ...

    @abstractmethod
    async def delete(self, name: str, delete_volume: bool = True) -> OperationResult:
        """Stop if running, remove container, optionally remove volume.

        Volume removal failure is logged and ignored.
        """
        ...

    @abstractmethod
    async def logs(
        self,
        name: str,
        tail: int = 100,
        since: int | None = None,
        timestamps: bool = False,
    ) -> str:
        """Fetch the last ``tail`` log lines as text.

        With ``timestamps`` each line starts with its RFC3339Nano stamp.
        """
        ...

    @abstractmethod
    async def inspect(self, name: str) -> WorkloadInspection | None:
        """Inspect workload. None when the container does not exist."""
        ...

    @abstractmethod
    async def list_workloads(self) -> list[WorkloadInspection]:
        """List all managed workloads."""
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Check runtime reachability. Raises when unreachable."""
        ...
