"""Docker runtime adapter for Minecraft workloads."""

import logging
import re

import httpx

from crafthub.adapters.runtime.naming import MANAGED_LABEL, NAME_LABEL, ResourceNaming
from crafthub.app.config import DockerConfig, get_settings
from crafthub.core.domain import LifecycleState, PortKind
from crafthub.core.errors import ContainerExistsError, RuntimeOperationError
from crafthub.core.interfaces import (
    OperationResult,
    OperationStatus,
    RuntimeAdapter,
    WorkloadConfig,
    WorkloadInspection,
)
from crafthub.core.logging_schema import LogEvent
from crafthub.infra.docker import (
    ContainerAPI,
    ContainerConfig,
    DockerClient,
    HostConfig,
    PortBinding,
    VolumeAPI,
    VolumeConfig,
    VolumeInUseError,
    demux_logs,
    get_docker_client,
)

logger = logging.getLogger(__name__)

# Ports the server listens on inside the container (image defaults)
MINECRAFT_CONTAINER_PORT = 25565
RCON_CONTAINER_PORT = 25575

_EXIT_CODE_PATTERN = re.compile(r"Exited \((-?\d+)\)")


def _error_message(exc: Exception) -> str:
    """Extract the Docker daemon's message from an HTTP error."""
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            message = exc.response.json().get("message")
        except ValueError:
            message = None
        if message:
            return message
        return f"HTTP {exc.response.status_code}"
    return str(exc) or type(exc).__name__


def map_container_state(state: dict) -> LifecycleState:
    """Map Docker's State object onto an instance status.

    Running → running, Restarting → starting, exited 0 → stopped,
    exited non-zero → error, anything else (created, paused) → stopped.
    """
    if state.get("Running"):
        return LifecycleState.RUNNING
    if state.get("Restarting"):
        return LifecycleState.STARTING
    if state.get("Status") == "exited" and state.get("ExitCode", 0) != 0:
        return LifecycleState.ERROR
    return LifecycleState.STOPPED


def parse_port_bindings(host_config: dict, labels: dict[str, str]) -> dict[str, int]:
    """Extract published host ports keyed by PortKind."""
    voice_port = labels.get("mck.instance.voice-chat-port")
    geyser_port = labels.get("mck.instance.geyser-port")

    ports: dict[str, int] = {}
    for container_port, bindings in (host_config.get("PortBindings") or {}).items():
        if not bindings:
            continue
        host_port = bindings[0].get("HostPort")
        if not host_port:
            continue
        port_number = container_port.split("/")[0]
        if container_port == f"{MINECRAFT_CONTAINER_PORT}/tcp":
            ports[PortKind.SERVER] = int(host_port)
        elif container_port == f"{RCON_CONTAINER_PORT}/tcp":
            ports[PortKind.RCON] = int(host_port)
        elif port_number == voice_port:
            ports[PortKind.VOICE_CHAT] = int(host_port)
        elif port_number == geyser_port:
            ports[PortKind.GEYSER] = int(host_port)
    return ports


class DockerRuntimeAdapter(RuntimeAdapter):
    """Docker-based runtime using ContainerAPI / VolumeAPI.

    Workloads are addressed by instance name. The daemon accepts the
    derived container name wherever it accepts the container id.
    """

    def __init__(
        self,
        config: DockerConfig | None = None,
        client: DockerClient | None = None,
        containers: ContainerAPI | None = None,
        volumes: VolumeAPI | None = None,
    ) -> None:
        self._config = config or get_settings().docker
        self._client = client or get_docker_client()
        self._naming = ResourceNaming(self._config)
        self._containers = containers or ContainerAPI(self._client)
        self._volumes = volumes or VolumeAPI(self._client)

    @property
    def naming(self) -> ResourceNaming:
        return self._naming

    def build_env(self, config: WorkloadConfig) -> list[str]:
        env = {
            "EULA": "TRUE",
            "VERSION": config.minecraft_version or self._config.default_minecraft_version,
            "TYPE": "FABRIC",
            "MEMORY": config.memory_allocation,
            "ENABLE_RCON": "true",
            "RCON_PASSWORD": config.rcon_password,
            "MAX_PLAYERS": str(config.max_players),
            "SERVER_NAME": config.name,
            "MOTD": f"MCK Suite - {config.name}",
            "WHITELIST_ENABLED": "true",
        }
        if config.fabric_version:
            env["FABRIC_LOADER_VERSION"] = config.fabric_version
        if config.geyser_enabled and config.geyser_port:
            env["ENABLE_GEYSER"] = "true"
            env["GEYSER_PORT"] = str(config.geyser_port)
        return [f"{key}={value}" for key, value in env.items()]

    def build_container_config(self, config: WorkloadConfig) -> ContainerConfig:
        container_name = self._naming.container_name(config.name)
        volume_name = self._naming.volume_name(config.name)

        server_key = f"{MINECRAFT_CONTAINER_PORT}/tcp"
        rcon_key = f"{RCON_CONTAINER_PORT}/tcp"
        exposed_ports: dict[str, dict] = {server_key: {}, rcon_key: {}}
        port_bindings = {
            server_key: PortBinding(host_port=config.server_port),
            rcon_key: PortBinding(host_port=config.rcon_port),
        }
        labels = {
            MANAGED_LABEL: "true",
            NAME_LABEL: config.name,
            "mck.instance.server-port": str(config.server_port),
            "mck.instance.rcon-port": str(config.rcon_port),
        }

        if config.voice_chat_port:
            voice_key = f"{config.voice_chat_port}/udp"
            exposed_ports[voice_key] = {}
            port_bindings[voice_key] = PortBinding(host_port=config.voice_chat_port)
            labels["mck.instance.voice-chat-port"] = str(config.voice_chat_port)

        if config.geyser_enabled and config.geyser_port:
            geyser_key = f"{config.geyser_port}/udp"
            exposed_ports[geyser_key] = {}
            port_bindings[geyser_key] = PortBinding(host_port=config.geyser_port)
            labels["mck.instance.geyser-port"] = str(config.geyser_port)
            labels["mck.instance.geyser-enabled"] = "true"

        return ContainerConfig(
            image=self._config.image,
            name=container_name,
            hostname=self._naming.hostname(config.name),
            env=self.build_env(config),
            labels=labels,
            exposed_ports=exposed_ports,
            host_config=HostConfig(
                network_mode=self._config.network_name,
                binds=[f"{volume_name}:/data"],
                port_bindings=port_bindings,
                restart_policy="unless-stopped",
            ),
        )

    async def create_workload(self, config: WorkloadConfig) -> str:
        container_name = self._naming.container_name(config.name)
        volume_name = self._naming.volume_name(config.name)

        try:
            if await self._containers.inspect(container_name) is not None:
                raise ContainerExistsError(container_name)

            await self._volumes.create(
                VolumeConfig(
                    name=volume_name,
                    labels={MANAGED_LABEL: "true", NAME_LABEL: config.name},
                )
            )
            try:
                container_id = await self._containers.create(
                    self.build_container_config(config)
                )
            except httpx.HTTPError:
                await self._remove_volume(volume_name)
                raise
        except httpx.HTTPError as e:
            raise RuntimeOperationError("create instance", _error_message(e)) from e

        if container_id is None:
            raise ContainerExistsError(container_name)

        logger.info(
            "Created workload",
            extra={
                "event": LogEvent.CONTAINER_CREATED,
                "instance_name": config.name,
                "container": container_name,
                "container_id": container_id,
            },
        )
        return container_id

    async def start(self, name: str) -> OperationResult:
        container_name = self._naming.container_name(name)
        try:
            info = await self._require(container_name, "start container")
            if info.get("State", {}).get("Running", False):
                return OperationResult(
                    status=OperationStatus.ALREADY_RUNNING,
                    message=f"Container {container_name} is already running",
                    container_id=info.get("Id"),
                )
            await self._containers.start(container_name)
        except httpx.HTTPError as e:
            raise RuntimeOperationError("start container", _error_message(e)) from e

        return OperationResult(
            status=OperationStatus.COMPLETED,
            message=f"Container {container_name} started successfully",
            container_id=info.get("Id"),
        )

    async def stop(self, name: str, grace_period: int | None = None) -> OperationResult:
        container_name = self._naming.container_name(name)
        grace = grace_period if grace_period is not None else self._config.stop_grace_seconds
        try:
            info = await self._require(container_name, "stop container")
            if not info.get("State", {}).get("Running", False):
                return OperationResult(
                    status=OperationStatus.NOT_RUNNING,
                    message=f"Container {container_name} is not running",
                    container_id=info.get("Id"),
                )
            await self._containers.stop(container_name, timeout=grace)
        except httpx.HTTPError as e:
            raise RuntimeOperationError("stop container", _error_message(e)) from e

        return OperationResult(
            status=OperationStatus.COMPLETED,
            message=f"Container {container_name} stopped successfully",
            container_id=info.get("Id"),
        )

    async def restart(
        self, name: str, grace_period: int | None = None
    ) -> OperationResult:
        container_name = self._naming.container_name(name)
        grace = grace_period if grace_period is not None else self._config.stop_grace_seconds
        try:
            await self._containers.restart(container_name, timeout=grace)
            info = await self._require(container_name, "restart container")
        except httpx.HTTPError as e:
            raise RuntimeOperationError("restart container", _error_message(e)) from e

        return OperationResult(
            status=OperationStatus.COMPLETED,
            message=f"Container {container_name} restarted successfully",
            container_id=info.get("Id"),
        )

    async def delete(self, name: str, delete_volume: bool = True) -> OperationResult:
        container_name = self._naming.container_name(name)
        volume_name = self._naming.volume_name(name)
        try:
            info = await self._containers.inspect(container_name)
            if info is not None:
                if info.get("State", {}).get("Running", False):
                    await self._containers.stop(
                        container_name, timeout=self._config.stop_grace_seconds
                    )
                # Named data volume is removed separately below
                await self._containers.remove(container_name, volumes=False)
        except httpx.HTTPError as e:
            raise RuntimeOperationError("delete container", _error_message(e)) from e

        if delete_volume:
            await self._remove_volume(volume_name)

        return OperationResult(
            status=OperationStatus.COMPLETED,
            message=f"Container {container_name} deleted successfully",
            container_id=info.get("Id") if info else None,
        )

    async def logs(
        self,
        name: str,
        tail: int = 100,
        since: int | None = None,
        timestamps: bool = False,
    ) -> str:
        container_name = self._naming.container_name(name)
        try:
            raw = await self._containers.logs(
                container_name, tail=tail, since=since, timestamps=timestamps
            )
        except httpx.HTTPError as e:
            raise RuntimeOperationError("get logs", _error_message(e)) from e
        return demux_logs(raw)

    async def inspect(self, name: str) -> WorkloadInspection | None:
        container_name = self._naming.container_name(name)
        try:
            info = await self._containers.inspect(container_name)
        except httpx.HTTPError as e:
            raise RuntimeOperationError("inspect container", _error_message(e)) from e
        if info is None:
            return None
        return self._to_inspection(name, info)

    async def list_workloads(self) -> list[WorkloadInspection]:
        try:
            containers = await self._containers.list(
                filters={"label": [f"{MANAGED_LABEL}=true"]}
            )
        except httpx.HTTPError as e:
            raise RuntimeOperationError("list containers", _error_message(e)) from e

        results = []
        for container in containers:
            labels = container.get("Labels") or {}
            names = container.get("Names", [])
            name = labels.get(NAME_LABEL) or (
                self._naming.instance_name_from_container(names[0]) if names else None
            )
            if not name:
                continue

            state_name = container.get("State", "")
            status_text = container.get("Status", "")
            exit_match = _EXIT_CODE_PATTERN.search(status_text)
            state = map_container_state(
                {
                    "Running": state_name == "running",
                    "Restarting": state_name == "restarting",
                    "Status": state_name,
                    "ExitCode": int(exit_match.group(1)) if exit_match else 0,
                }
            )
            ports = {}
            for port in container.get("Ports", []):
                if port.get("PublicPort") and port.get("PrivatePort") == MINECRAFT_CONTAINER_PORT:
                    ports[PortKind.SERVER] = port["PublicPort"]
                elif port.get("PublicPort") and port.get("PrivatePort") == RCON_CONTAINER_PORT:
                    ports[PortKind.RCON] = port["PublicPort"]
            results.append(
                WorkloadInspection(
                    name=name,
                    container_id=container.get("Id", ""),
                    state=state,
                    running=state == LifecycleState.RUNNING,
                    ports=ports,
                    message=status_text,
                )
            )
        return results

    async def ping(self) -> None:
        await self._client.ping()

    async def _require(self, container_name: str, operation: str) -> dict:
        info = await self._containers.inspect(container_name)
        if info is None:
            raise RuntimeOperationError(operation, f"No such container: {container_name}")
        return info

    async def _remove_volume(self, volume_name: str) -> None:
        """Best-effort volume removal: failures are logged, never raised."""
        try:
            await self._volumes.remove(volume_name)
        except (httpx.HTTPError, VolumeInUseError) as e:
            logger.warning(
                "Failed to remove volume %s",
                volume_name,
                extra={
                    "event": LogEvent.VOLUME_REMOVE_FAILED,
                    "volume": volume_name,
                    "error": _error_message(e),
                },
            )

    def _to_inspection(self, name: str, info: dict) -> WorkloadInspection:
        state = info.get("State", {})
        labels = (info.get("Config") or {}).get("Labels") or {}
        lifecycle = map_container_state(state)
        return WorkloadInspection(
            name=name,
            container_id=info.get("Id", ""),
            state=lifecycle,
            running=bool(state.get("Running", False)),
            ports=parse_port_bindings(info.get("HostConfig") or {}, labels),
            message=state.get("Status", ""),
        )
