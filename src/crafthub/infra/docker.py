"""Docker Engine API client with Pydantic models.

Provides async Docker API access for Minecraft containers and data volumes.
Supports both Unix socket and TCP (docker-proxy) connections.

Configuration via DockerConfig (DOCKER_ env prefix).
"""

import json
import logging
import struct

import httpx
from pydantic import BaseModel

from crafthub.app.config import get_settings
from crafthub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)


class VolumeInUseError(Exception):
    """Raised when trying to remove a volume that is in use."""


# =============================================================================
# Pydantic Models
# =============================================================================


class PortBinding(BaseModel):
    """Host side of a published port."""

    host_port: int
    host_ip: str = ""

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        return {"HostIp": self.host_ip, "HostPort": str(self.host_port)}


class HostConfig(BaseModel):
    """Docker HostConfig for container creation."""

    network_mode: str = "bridge"
    binds: list[str] = []
    port_bindings: dict[str, PortBinding] = {}
    restart_policy: str | None = None

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API format."""
        result: dict = {
            "NetworkMode": self.network_mode,
            "Binds": self.binds,
        }
        if self.port_bindings:
            result["PortBindings"] = {
                port: [binding.to_api()] for port, binding in self.port_bindings.items()
            }
        if self.restart_policy:
            result["RestartPolicy"] = {"Name": self.restart_policy}
        return result


class ContainerConfig(BaseModel):
    """Docker container configuration for creation."""

    image: str
    name: str
    hostname: str | None = None
    env: list[str] = []
    labels: dict[str, str] = {}
    exposed_ports: dict[str, dict] = {}
    host_config: HostConfig = HostConfig()

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API JSON format."""
        result: dict = {
            "Image": self.image,
            "ExposedPorts": self.exposed_ports,
            "HostConfig": self.host_config.to_api(),
        }
        if self.hostname:
            result["Hostname"] = self.hostname
        if self.env:
            result["Env"] = self.env
        if self.labels:
            result["Labels"] = self.labels
        return result


class VolumeConfig(BaseModel):
    """Docker volume configuration for creation."""

    name: str
    driver: str = "local"
    labels: dict[str, str] = {}

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API format."""
        result: dict = {"Name": self.name, "Driver": self.driver}
        if self.labels:
            result["Labels"] = self.labels
        return result


# =============================================================================
# Log stream decoding
# =============================================================================

_STREAM_HEADER = struct.Struct(">BxxxI")


def demux_logs(raw: bytes) -> str:
    """Decode a Docker log payload into text.

    Containers without a TTY return a multiplexed stream: each frame is an
    8-byte header (stream type, 3 zero bytes, big-endian payload length)
    followed by the payload. TTY containers return the raw text.
    """
    if len(raw) < _STREAM_HEADER.size or raw[0] not in (0, 1, 2) or raw[1:4] != b"\x00\x00\x00":
        return raw.decode("utf-8", errors="replace")

    chunks: list[bytes] = []
    offset = 0
    while offset + _STREAM_HEADER.size <= len(raw):
        _stream, length = _STREAM_HEADER.unpack_from(raw, offset)
        offset += _STREAM_HEADER.size
        chunks.append(raw[offset : offset + length])
        offset += length
    return b"".join(chunks).decode("utf-8", errors="replace")


# =============================================================================
# Docker Client (Singleton)
# =============================================================================


class DockerClient:
    """Async Docker API client.

    Supports Unix socket and TCP connections.
    Recreates the underlying HTTP client after close (event loop changes in tests).
    """

    def __init__(self, docker_host: str | None = None, timeout: float | None = None) -> None:
        config = get_settings().docker
        self._host = docker_host or config.host
        self._timeout = timeout if timeout is not None else config.api_timeout
        self._client: httpx.AsyncClient | None = None

    def _create_client(self) -> httpx.AsyncClient:
        """Create a new HTTP client."""
        if self._host.startswith("unix://"):
            socket_path = self._host.replace("unix://", "")
            transport = httpx.AsyncHTTPTransport(uds=socket_path)
            return httpx.AsyncClient(
                transport=transport,
                base_url="http://localhost",
                timeout=self._timeout,
            )
        base_url = self._host
        if base_url.startswith("tcp://"):
            base_url = base_url.replace("tcp://", "http://")
        return httpx.AsyncClient(base_url=base_url, timeout=self._timeout)

    @property
    def timeout(self) -> float:
        return self._timeout

    async def get(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = self._create_client()
        return self._client

    async def ping(self) -> None:
        """Check Docker daemon reachability."""
        client = await self.get()
        resp = await client.get("/_ping")
        resp.raise_for_status()

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


_docker_client: DockerClient | None = None


def get_docker_client() -> DockerClient:
    """Get the global Docker client singleton."""
    global _docker_client
    if _docker_client is None:
        _docker_client = DockerClient()
    return _docker_client


async def close_docker() -> None:
    """Close the global Docker client."""
    global _docker_client
    if _docker_client:
        await _docker_client.close()
        _docker_client = None


# =============================================================================
# Container API
# =============================================================================


class ContainerAPI:
    """Docker Container API operations."""

    def __init__(self, client: DockerClient | None = None) -> None:
        self._docker = client or get_docker_client()

    async def list(self, filters: dict | None = None) -> list[dict]:
        """List containers (including stopped ones).

        Args:
            filters: Docker API filters (e.g., {"label": ["mck.managed=true"]})
        """
        client = await self._docker.get()
        params: dict = {"all": "true"}
        if filters:
            params["filters"] = json.dumps(filters)
        resp = await client.get("/containers/json", params=params)
        resp.raise_for_status()
        return resp.json()

    async def inspect(self, name: str) -> dict | None:
        """Inspect a container. None if not found."""
        client = await self._docker.get()
        resp = await client.get(f"/containers/{name}/json")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    async def create(self, config: ContainerConfig) -> str | None:
        """Create a container.

        Returns:
            Container id, or None when a container with this name already exists
        """
        client = await self._docker.get()
        resp = await client.post(
            "/containers/create",
            params={"name": config.name},
            json=config.to_api(),
        )
        if resp.status_code == 409:
            logger.debug("Container already exists: %s", config.name)
            return None
        resp.raise_for_status()
        container_id = resp.json().get("Id", "")
        logger.info(
            "Created container: %s",
            config.name,
            extra={
                "event": LogEvent.CONTAINER_CREATED,
                "container": config.name,
                "container_id": container_id,
            },
        )
        return container_id

    async def start(self, name: str) -> bool:
        """Start a container. Returns False when it was already running."""
        client = await self._docker.get()
        resp = await client.post(f"/containers/{name}/start")
        if resp.status_code == 304:
            return False
        resp.raise_for_status()
        logger.info(
            "Started container: %s",
            name,
            extra={"event": LogEvent.CONTAINER_STARTED, "container": name},
        )
        return True

    async def stop(self, name: str, timeout: int = 30) -> bool:
        """Stop a container. Returns False when it was not running.

        Args:
            name: Container name or ID
            timeout: Seconds to wait before killing
        """
        client = await self._docker.get()
        resp = await client.post(
            f"/containers/{name}/stop",
            params={"t": str(timeout)},
            timeout=self._docker_timeout(timeout),
        )
        if resp.status_code == 304:
            return False
        resp.raise_for_status()
        logger.info(
            "Stopped container: %s",
            name,
            extra={"event": LogEvent.CONTAINER_STOPPED, "container": name},
        )
        return True

    async def restart(self, name: str, timeout: int = 30) -> None:
        """Restart a container."""
        client = await self._docker.get()
        resp = await client.post(
            f"/containers/{name}/restart",
            params={"t": str(timeout)},
            timeout=self._docker_timeout(timeout),
        )
        resp.raise_for_status()
        logger.info(
            "Restarted container: %s",
            name,
            extra={"event": LogEvent.CONTAINER_RESTARTED, "container": name},
        )

    async def remove(self, name: str, force: bool = False, volumes: bool = False) -> None:
        """Remove a container.

        Args:
            name: Container name or ID
            force: Kill a running container before removal
            volumes: Remove anonymous volumes (named volumes are never touched)
        """
        client = await self._docker.get()
        resp = await client.delete(
            f"/containers/{name}",
            params={
                "force": "true" if force else "false",
                "v": "true" if volumes else "false",
            },
        )
        if resp.status_code == 404:
            logger.debug("Container not found: %s", name)
            return
        resp.raise_for_status()
        logger.info(
            "Removed container: %s",
            name,
            extra={"event": LogEvent.CONTAINER_REMOVED, "container": name},
        )

    async def logs(
        self,
        name: str,
        tail: int = 100,
        since: int | None = None,
        timestamps: bool = False,
    ) -> bytes:
        """Get container logs (non-following).

        Returns:
            Raw log bytes (possibly with Docker stream headers, see demux_logs)
        """
        client = await self._docker.get()
        params: dict = {
            "stdout": "true",
            "stderr": "true",
            "tail": str(tail),
            "timestamps": "true" if timestamps else "false",
        }
        if since is not None:
            params["since"] = str(since)
        resp = await client.get(f"/containers/{name}/logs", params=params)
        resp.raise_for_status()
        return resp.content

    def _docker_timeout(self, grace_seconds: int) -> float:
        # Stop/restart block for up to the grace period on the daemon side
        return self._docker.timeout + grace_seconds


# =============================================================================
# Volume API
# =============================================================================


class VolumeAPI:
    """Docker Volume API operations."""

    def __init__(self, client: DockerClient | None = None) -> None:
        self._docker = client or get_docker_client()

    async def create(self, config: VolumeConfig) -> None:
        """Create a volume (idempotent)."""
        client = await self._docker.get()
        resp = await client.post("/volumes/create", json=config.to_api())
        if resp.status_code == 409:
            logger.debug("Volume already exists: %s", config.name)
            return
        resp.raise_for_status()
        logger.info(
            "Created volume: %s",
            config.name,
            extra={"event": LogEvent.VOLUME_CREATED, "volume": config.name},
        )

    async def remove(self, name: str) -> None:
        """Remove a volume."""
        client = await self._docker.get()
        resp = await client.delete(f"/volumes/{name}")
        if resp.status_code == 404:
            logger.debug("Volume not found: %s", name)
            return
        if resp.status_code == 409:
            raise VolumeInUseError(f"Volume {name} is in use by a container")
        resp.raise_for_status()
        logger.info(
            "Removed volume: %s",
            name,
            extra={"event": LogEvent.VOLUME_REMOVED, "volume": name},
        )
