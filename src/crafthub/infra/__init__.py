"""Infrastructure connections (DB, Docker, RCON)."""

from crafthub.infra.docker import (
    ContainerAPI,
    ContainerConfig,
    DockerClient,
    HostConfig,
    PortBinding,
    VolumeAPI,
    VolumeConfig,
    VolumeInUseError,
    close_docker,
    demux_logs,
    get_docker_client,
)
from crafthub.infra.postgresql import (
    close_db,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
)
from crafthub.infra.rcon import RconAuthError, RconError, RconSession

__all__ = [
    # DB
    "init_db",
    "close_db",
    "get_engine",
    "get_session",
    "get_session_factory",
    # Docker
    "DockerClient",
    "ContainerAPI",
    "VolumeAPI",
    "ContainerConfig",
    "HostConfig",
    "PortBinding",
    "VolumeConfig",
    "VolumeInUseError",
    "get_docker_client",
    "close_docker",
    "demux_logs",
    # RCON
    "RconSession",
    "RconError",
    "RconAuthError",
]
