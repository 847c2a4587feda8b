"""Resource naming for Minecraft workloads."""

from crafthub.app.config import DockerConfig

MANAGED_LABEL = "mck.managed"
NAME_LABEL = "mck.instance.name"


class ResourceNaming:
    """Centralized naming conventions for Docker resources."""

    def __init__(self, config: DockerConfig) -> None:
        self._prefix = config.resource_prefix
        self._subdomain = config.subdomain

    @property
    def prefix(self) -> str:
        return self._prefix

    def container_name(self, name: str) -> str:
        return f"{self._prefix}{name}"

    def volume_name(self, name: str) -> str:
        return f"{self._prefix}{name}-data"

    def hostname(self, name: str) -> str:
        return f"{name}.{self._subdomain}"

    def instance_name_from_container(self, container_name: str) -> str | None:
        container_name = container_name.lstrip("/")
        if not container_name.startswith(self._prefix):
            return None
        return container_name[len(self._prefix) :]
