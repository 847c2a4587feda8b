"""Container runtime adapters."""

from crafthub.adapters.runtime.docker import DockerRuntimeAdapter
from crafthub.adapters.runtime.naming import ResourceNaming

__all__ = ["DockerRuntimeAdapter", "ResourceNaming"]
