"""Core interfaces."""

from crafthub.core.interfaces.auth import TokenVerifier
from crafthub.core.interfaces.runtime import (
    OperationResult,
    OperationStatus,
    RuntimeAdapter,
    WorkloadConfig,
    WorkloadInspection,
)
from crafthub.core.interfaces.versions import (
    FabricVersion,
    MinecraftVersion,
    VersionCatalog,
    VersionsSnapshot,
)

__all__ = [
    # Auth
    "TokenVerifier",
    # Runtime
    "RuntimeAdapter",
    "WorkloadConfig",
    "WorkloadInspection",
    "OperationResult",
    "OperationStatus",
    # Versions
    "VersionCatalog",
    "VersionsSnapshot",
    "MinecraftVersion",
    "FabricVersion",
]
