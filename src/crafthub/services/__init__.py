"""Services module."""

from crafthub.services import access, port_registry
from crafthub.services.command_pool import CommandPool
from crafthub.services.instance_service import (
    InstanceCreate,
    InstanceOrchestrator,
    InstancePatch,
    LifecycleResult,
)
from crafthub.services.session_hub import (
    ChannelClosedError,
    SessionHub,
    ViewerChannel,
    ViewerSession,
)

__all__ = [
    "ChannelClosedError",
    "CommandPool",
    "InstanceCreate",
    "InstanceOrchestrator",
    "InstancePatch",
    "LifecycleResult",
    "SessionHub",
    "ViewerChannel",
    "ViewerSession",
    "access",
    "port_registry",
]
