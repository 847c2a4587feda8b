"""Domain types."""

from crafthub.core.domain.instance import (
    INSTANCE_NAME_MAX_LENGTH,
    INSTANCE_NAME_MIN_LENGTH,
    MAX_PORT,
    MIN_PORT,
    LifecycleState,
    PortKind,
    Principal,
    Role,
    is_valid_instance_name,
)

__all__ = [
    "INSTANCE_NAME_MAX_LENGTH",
    "INSTANCE_NAME_MIN_LENGTH",
    "MAX_PORT",
    "MIN_PORT",
    "LifecycleState",
    "PortKind",
    "Principal",
    "Role",
    "is_valid_instance_name",
]
