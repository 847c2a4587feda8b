"""Instance domain enums and value types."""

import re
from dataclasses import dataclass
from enum import StrEnum

# DNS-safe: lowercase alphanumerics and hyphens, no leading/trailing hyphen
INSTANCE_NAME_PATTERN = re.compile(r"[a-z0-9](?:[a-z0-9-]*[a-z0-9])?")
INSTANCE_NAME_MIN_LENGTH = 3
INSTANCE_NAME_MAX_LENGTH = 32

MIN_PORT = 1024
MAX_PORT = 65535


class LifecycleState(StrEnum):
    """Persisted instance status."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class Role(StrEnum):
    """Subject roles.

    ADMIN is the owning role with access to every instance.
    JUNIOR_ADMIN only reaches instances it holds a grant for.
    """

    ADMIN = "admin"
    JUNIOR_ADMIN = "junior-admin"


class PortKind(StrEnum):
    """Port reservation kinds."""

    SERVER = "server"
    RCON = "rcon"
    VOICE_CHAT = "voice_chat"
    GEYSER = "geyser"


@dataclass(frozen=True)
class Principal:
    """Authenticated subject."""

    subject_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def is_valid_instance_name(name: str) -> bool:
    """Check name shape (length and DNS-safe characters)."""
    if not INSTANCE_NAME_MIN_LENGTH <= len(name) <= INSTANCE_NAME_MAX_LENGTH:
        return False
    return INSTANCE_NAME_PATTERN.fullmatch(name) is not None
