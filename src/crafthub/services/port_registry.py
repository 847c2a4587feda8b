"""Port registry: ports currently claimed by persisted instances.

Read live from the store on every call so concurrent creations are seen.
This check gives friendly errors; the unique constraints on the instances
table remain the final arbiter.
"""

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crafthub.core.domain import MAX_PORT, MIN_PORT, PortKind
from crafthub.core.errors import InvalidRequestError, PortInUseError
from crafthub.core.models import Instance


@dataclass
class UsedPorts:
    server: set[int] = field(default_factory=set)
    rcon: set[int] = field(default_factory=set)
    voice_chat: set[int] = field(default_factory=set)
    geyser: set[int] = field(default_factory=set)


async def used_ports(db: AsyncSession, exclude_instance_id: str | None = None) -> UsedPorts:
    """Collect claimed ports across all instances.

    Args:
        db: Database session
        exclude_instance_id: Leave this instance's own ports out
    """
    stmt = select(
        Instance.id,
        Instance.server_port,
        Instance.rcon_port,
        Instance.voice_chat_port,
        Instance.geyser_port,
    )
    result = await db.execute(stmt)

    ports = UsedPorts()
    for instance_id, server, rcon, voice, geyser in result.all():
        if instance_id == exclude_instance_id:
            continue
        ports.server.add(server)
        ports.rcon.add(rcon)
        if voice is not None:
            ports.voice_chat.add(voice)
        if geyser is not None:
            ports.geyser.add(geyser)
    return ports


def check_port_values(
    server_port: int,
    rcon_port: int,
    voice_chat_port: int | None = None,
    geyser_port: int | None = None,
) -> None:
    """Reject out-of-range ports and ports reused within one instance."""
    requested = [
        (PortKind.SERVER, server_port),
        (PortKind.RCON, rcon_port),
        (PortKind.VOICE_CHAT, voice_chat_port),
        (PortKind.GEYSER, geyser_port),
    ]
    seen: dict[int, PortKind] = {}
    for kind, port in requested:
        if port is None:
            continue
        if not MIN_PORT <= port <= MAX_PORT:
            raise InvalidRequestError(
                f"{kind.replace('_', ' ').capitalize()} port must be between "
                f"{MIN_PORT} and {MAX_PORT}"
            )
        if port in seen:
            raise InvalidRequestError(
                f"Port {port} is used for both {seen[port]} and {kind}"
            )
        seen[port] = kind


async def validate_ports(
    db: AsyncSession,
    server_port: int,
    rcon_port: int,
    geyser_port: int | None = None,
    exclude_instance_id: str | None = None,
) -> None:
    """Raise PortInUseError when an exclusive port is already claimed.

    Server, rcon and geyser ports are exclusive per kind. Voice chat ports
    may be shared and are never checked here.
    """
    ports = await used_ports(db, exclude_instance_id)
    if server_port in ports.server:
        raise PortInUseError(PortKind.SERVER, server_port)
    if rcon_port in ports.rcon:
        raise PortInUseError(PortKind.RCON, rcon_port)
    if geyser_port is not None and geyser_port in ports.geyser:
        raise PortInUseError(PortKind.GEYSER, geyser_port)
