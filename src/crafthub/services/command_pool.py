"""Pooled RCON connections, one per instance.

Connections are opened lazily on the first command, reused while healthy,
evicted on command failure and closed by a periodic idle sweep.

Usage:
    pool = CommandPool()
    await pool.start()  # idle sweep task

    text = await pool.execute(instance_id, "list", "localhost", 25575, password)

    await pool.close(instance_id)  # instance deleted
    await pool.shutdown()
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from crafthub.app.config import RconConfig, get_settings
from crafthub.core.errors import CommandConnectError, CommandFailedError
from crafthub.core.logging_schema import LogEvent
from crafthub.infra.rcon import RconAuthError, RconSession, RconError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, int, str], RconSession]


@dataclass
class _PooledConnection:
    client: RconSession
    last_used: float


class CommandPool:
    """Instance id -> authenticated RconSession."""

    def __init__(
        self,
        config: RconConfig | None = None,
        client_factory: ClientFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or get_settings().rcon
        self._client_factory = client_factory or self._default_factory
        self._clock = clock
        self._connections: dict[str, _PooledConnection] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: asyncio.Task | None = None

    def _default_factory(self, host: str, port: int, password: str) -> RconSession:
        return RconSession(
            host,
            port,
            password,
            timeout=self._config.timeout,
        )

    def has_connection(self, instance_id: str) -> bool:
        return instance_id in self._connections

    async def execute(
        self, instance_id: str, command: str, host: str, port: int, password: str
    ) -> str:
        """Run a command on the instance's pooled connection.

        Raises:
            CommandConnectError: Could not connect or authenticate
            CommandFailedError: Command failed; the connection is evicted
        """
        client = await self._acquire(instance_id, host, port, password)
        try:
            response = await client.command(command)
        except RconError as e:
            await self._evict(instance_id, client)
            logger.warning(
                "RCON command failed",
                extra={
                    "event": LogEvent.RCON_COMMAND_FAILED,
                    "instance_id": instance_id,
                    "error": str(e),
                },
            )
            raise CommandFailedError(f"Failed to execute RCON command: {e}") from e

        entry = self._connections.get(instance_id)
        if entry is not None and entry.client is client:
            entry.last_used = self._clock()
        return response

    async def _acquire(
        self, instance_id: str, host: str, port: int, password: str
    ) -> RconSession:
        entry = self._connections.get(instance_id)
        if entry is not None and entry.client.connected:
            entry.last_used = self._clock()
            return entry.client
        if entry is not None:
            await self._evict(instance_id, entry.client)

        client = self._client_factory(host, port, password)
        try:
            await client.connect()
        except RconAuthError as e:
            raise CommandConnectError("RCON authentication failed") from e
        except RconError as e:
            raise CommandConnectError(f"Failed to connect to RCON: {e}") from e

        async with self._lock:
            existing = self._connections.get(instance_id)
            if existing is not None and existing.client.connected:
                # Lost a connect race; keep the registered connection
                winner = existing.client
            else:
                self._connections[instance_id] = _PooledConnection(client, self._clock())
                winner = client

        if winner is not client:
            await client.close()
            return winner

        logger.info(
            "RCON connected",
            extra={
                "event": LogEvent.RCON_CONNECTED,
                "instance_id": instance_id,
                "host": host,
                "port": port,
            },
        )
        return client

    async def _evict(self, instance_id: str, client: RconSession) -> None:
        async with self._lock:
            entry = self._connections.get(instance_id)
            if entry is not None and entry.client is client:
                del self._connections[instance_id]
        await self._close_client(instance_id, client)

    async def _close_client(self, instance_id: str, client: RconSession) -> None:
        try:
            await client.close()
        except (OSError, RconError) as e:
            logger.warning(
                "Error closing RCON connection for %s: %s",
                instance_id,
                e,
                extra={"event": LogEvent.RCON_CLOSED, "instance_id": instance_id},
            )

    async def close(self, instance_id: str) -> None:
        """Close and forget the instance's connection, if any."""
        async with self._lock:
            entry = self._connections.pop(instance_id, None)
        if entry is None:
            return
        await self._close_client(instance_id, entry.client)
        logger.info(
            "RCON connection closed",
            extra={"event": LogEvent.RCON_CLOSED, "instance_id": instance_id},
        )

    async def close_all(self) -> None:
        async with self._lock:
            snapshot = self._connections
            self._connections = {}
        for instance_id, entry in snapshot.items():
            await self._close_client(instance_id, entry.client)

    async def sweep(self) -> int:
        """Close connections idle longer than idle_timeout.

        Returns:
            Number of connections closed.
        """
        now = self._clock()
        async with self._lock:
            expired = [
                (instance_id, entry)
                for instance_id, entry in list(self._connections.items())
                if now - entry.last_used > self._config.idle_timeout
            ]
            for instance_id, _ in expired:
                del self._connections[instance_id]

        for instance_id, entry in expired:
            await self._close_client(instance_id, entry.client)
        if expired:
            logger.info(
                "Swept %d idle RCON connections",
                len(expired),
                extra={"event": LogEvent.RCON_SWEPT, "count": len(expired)},
            )
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.exception("RCON sweep failed: %s", e)

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self.close_all()
