"""Minecraft RCON session on top of the `rcon` package.

`rcon.source.Client` is a blocking socket client; every call is pushed to a
worker thread so the event loop never waits on the network. One session
keeps one authenticated socket open until it is closed or a command fails.
"""

import asyncio
import logging

from rcon.exceptions import EmptyResponse, SessionTimeout, WrongPassword
from rcon.source import Client

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (OSError, EmptyResponse, SessionTimeout)


class RconError(Exception):
    """RCON transport or protocol failure."""


class RconAuthError(RconError):
    """Server rejected the RCON password."""


class RconSession:
    """Single authenticated RCON connection.

    Commands on one session are serialized; Minecraft answers RCON
    requests strictly in order.
    """

    def __init__(
        self,
        host: str,
        port: int,
        password: str,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self._password = password
        self._timeout = timeout
        self._client: Client | None = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._client is not None

    def _open(self) -> Client:
        client = Client(self.host, self.port, timeout=self._timeout)
        try:
            client.connect()
            client.login(self._password)
        except BaseException:
            client.close()
            raise
        return client

    async def connect(self) -> None:
        """Open the TCP connection and log in.

        Raises:
            RconAuthError: Password rejected
            RconError: Connection or protocol failure (including timeout)
        """
        try:
            self._client = await asyncio.to_thread(self._open)
        except WrongPassword as e:
            raise RconAuthError("RCON authentication failed") from e
        except _TRANSPORT_ERRORS as e:
            raise RconError(f"Failed to connect to {self.host}:{self.port}: {e}") from e

    async def command(self, command: str) -> str:
        """Execute a command and return the server's response text.

        Raises:
            RconError: Not connected, timeout or protocol failure
        """
        async with self._lock:
            client = self._client
            if client is None:
                raise RconError("RCON client is not connected")
            try:
                return await asyncio.to_thread(client.run, command)
            except _TRANSPORT_ERRORS as e:
                await self.close()
                raise RconError(f"RCON command failed: {e!r}") from e

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await asyncio.to_thread(client.close)
        except OSError as e:
            logger.debug("RCON close error for %s:%d: %s", self.host, self.port, e)
