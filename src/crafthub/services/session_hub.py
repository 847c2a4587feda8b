"""Live console hub.

One ViewerSession per connected channel. Sessions authenticate in-band,
subscribe to instance log streams and send RCON commands.

Log streaming: the first subscriber of an instance starts a poll task that
tails the timestamped container logs every poll_interval and broadcasts
only lines stamped after the last one delivered. The last unsubscribe (or
channel close) cancels it.

Liveness: every heartbeat tick closes sessions that sent nothing since the
previous tick, then pings the rest.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from ulid import ULID

from crafthub.app.config import HubConfig, get_settings
from crafthub.core.domain import LifecycleState, Principal
from crafthub.core.errors import CraftHubError, InstanceNotFoundError
from crafthub.core.interfaces import TokenVerifier
from crafthub.core.logging_schema import LogEvent
from crafthub.services.command_pool import CommandPool
from crafthub.services.instance_service import InstanceOrchestrator

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008
GOING_AWAY = 1001


class ChannelClosedError(Exception):
    """Send on a channel whose transport is gone."""


class ViewerChannel(ABC):
    """Duplex message channel to one viewer (a WebSocket in production)."""

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """Send one JSON message. Raises ChannelClosedError."""
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None: ...


# =============================================================================
# Wire messages
# =============================================================================


class _Inbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AuthMessage(_Inbound):
    type: Literal["auth"]
    token: str


class SubscribeMessage(_Inbound):
    type: Literal["subscribe"]
    instance_id: str = Field(alias="instanceId")


class UnsubscribeMessage(_Inbound):
    type: Literal["unsubscribe"]
    instance_id: str = Field(alias="instanceId")


class CommandMessage(_Inbound):
    type: Literal["rcon_command"]
    instance_id: str = Field(alias="instanceId")
    command: str = Field(min_length=1)


class PingMessage(_Inbound):
    type: Literal["ping"]


class PongMessage(_Inbound):
    type: Literal["pong"]


InboundMessage = Annotated[
    AuthMessage
    | SubscribeMessage
    | UnsubscribeMessage
    | CommandMessage
    | PingMessage
    | PongMessage,
    Field(discriminator="type"),
]
_inbound_adapter: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)

KNOWN_TYPES = {"auth", "subscribe", "unsubscribe", "rcon_command", "ping", "pong"}


def error_message(message: str, code: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": "error", "message": message}
    if code is not None:
        payload["code"] = code
    return payload


def log_message(instance_id: str, line: str) -> dict[str, Any]:
    return {
        "type": "log",
        "instanceId": instance_id,
        "timestamp": datetime.now(UTC).isoformat(),
        "message": line,
    }


def command_failure(instance_id: str, error: str) -> dict[str, Any]:
    return {
        "type": "rcon_response",
        "instanceId": instance_id,
        "success": False,
        "error": error,
    }


# =============================================================================
# Log cursor
# =============================================================================

LogEntry = tuple[str, str]


def split_log_entries(text: str) -> list[LogEntry]:
    """Parse Docker ``timestamps=true`` output into (sort key, line) pairs.

    Docker prefixes each line with an RFC3339Nano stamp whose fraction has
    trailing zeros trimmed, so the fraction is padded back to nine digits
    to make keys compare as strings. Blank lines are dropped.
    """
    entries = []
    for raw in text.splitlines():
        stamp, _, line = raw.partition(" ")
        if not line.strip():
            continue
        seconds, _, fraction = stamp.rstrip("Z").partition(".")
        entries.append((f"{seconds}.{fraction.ljust(9, '0')}", line))
    return entries


def new_log_lines(
    cursor: str | None, entries: list[LogEntry]
) -> tuple[list[str], str | None]:
    """Lines stamped after ``cursor``, and the advanced cursor.

    A ``None`` cursor (first successful poll) takes the whole window.
    """
    fresh = [line for key, line in entries if cursor is None or key > cursor]
    if entries and (cursor is None or entries[-1][0] > cursor):
        cursor = entries[-1][0]
    return fresh, cursor


# =============================================================================
# Sessions
# =============================================================================


@dataclass(eq=False)
class ViewerSession:
    channel: ViewerChannel
    id: str = field(default_factory=lambda: str(ULID()))
    principal: Principal | None = None
    is_alive: bool = True
    closed: bool = False
    subscriptions: set[str] = field(default_factory=set)

    @property
    def authenticated(self) -> bool:
        return self.principal is not None


class SessionHub:
    """Subscriber sets, log polls and heartbeat for console viewers.

    Usage:
        hub = SessionHub(orchestrator, verifier, commands)
        await hub.start()

        session = await hub.connect(channel)
        await hub.handle_message(session, raw_text)
        await hub.disconnect(session)

        await hub.shutdown()
    """

    def __init__(
        self,
        orchestrator: InstanceOrchestrator,
        verifier: TokenVerifier,
        commands: CommandPool,
        config: HubConfig | None = None,
        rcon_host: str | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._verifier = verifier
        self._commands = commands
        self._config = config or get_settings().hub
        self._rcon_host = rcon_host or get_settings().rcon.host

        self._sessions: dict[str, ViewerSession] = {}
        self._subscribers: dict[str, set[ViewerSession]] = {}
        self._polls: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._heartbeat_task: asyncio.Task | None = None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def subscriber_count(self, instance_id: str) -> int:
        return len(self._subscribers.get(instance_id, ()))

    def is_polling(self, instance_id: str) -> bool:
        task = self._polls.get(instance_id)
        return task is not None and not task.done()

    # -------------------------------------------------------------------------
    # Channel lifecycle
    # -------------------------------------------------------------------------

    async def connect(self, channel: ViewerChannel) -> ViewerSession:
        session = ViewerSession(channel=channel)
        async with self._lock:
            self._sessions[session.id] = session
        logger.info(
            "Console channel opened",
            extra={"event": LogEvent.CHANNEL_OPENED, "session_id": session.id},
        )
        return session

    async def disconnect(self, session: ViewerSession) -> None:
        """Remove the session from every subscriber set. Idempotent."""
        async with self._lock:
            if self._sessions.pop(session.id, None) is None:
                return
            session.closed = True
            emptied = []
            for instance_id in list(session.subscriptions):
                subscribers = self._subscribers.get(instance_id)
                if subscribers is None:
                    continue
                subscribers.discard(session)
                if not subscribers:
                    del self._subscribers[instance_id]
                    emptied.append(instance_id)
            session.subscriptions.clear()
            tasks = [self._polls.pop(i) for i in emptied if i in self._polls]

        await self._cancel(tasks)
        logger.info(
            "Console channel closed",
            extra={"event": LogEvent.CHANNEL_CLOSED, "session_id": session.id},
        )

    async def _close_session(self, session: ViewerSession, code: int, reason: str) -> None:
        try:
            await session.channel.close(code, reason)
        except ChannelClosedError:
            pass
        await self.disconnect(session)

    # -------------------------------------------------------------------------
    # Inbound dispatch
    # -------------------------------------------------------------------------

    async def handle_message(self, session: ViewerSession, raw: str) -> None:
        """Handle one inbound frame. Never raises for message-level faults."""
        session.is_alive = True

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            await self._send(session, error_message("Invalid JSON message"))
            return
        if not isinstance(data, dict) or data.get("type") not in KNOWN_TYPES:
            await self._send(session, error_message("Unknown message type"))
            return

        try:
            message = _inbound_adapter.validate_python(data)
        except ValidationError:
            await self._send(
                session, error_message("Invalid message format", "VALIDATION_ERROR")
            )
            return

        try:
            await self._dispatch(session, message)
        except CraftHubError as e:
            await self._send(session, error_message(e.message, e.code.value))
        except Exception as e:
            logger.exception(
                "Console message handling failed: %s",
                e,
                extra={"event": LogEvent.OPERATION_FAILED, "session_id": session.id},
            )
            await self._send(session, error_message("Internal server error"))

    async def _dispatch(self, session: ViewerSession, message: Any) -> None:
        match message:
            case PingMessage():
                await self._send(session, {"type": "pong"})
            case PongMessage():
                pass
            case AuthMessage(token=token):
                await self._authenticate(session, token)
            case _ if not session.authenticated:
                await self._send(session, error_message("Not authenticated"))
            case SubscribeMessage(instance_id=instance_id):
                await self.subscribe(session, instance_id)
            case UnsubscribeMessage(instance_id=instance_id):
                await self.unsubscribe(session, instance_id)
            case CommandMessage(instance_id=instance_id, command=command):
                await self._send(
                    session, await self.run_command(session, instance_id, command)
                )

    async def _authenticate(self, session: ViewerSession, token: str) -> None:
        try:
            principal = await self._verifier.verify(token)
        except CraftHubError as e:
            logger.info(
                "Console authentication failed",
                extra={
                    "event": LogEvent.CHANNEL_AUTH_FAILED,
                    "session_id": session.id,
                    "reason": e.message,
                },
            )
            await self._send(
                session, {"type": "auth", "success": False, "message": "Invalid token"}
            )
            await self._close_session(session, POLICY_VIOLATION, "Authentication failed")
            return

        session.principal = principal
        logger.info(
            "Console channel authenticated",
            extra={
                "event": LogEvent.CHANNEL_AUTHENTICATED,
                "session_id": session.id,
                "user_id": principal.subject_id,
            },
        )
        await self._send(
            session,
            {
                "type": "auth",
                "success": True,
                "userId": principal.subject_id,
                "userRole": principal.role.value,
            },
        )

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def subscribe(self, session: ViewerSession, instance_id: str) -> bool:
        principal = session.principal
        if principal is None:
            await self._send(session, error_message("Not authenticated"))
            return False
        if not await self._orchestrator.has_access(
            principal.subject_id, instance_id, principal.role
        ):
            await self._send(session, error_message("Access denied to this instance"))
            return False
        try:
            instance = await self._orchestrator.get_by_id(instance_id)
        except InstanceNotFoundError:
            await self._send(session, error_message("Instance not found"))
            return False

        async with self._lock:
            if session.closed:
                return False
            subscribers = self._subscribers.setdefault(instance_id, set())
            subscribers.add(session)
            session.subscriptions.add(instance_id)
            if not self.is_polling(instance_id):
                self._polls[instance_id] = asyncio.create_task(
                    self._poll_logs(instance_id, instance.name)
                )
                logger.info(
                    "Log poll started",
                    extra={"event": LogEvent.POLL_STARTED, "instance_id": instance_id},
                )
        return True

    async def unsubscribe(self, session: ViewerSession, instance_id: str) -> None:
        task = None
        async with self._lock:
            session.subscriptions.discard(instance_id)
            subscribers = self._subscribers.get(instance_id)
            if subscribers is not None:
                subscribers.discard(session)
                if not subscribers:
                    del self._subscribers[instance_id]
                    task = self._polls.pop(instance_id, None)
        if task is not None:
            await self._cancel([task])

    async def _cancel(self, tasks: list[asyncio.Task]) -> None:
        if not tasks:
            return
        current = asyncio.current_task()
        for task in tasks:
            task.cancel()
        for task in tasks:
            # A poll task can end up cancelling itself via a failed send
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info(
            "Stopped %d log polls",
            len(tasks),
            extra={"event": LogEvent.POLL_STOPPED, "count": len(tasks)},
        )

    async def _poll_logs(self, instance_id: str, name: str) -> None:
        runtime = self._orchestrator.runtime
        cursor: str | None = None
        delivered = 0

        while True:
            try:
                text = await runtime.logs(name, self._config.log_tail, timestamps=True)
            except CraftHubError as e:
                logger.warning(
                    "Log poll failed for %s: %s",
                    name,
                    e.message,
                    extra={"event": LogEvent.POLL_FAILED, "instance_id": instance_id},
                )
            else:
                fresh, cursor = new_log_lines(cursor, split_log_entries(text))
                if fresh:
                    delivered += len(fresh)
                    await self._broadcast(instance_id, fresh)
                    logger.debug(
                        "Delivered %d lines (%d total) for %s",
                        len(fresh),
                        delivered,
                        name,
                    )
            await asyncio.sleep(self._config.poll_interval)

    async def _broadcast(self, instance_id: str, lines: list[str]) -> None:
        subscribers = list(self._subscribers.get(instance_id, ()))
        for line in lines:
            message = log_message(instance_id, line)
            for session in subscribers:
                # Unsubscribed mid-batch
                if instance_id not in session.subscriptions:
                    continue
                await self._send(session, message)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def run_command(
        self, session: ViewerSession, instance_id: str, command: str
    ) -> dict[str, Any]:
        """Check preconditions in order, then execute through the pool.

        Returns the rcon_response message; failures are reported in it.
        """
        principal = session.principal
        if principal is None:
            return command_failure(instance_id, "Not authenticated")
        if not await self._orchestrator.has_access(
            principal.subject_id, instance_id, principal.role
        ):
            return command_failure(instance_id, "Access denied to this instance")
        try:
            instance = await self._orchestrator.get_by_id(instance_id)
        except InstanceNotFoundError:
            return command_failure(instance_id, "Instance not found")
        if instance.status != LifecycleState.RUNNING:
            return command_failure(instance_id, "Instance is not running")
        password = await self._orchestrator.get_command_credential(instance_id)
        if not password:
            return command_failure(instance_id, "RCON password not found")

        try:
            response = await self._commands.execute(
                instance_id, command, self._rcon_host, instance.rcon_port, password
            )
        except CraftHubError as e:
            return command_failure(instance_id, e.message)
        return {
            "type": "rcon_response",
            "instanceId": instance_id,
            "success": True,
            "response": response,
        }

    # -------------------------------------------------------------------------
    # Heartbeat
    # -------------------------------------------------------------------------

    async def heartbeat_once(self) -> int:
        """One liveness tick. Returns number of sessions closed."""
        async with self._lock:
            sessions = list(self._sessions.values())

        closed = 0
        for session in sessions:
            if not session.is_alive:
                logger.info(
                    "Console channel missed heartbeat",
                    extra={"event": LogEvent.HEARTBEAT_TIMEOUT, "session_id": session.id},
                )
                await self._close_session(session, GOING_AWAY, "Heartbeat timeout")
                closed += 1
                continue
            session.is_alive = False
            await self._send(session, {"type": "ping"})
        return closed

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.heartbeat_interval)
            try:
                await self.heartbeat_once()
            except Exception as e:
                logger.exception("Heartbeat tick failed: %s", e)

    async def _send(self, session: ViewerSession, message: dict[str, Any]) -> None:
        if session.closed:
            return
        try:
            await session.channel.send(message)
        except ChannelClosedError:
            await self.disconnect(session)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def shutdown(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        async with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            await self._close_session(session, GOING_AWAY, "Server shutting down")

        async with self._lock:
            tasks = list(self._polls.values())
            self._polls.clear()
            self._subscribers.clear()
        await self._cancel(tasks)
