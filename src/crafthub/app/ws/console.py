"""Live console WebSocket endpoint (``/ws``)."""

import logging
from typing import Any

from fastapi import APIRouter
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from crafthub.services import ChannelClosedError, SessionHub, ViewerChannel

logger = logging.getLogger(__name__)

router = APIRouter()


class WebSocketChannel(ViewerChannel):
    """ViewerChannel over a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def send(self, message: dict[str, Any]) -> None:
        if self._websocket.application_state != WebSocketState.CONNECTED:
            raise ChannelClosedError()
        try:
            await self._websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            raise ChannelClosedError() from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._websocket.close(code=code, reason=reason)
        except RuntimeError as e:
            raise ChannelClosedError() from e


@router.websocket("/ws")
async def console(websocket: WebSocket) -> None:
    hub: SessionHub = websocket.app.state.hub
    await websocket.accept()
    session = await hub.connect(WebSocketChannel(websocket))

    try:
        while not session.closed:
            data = await websocket.receive()
            if data["type"] == "websocket.disconnect":
                break
            if "text" in data and data["text"] is not None:
                await hub.handle_message(session, data["text"])
            elif data.get("bytes") is not None:
                await hub.handle_message(
                    session, data["bytes"].decode("utf-8", errors="replace")
                )
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(session)
