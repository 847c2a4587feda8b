"""Live console transport."""

from crafthub.app.ws.console import WebSocketChannel, router

__all__ = ["WebSocketChannel", "router"]
