"""HTTP middleware."""

from crafthub.app.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
