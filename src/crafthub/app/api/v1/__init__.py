"""API v1 module."""

from crafthub.app.api.v1.instances import router as instances_router
from crafthub.app.api.v1.versions import router as versions_router

__all__ = ["instances_router", "versions_router"]
