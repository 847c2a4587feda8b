"""Adapters module - collaborator implementations."""

from crafthub.adapters.auth import JwtTokenVerifier
from crafthub.adapters.runtime import DockerRuntimeAdapter
from crafthub.adapters.versions import HttpVersionCatalog

__all__ = [
    "DockerRuntimeAdapter",
    "HttpVersionCatalog",
    "JwtTokenVerifier",
]
