"""Database models for crafthub.

Models are defined using SQLModel (SQLAlchemy + Pydantic).
"""

from crafthub.core.models.instance import AccessGrant, Instance
from crafthub.core.models.user import User, generate_ulid, utc_now

__all__ = [
    "User",
    "Instance",
    "AccessGrant",
    "generate_ulid",
    "utc_now",
]
