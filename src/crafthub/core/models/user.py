"""User model and shared column helpers.

Credential material (password hashes, token issuance) is owned by the
authentication collaborator; this table only anchors subjects for owners
and grants.
"""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, String
from sqlmodel import Field, SQLModel
from ulid import ULID

from crafthub.core.domain import Role


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class User(SQLModel, table=True):
    """User account model."""

    __tablename__ = "users"

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    username: str = Field(unique=True, index=True, max_length=64)
    role: Role = Field(default=Role.JUNIOR_ADMIN, sa_type=String)
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True))
    )
