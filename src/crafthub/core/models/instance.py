"""Instance and access grant models.

Uniqueness on name and on the exclusive ports lives in the schema so the
store is the final arbiter under concurrent creation. Constraint names are
stable so integrity errors can be mapped back to the violated field.
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from crafthub.core.domain import LifecycleState
from crafthub.core.models.user import generate_ulid, utc_now


class Instance(SQLModel, table=True):
    """Minecraft server instance (one container plus one data volume)."""

    __tablename__ = "instances"
    __table_args__ = (
        UniqueConstraint("name", name="uq_instances_name"),
        UniqueConstraint("server_port", name="uq_instances_server_port"),
        UniqueConstraint("rcon_port", name="uq_instances_rcon_port"),
        UniqueConstraint("geyser_port", name="uq_instances_geyser_port"),
    )

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    name: str = Field(max_length=32)  # immutable, used in DNS and container names

    minecraft_version: str = Field(max_length=32)
    fabric_version: str | None = Field(default=None, max_length=32)
    memory_allocation: str = Field(default="2G", max_length=16)
    max_players: int = Field(default=20)

    server_port: int
    rcon_port: int
    rcon_password: str = Field(max_length=128)
    voice_chat_port: int | None = None  # shared across instances
    geyser_enabled: bool = Field(default=False)
    geyser_port: int | None = None

    status: LifecycleState = Field(default=LifecycleState.STOPPED, sa_type=String)
    container_id: str | None = Field(default=None, max_length=128)

    created_by: str = Field(
        sa_column=Column(String, ForeignKey("users.id"), nullable=False, index=True)
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class AccessGrant(SQLModel, table=True):
    """Grant letting a junior admin act on one instance.

    Never mutated. Removed with either the user or the instance.
    """

    __tablename__ = "access_grants"
    __table_args__ = (
        UniqueConstraint("user_id", "instance_id", name="uq_access_grants_user_instance"),
    )

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
        )
    )
    instance_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("instances.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    granted_by: str = Field(
        sa_column=Column(String, ForeignKey("users.id"), nullable=False)
    )
    granted_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True))
    )
