"""Access control evaluator.

Admins reach every instance. Junior admins reach only instances they hold
an AccessGrant for. Instance existence is the caller's concern.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crafthub.core.domain import Role
from crafthub.core.models import AccessGrant, Instance


async def can_access(
    db: AsyncSession, subject_id: str, role: Role, instance_id: str
) -> bool:
    if role == Role.ADMIN:
        return True

    stmt = select(AccessGrant.id).where(
        AccessGrant.user_id == subject_id,
        AccessGrant.instance_id == instance_id,
    )
    result = await db.execute(stmt)
    return result.first() is not None


async def visible_instances(
    db: AsyncSession, subject_id: str, role: Role
) -> list[Instance]:
    """Instances the subject may see, newest first."""
    stmt = select(Instance)
    if role != Role.ADMIN:
        stmt = stmt.join(AccessGrant, AccessGrant.instance_id == Instance.id).where(
            AccessGrant.user_id == subject_id
        )
    stmt = stmt.order_by(Instance.created_at.desc(), Instance.id.desc())
    result = await db.execute(stmt)
    return list(result.scalars().all())
