from __future__ import annotations

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.domain.models import ClonePolicy


async def get_policy_by_name(session: AsyncSession, name: str) -> ClonePolicy | None:
    result = await session.execute(select(ClonePolicy).where(ClonePolicy.name == name))
    return result.scalar_one_or_none()


async def list_policies(
    session: AsyncSession,
    *,
    environment: str | None = None,
    policy_type: str | None = None,
    active_only: bool = True,
) -> list[ClonePolicy]:
    # Environment-scoped listings always include global policies.
    stmt = select(ClonePolicy)
    if environment:
        stmt = stmt.where(or_(ClonePolicy.environment == environment, ClonePolicy.environment.is_(None)))
    if policy_type:
        stmt = stmt.where(ClonePolicy.policy_type == policy_type)
    if active_only:
        stmt = stmt.where(ClonePolicy.is_active.is_(True))
    result = await session.execute(stmt.order_by(ClonePolicy.name.asc()))
    return list(result.scalars().all())


async def delete_policy(session: AsyncSession, name: str) -> int:
    result = await session.execute(delete(ClonePolicy).where(ClonePolicy.name == name))
    return int(result.rowcount or 0)
