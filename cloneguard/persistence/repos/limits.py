from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.domain.models import CloneLimit


async def list_limits(session: AsyncSession) -> list[CloneLimit]:
    result = await session.execute(select(CloneLimit).order_by(CloneLimit.environment))
    return list(result.scalars().all())


async def upsert_limit(
    session: AsyncSession,
    *,
    environment: str,
    max_clones_per_user: int,
    expiry_days: int | None,
    allow_database_clones: bool,
    allow_schema_clones: bool,
    updated_by: str | None,
) -> CloneLimit:
    # Row-per-environment upsert; caller commits.
    row = await session.get(CloneLimit, environment)
    if row is None:
        row = CloneLimit(environment=environment)
        session.add(row)
    row.max_clones_per_user = max_clones_per_user
    row.expiry_days = expiry_days
    row.allow_database_clones = allow_database_clones
    row.allow_schema_clones = allow_schema_clones
    row.updated_by = updated_by
    await session.flush()
    return row
