from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.domain.models import Clone, CloneAdmissionLock
from cloneguard.domain.types import LIVE_CLONE_STATES


async def get_clone(session: AsyncSession, clone_id: str) -> Clone | None:
    return await session.get(Clone, clone_id)


async def find_clone(session: AsyncSession, clone_ref: str) -> Clone | None:
    # Resolve an id, bare name, or qualified name; the newest live match wins for bare names.
    clone = await session.get(Clone, clone_ref)
    if clone is not None:
        return clone
    ref = clone_ref.strip().upper()
    result = await session.execute(select(Clone).where(Clone.qualified_name == ref))
    clone = result.scalar_one_or_none()
    if clone is not None:
        return clone
    result = await session.execute(
        select(Clone)
        .where(Clone.name == ref)
        .order_by(Clone.state.in_(LIVE_CLONE_STATES).desc(), Clone.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_clones(
    session: AsyncSession,
    *,
    owner: str | None = None,
    environment: str | None = None,
    states: Iterable[str] | None = LIVE_CLONE_STATES,
    offset: int = 0,
    limit: int = 100,
) -> list[Clone]:
    stmt = select(Clone)
    if owner:
        stmt = stmt.where(Clone.owner == owner)
    if environment:
        stmt = stmt.where(Clone.environment == environment)
    if states is not None:
        stmt = stmt.where(Clone.state.in_(tuple(states)))
    stmt = stmt.order_by(Clone.created_at.desc(), Clone.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_live(
    session: AsyncSession,
    *,
    owner: str,
    environment: str | None = None,
) -> int:
    # Reservations count so concurrent admissions see in-flight copies.
    stmt = select(func.count()).select_from(Clone).where(
        Clone.owner == owner,
        Clone.state.in_(LIVE_CLONE_STATES),
    )
    if environment:
        stmt = stmt.where(Clone.environment == environment)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def max_sequence(
    session: AsyncSession,
    *,
    owner: str,
    environment: str,
    source_key: str,
) -> int:
    # Deleted rows stay in the registry, so the maximum never moves backwards.
    result = await session.execute(
        select(func.max(Clone.sequence)).where(
            Clone.owner == owner,
            Clone.environment == environment,
            Clone.source_key == source_key,
        )
    )
    return int(result.scalar_one_or_none() or 0)


async def qualified_name_taken(session: AsyncSession, qualified_name: str) -> bool:
    result = await session.execute(
        select(Clone.id).where(Clone.qualified_name == qualified_name).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def list_expired(
    session: AsyncSession,
    *,
    now: datetime,
    states: Iterable[str],
    environment: str | None = None,
) -> list[Clone]:
    stmt = select(Clone).where(
        Clone.state.in_(tuple(states)),
        Clone.expires_at.is_not(None),
        Clone.expires_at < now,
    )
    if environment:
        stmt = stmt.where(Clone.environment == environment)
    result = await session.execute(stmt.order_by(Clone.expires_at.asc(), Clone.id.asc()))
    return list(result.scalars().all())


async def list_stale_provisioning(
    session: AsyncSession,
    *,
    created_before: datetime,
    environment: str | None = None,
) -> list[Clone]:
    stmt = select(Clone).where(
        Clone.state == "PROVISIONING",
        Clone.created_at < created_before,
    )
    if environment:
        stmt = stmt.where(Clone.environment == environment)
    result = await session.execute(stmt.order_by(Clone.created_at.asc()))
    return list(result.scalars().all())


async def transition_state(
    session: AsyncSession,
    *,
    clone_id: str,
    from_states: Iterable[str],
    to_state: str,
    values: dict | None = None,
) -> bool:
    # Conditional update; False means another caller already moved the clone.
    result = await session.execute(
        update(Clone)
        .where(Clone.id == clone_id, Clone.state.in_(tuple(from_states)))
        .values(state=to_state, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0


async def ensure_admission_lock(session: AsyncSession, *, owner_key: str, environment: str) -> None:
    existing = await session.get(CloneAdmissionLock, (owner_key, environment))
    if existing is None:
        session.add(CloneAdmissionLock(owner_key=owner_key, environment=environment, version=0))


async def acquire_admission_lock(session: AsyncSession, *, owner_key: str, environment: str) -> bool:
    # First write of the claim transaction; holds the key's row lock until commit.
    result = await session.execute(
        update(CloneAdmissionLock)
        .where(
            CloneAdmissionLock.owner_key == owner_key,
            CloneAdmissionLock.environment == environment,
        )
        .values(version=CloneAdmissionLock.version + 1)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0


def owned_by(clone: Clone, actor: str) -> bool:
    return clone.owner == actor
