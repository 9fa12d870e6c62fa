from __future__ import annotations

from datetime import datetime

from sqlalchemy import case, select
from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.domain.models import PolicyViolation
from cloneguard.domain.types import SEVERITY_RANK, VIOLATION_STATUS_OPEN


_SEVERITY_ORDER = case(SEVERITY_RANK, value=PolicyViolation.severity, else_=0)


async def list_violations(
    session: AsyncSession,
    *,
    status: str | None = VIOLATION_STATUS_OPEN,
    severity: str | None = None,
    environment: str | None = None,
    violated_by: str | None = None,
    detected_from: datetime | None = None,
    detected_to: datetime | None = None,
    offset: int = 0,
    limit: int = 100,
) -> list[PolicyViolation]:
    # Most severe first, then newest.
    stmt = select(PolicyViolation)
    if status:
        stmt = stmt.where(PolicyViolation.status == status)
    if severity:
        stmt = stmt.where(PolicyViolation.severity == severity)
    if environment:
        stmt = stmt.where(PolicyViolation.environment == environment)
    if violated_by:
        stmt = stmt.where(PolicyViolation.violated_by == violated_by)
    if detected_from:
        stmt = stmt.where(PolicyViolation.detected_at >= detected_from)
    if detected_to:
        stmt = stmt.where(PolicyViolation.detected_at <= detected_to)
    stmt = stmt.order_by(
        _SEVERITY_ORDER.desc(),
        PolicyViolation.detected_at.desc(),
        PolicyViolation.id.desc(),
    )
    result = await session.execute(stmt.offset(offset).limit(limit))
    return list(result.scalars().all())


async def get_violation(session: AsyncSession, violation_id: int) -> PolicyViolation | None:
    return await session.get(PolicyViolation, violation_id)


async def open_violation_exists(session: AsyncSession, *, policy_id: str, clone_id: str) -> bool:
    result = await session.execute(
        select(PolicyViolation.id)
        .where(
            PolicyViolation.policy_id == policy_id,
            PolicyViolation.clone_id == clone_id,
            PolicyViolation.status == VIOLATION_STATUS_OPEN,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None
