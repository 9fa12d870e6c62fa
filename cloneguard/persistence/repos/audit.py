from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.domain.models import CloneAuditRecord


async def list_records(
    session: AsyncSession,
    *,
    operation: str | None = None,
    status: str | None = None,
    actor: str | None = None,
    clone_id: str | None = None,
    environment: str | None = None,
    request_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[CloneAuditRecord]:
    stmt = select(CloneAuditRecord)
    if operation:
        stmt = stmt.where(CloneAuditRecord.operation == operation)
    if status:
        stmt = stmt.where(CloneAuditRecord.status == status)
    if actor:
        stmt = stmt.where(CloneAuditRecord.actor == actor)
    if clone_id:
        stmt = stmt.where(CloneAuditRecord.clone_id == clone_id)
    if environment:
        stmt = stmt.where(CloneAuditRecord.environment == environment)
    if request_id:
        stmt = stmt.where(CloneAuditRecord.request_id == request_id)
    if occurred_from:
        stmt = stmt.where(CloneAuditRecord.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(CloneAuditRecord.occurred_at <= occurred_to)

    stmt = stmt.order_by(CloneAuditRecord.occurred_at.desc(), CloneAuditRecord.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
