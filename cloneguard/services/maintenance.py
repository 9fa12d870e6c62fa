from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.core.config import get_settings
from cloneguard.core.errors import InvalidArgumentError
from cloneguard.domain.models import CloneAccessEvent, CloneAuditRecord, PolicyViolation
from cloneguard.domain.types import AUDIT_SUCCESS, VIOLATION_STATUS_RESOLVED
from cloneguard.services.audit import record_clone_audit
from cloneguard.services.registry import as_utc


logger = logging.getLogger(__name__)


async def _count(session: AsyncSession, model: Any, *conditions: Any) -> int:
    result = await session.execute(select(func.count()).select_from(model).where(*conditions))
    return int(result.scalar_one())


async def _delete(session: AsyncSession, model: Any, *conditions: Any) -> int:
    result = await session.execute(
        delete(model).where(*conditions).execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def purge_audit_records(
    session: AsyncSession,
    *,
    retention_days: int | None = None,
    dry_run: bool = False,
    now: datetime | None = None,
    actor: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Remove compliance-trail rows older than the retention window.

    Only rows strictly older than the cutoff go: audit records, violations that are
    already resolved, and access events. Open violations are never purged. A dry run only
    counts.
    """
    days = retention_days if retention_days is not None else get_settings().audit_retention_days
    if days < 1:
        raise InvalidArgumentError("retention_days must be >= 1", details={"retention_days": days})
    now = as_utc(now) or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days)

    audit_where = (CloneAuditRecord.occurred_at < cutoff,)
    violation_where = (
        PolicyViolation.status == VIOLATION_STATUS_RESOLVED,
        PolicyViolation.detected_at < cutoff,
    )
    access_where = (CloneAccessEvent.accessed_at < cutoff,)

    action = _count if dry_run else _delete
    result = {
        "dry_run": dry_run,
        "retention_days": days,
        "cutoff": cutoff.isoformat(),
        "audit_records": await action(session, CloneAuditRecord, *audit_where),
        "resolved_violations": await action(session, PolicyViolation, *violation_where),
        "access_events": await action(session, CloneAccessEvent, *access_where),
    }
    if dry_run:
        return result

    await session.commit()
    logger.info(
        "clone_audit_purged cutoff=%s audit_records=%s resolved_violations=%s access_events=%s",
        result["cutoff"],
        result["audit_records"],
        result["resolved_violations"],
        result["access_events"],
    )
    await record_clone_audit(
        operation="AUDIT_PURGE",
        status=AUDIT_SUCCESS,
        actor=actor,
        actor_role=actor_role,
        request_id=request_id,
        metadata={key: value for key, value in result.items() if key != "dry_run"},
    )
    return result
