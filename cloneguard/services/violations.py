from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.core.config import get_settings
from cloneguard.core.errors import InvalidArgumentError, NotFoundError
from cloneguard.domain.models import PolicyViolation
from cloneguard.domain.types import (
    AUDIT_SUCCESS,
    SEVERITIES,
    VIOLATION_STATUS_OPEN,
    VIOLATION_STATUS_RESOLVED,
)
from cloneguard.persistence.repos import violations as violations_repo
from cloneguard.services.audit import record_clone_audit
from cloneguard.services.limits import normalize_environment
from cloneguard.services.registry import as_utc


logger = logging.getLogger(__name__)

_STATUSES = (VIOLATION_STATUS_OPEN, VIOLATION_STATUS_RESOLVED)


def violation_to_dict(row: PolicyViolation) -> dict[str, Any]:
    detected_at = as_utc(row.detected_at)
    resolved_at = as_utc(row.resolved_at)
    return {
        "violation_id": row.id,
        "policy_id": row.policy_id,
        "policy_name": row.policy_name,
        "clone_id": row.clone_id,
        "clone_name": row.clone_name,
        "environment": row.environment,
        "violated_by": row.violated_by,
        "details": dict(row.details_json or {}),
        "severity": row.severity,
        "status": row.status,
        "detected_at": detected_at.isoformat() if detected_at else None,
        "resolved_by": row.resolved_by,
        "resolved_at": resolved_at.isoformat() if resolved_at else None,
        "resolution_notes": row.resolution_notes,
    }


async def list_violations(
    session: AsyncSession,
    *,
    status: str | None = VIOLATION_STATUS_OPEN,
    severity: str | None = None,
    environment: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    offset: int = 0,
    limit: int = 100,
    now: datetime | None = None,
) -> list[PolicyViolation]:
    # Default window covers the last violations_default_days days.
    if status:
        status = status.strip().upper()
        if status == "ALL":
            status = None
        elif status not in _STATUSES:
            raise InvalidArgumentError("Invalid violation status", details={"status": status})
    if severity:
        severity = severity.strip().upper()
        if severity not in SEVERITIES:
            raise InvalidArgumentError("Invalid severity", details={"severity": severity})
    if environment:
        environment = normalize_environment(environment)
    now = as_utc(now) or datetime.now(timezone.utc)
    if start is None:
        start = now - timedelta(days=get_settings().violations_default_days)
    return await violations_repo.list_violations(
        session,
        status=status,
        severity=severity,
        environment=environment,
        detected_from=as_utc(start),
        detected_to=as_utc(end),
        offset=offset,
        limit=limit,
    )


async def resolve_violation(
    session: AsyncSession,
    *,
    violation_id: int,
    resolver: str,
    notes: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
) -> PolicyViolation:
    row = await violations_repo.get_violation(session, violation_id)
    if row is None:
        raise NotFoundError("Violation not found", details={"violation_id": violation_id})
    already_resolved = row.status == VIOLATION_STATUS_RESOLVED
    if not already_resolved:
        row.status = VIOLATION_STATUS_RESOLVED
        row.resolved_by = resolver
        row.resolved_at = datetime.now(timezone.utc)
        row.resolution_notes = notes
        await session.commit()
        await session.refresh(row)
        logger.info("clone_violation_resolved violation_id=%s resolver=%s", violation_id, resolver)
    await record_clone_audit(
        operation="RESOLVE_VIOLATION",
        status=AUDIT_SUCCESS,
        actor=resolver,
        actor_role=actor_role,
        clone_id=row.clone_id,
        clone_name=row.clone_name,
        environment=row.environment,
        policy_name=row.policy_name,
        request_id=request_id,
        metadata={"violation_id": violation_id, "already_resolved": already_resolved},
    )
    return row
