from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.core.config import get_settings
from cloneguard.core.errors import InvalidArgumentError
from cloneguard.domain.models import CloneAccessEvent, CloneAuditRecord
from cloneguard.domain.types import AUDIT_STATUSES, PolicyFinding
from cloneguard.persistence.db import SessionLocal
from cloneguard.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "private_key"]
_REDACTED_VALUE = "[REDACTED]"
_MAX_ERROR_MESSAGE = 2000


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def findings_to_json(findings: Iterable[PolicyFinding | dict[str, Any]] | None) -> list[dict[str, Any]]:
    return [item.to_dict() if isinstance(item, PolicyFinding) else dict(item) for item in findings or ()]


async def record_clone_audit(
    *,
    operation: str,
    status: str,
    actor: str | None,
    actor_role: str | None = None,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    clone_id: str | None = None,
    clone_name: str | None = None,
    clone_kind: str | None = None,
    environment: str | None = None,
    source_database: str | None = None,
    source_schema: str | None = None,
    policy_name: str | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
    violations: Iterable[PolicyFinding | dict[str, Any]] | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
    commit: bool | None = None,
) -> int | None:
    """Append one record to the clone audit trail.

    Writes are best effort: a failing audit store is logged and the caller's flow keeps
    going, so the return value is the new record id or ``None`` when the write failed.
    With a caller session the row joins that transaction and is only committed when
    ``commit`` is true.
    """
    record = CloneAuditRecord(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        operation=operation,
        clone_id=clone_id,
        clone_name=clone_name,
        clone_kind=clone_kind,
        environment=environment,
        source_database=source_database,
        source_schema=source_schema,
        policy_name=policy_name,
        actor=actor,
        actor_role=actor_role,
        status=status,
        error_code=error_code,
        error_message=error_message[:_MAX_ERROR_MESSAGE] if error_message else None,
        request_id=request_id,
        violations_json=sanitize_metadata(findings_to_json(violations)),
        metadata_json=sanitize_metadata(metadata or {}),
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(record)
                await audit_session.commit()
                return record.id
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                logger.warning(
                    "clone_audit_write_failed operation=%s request_id=%s",
                    operation,
                    request_id,
                    exc_info=exc,
                )
                return None

    resolved_commit = commit if commit is not None else False
    try:
        session.add(record)
        if resolved_commit:
            await session.commit()
        else:
            await session.flush()
        return record.id
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        logger.warning(
            "clone_audit_write_failed operation=%s request_id=%s",
            operation,
            request_id,
            exc_info=exc,
        )
        return None


async def record_clone_access(
    session: AsyncSession,
    *,
    clone_id: str | None,
    clone_name: str,
    accessed_by: str,
    access_type: str,
    query_count: int = 1,
    accessed_at: datetime | None = None,
) -> CloneAccessEvent:
    # Access log rows are part of the compliance trail; failures propagate to the caller.
    event = CloneAccessEvent(
        clone_id=clone_id,
        clone_name=clone_name,
        accessed_by=accessed_by,
        access_type=access_type,
        query_count=query_count,
        accessed_at=accessed_at or datetime.now(timezone.utc),
    )
    session.add(event)
    await session.commit()
    await session.refresh(event)
    return event


def record_to_dict(record: CloneAuditRecord) -> dict[str, Any]:
    occurred_at = record.occurred_at
    if occurred_at is not None and occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    return {
        "audit_id": record.id,
        "occurred_at": occurred_at.isoformat() if occurred_at else None,
        "operation": record.operation,
        "status": record.status,
        "actor": record.actor,
        "actor_role": record.actor_role,
        "clone_id": record.clone_id,
        "clone_name": record.clone_name,
        "clone_type": record.clone_kind,
        "environment": record.environment,
        "source_database": record.source_database,
        "source_schema": record.source_schema,
        "policy_name": record.policy_name,
        "error_code": record.error_code,
        "error_message": record.error_message,
        "request_id": record.request_id,
        "violations": list(record.violations_json or []),
        "metadata": dict(record.metadata_json or {}),
    }


async def list_audit_records(
    session: AsyncSession,
    *,
    operation: str | None = None,
    status: str | None = None,
    actor: str | None = None,
    clone_id: str | None = None,
    environment: str | None = None,
    request_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
    now: datetime | None = None,
) -> list[CloneAuditRecord]:
    # Unbounded scans are refused: the window defaults to audit_log_default_days.
    settings = get_settings()
    if status:
        status = status.strip().upper()
        if status not in AUDIT_STATUSES:
            raise InvalidArgumentError("Invalid audit status", details={"status": status})
    if limit < 1 or limit > settings.audit_log_max_limit:
        raise InvalidArgumentError(
            "limit out of range",
            details={"limit": limit, "max": settings.audit_log_max_limit},
        )
    now = now or datetime.now(timezone.utc)
    if start is None:
        start = now - timedelta(days=settings.audit_log_default_days)
    return await audit_repo.list_records(
        session,
        operation=operation.strip().upper() if operation else None,
        status=status,
        actor=actor,
        clone_id=clone_id,
        environment=environment.strip().upper() if environment else None,
        request_id=request_id,
        occurred_from=start,
        occurred_to=end,
        offset=offset,
        limit=limit,
    )
