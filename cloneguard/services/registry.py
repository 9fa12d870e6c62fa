from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.core.errors import InvalidArgumentError, NotFoundError
from cloneguard.domain.models import Clone
from cloneguard.domain.types import CLONE_STATE_DELETED, LIVE_CLONE_STATES
from cloneguard.persistence.repos import clones as clones_repo
from cloneguard.services.naming import canonical_actor


_ALL_STATES = ("PROVISIONING", "ACTIVE", "PARTIAL", "FAILED", "DELETING", CLONE_STATE_DELETED)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_until_expiry(expires_at: datetime | None, now: datetime) -> int | None:
    expires_at = as_utc(expires_at)
    if expires_at is None:
        return None
    return (expires_at - as_utc(now)).days


def parse_states(states: Iterable[str] | str | None) -> tuple[str, ...] | None:
    # "ALL" lifts the filter; None keeps the live default.
    if states is None:
        return LIVE_CLONE_STATES
    if isinstance(states, str):
        states = [part for part in states.split(",") if part.strip()]
    normalized = tuple(str(state).strip().upper() for state in states)
    if "ALL" in normalized:
        return None
    unknown = [state for state in normalized if state not in _ALL_STATES]
    if unknown:
        raise InvalidArgumentError(
            "Invalid clone state",
            details={"states": unknown, "allowed": list(_ALL_STATES)},
        )
    return normalized or LIVE_CLONE_STATES


def clone_to_dict(clone: Clone, *, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    created_at = as_utc(clone.created_at)
    expires_at = as_utc(clone.expires_at)
    deleted_at = as_utc(clone.deleted_at)
    return {
        "clone_id": clone.id,
        "clone_name": clone.name,
        "qualified_name": clone.qualified_name,
        "clone_type": clone.kind,
        "environment": clone.environment,
        "source_database": clone.source_database,
        "source_schema": clone.source_schema,
        "owner": clone.owner,
        "sequence": clone.sequence,
        "read_role": clone.read_role,
        "write_role": clone.write_role,
        "admin_role": clone.admin_role,
        "include_data": clone.include_data,
        "state": clone.state,
        "created_at": created_at.isoformat() if created_at else None,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "deleted_at": deleted_at.isoformat() if deleted_at else None,
        "days_until_expiry": days_until_expiry(expires_at, now),
        "metadata": dict(clone.metadata_json or {}),
    }


async def get_clone(session: AsyncSession, clone_ref: str) -> Clone:
    if not clone_ref or not clone_ref.strip():
        raise InvalidArgumentError("Clone reference is required")
    clone = await clones_repo.find_clone(session, clone_ref.strip())
    if clone is None:
        raise NotFoundError("Clone not found", details={"clone": clone_ref})
    return clone


async def list_clones(
    session: AsyncSession,
    *,
    owner: str | None = None,
    environment: str | None = None,
    states: Iterable[str] | str | None = None,
    offset: int = 0,
    limit: int = 100,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    now = now or datetime.now(timezone.utc)
    rows = await clones_repo.list_clones(
        session,
        owner=canonical_actor(owner) if owner else None,
        environment=environment,
        states=parse_states(states),
        offset=offset,
        limit=limit,
    )
    return [clone_to_dict(row, now=now) for row in rows]
