from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cloneguard.core.config import get_settings
from cloneguard.core.errors import CloneGuardError, ExternalError
from cloneguard.domain.types import (
    CLONE_STATE_ACTIVE,
    CLONE_STATE_FAILED,
    CLONE_STATE_PARTIAL,
    CLONE_STATE_PROVISIONING,
)
from cloneguard.persistence.db import SessionLocal
from cloneguard.persistence.repos import clones as clones_repo
from cloneguard.services.admission import AdmissionController, get_admission_controller
from cloneguard.services.limits import normalize_environment
from cloneguard.services.registry import as_utc, clone_to_dict
from cloneguard.services.resilience import get_lock_redis


logger = logging.getLogger(__name__)

REAPER_LOCK_KEY = "cloneguard:reaper:lock"
REAPER_MODE_DRY_RUN = "DRY_RUN"
REAPER_MODE_EXECUTED = "EXECUTED"
_EXPIRABLE_STATES = (CLONE_STATE_ACTIVE, CLONE_STATE_PARTIAL)

_local_lock = asyncio.Lock()
_local_lock_owner: str | None = None


@dataclass
class ReaperReport:
    mode: str
    expired: list[dict[str, Any]] = field(default_factory=list)
    deleted: list[dict[str, Any]] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)
    abandoned: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "expired_count": len(self.expired),
            "deleted_count": len(self.deleted),
            "failed_count": len(self.failed),
            "abandoned_count": len(self.abandoned),
            "expired": self.expired,
            "deleted": self.deleted,
            "failed": self.failed,
            "abandoned": self.abandoned,
        }


@dataclass(slots=True)
class ReaperLock:
    token: str
    redis: Any | None
    local: bool


async def acquire_reaper_lock() -> ReaperLock | None:
    # One sweeper at a time across replicas; in-process lock when Redis is not configured.
    settings = get_settings()
    token = uuid4().hex
    redis = get_lock_redis()
    ttl_s = max(5, int(settings.reaper_lock_ttl_s))
    if redis is not None:
        acquired = await redis.set(REAPER_LOCK_KEY, token, nx=True, ex=ttl_s)
        if not acquired:
            return None
        return ReaperLock(token=token, redis=redis, local=False)

    global _local_lock_owner
    if _local_lock.locked():
        return None
    await _local_lock.acquire()
    _local_lock_owner = token
    return ReaperLock(token=token, redis=None, local=True)


async def release_reaper_lock(lock: ReaperLock) -> None:
    # Release only if this worker still owns the token.
    global _local_lock_owner
    if lock.local:
        if _local_lock.locked() and _local_lock_owner == lock.token:
            _local_lock_owner = None
            _local_lock.release()
        return
    if lock.redis is None:
        return
    current = await lock.redis.get(REAPER_LOCK_KEY)
    if current == lock.token:
        await lock.redis.delete(REAPER_LOCK_KEY)


async def _reclaim_abandoned(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    now: datetime,
    environment: str | None,
) -> list[dict[str, Any]]:
    # Reservations left behind by a crashed worker would otherwise pin quota forever.
    stale_after = timedelta(seconds=max(1, int(get_settings().provisioning_stale_after_s)))
    reclaimed: list[dict[str, Any]] = []
    async with session_factory() as session:
        rows = await clones_repo.list_stale_provisioning(
            session,
            created_before=now - stale_after,
            environment=environment,
        )
        for row in rows:
            metadata = {**(row.metadata_json or {}), "failure": "ABANDONED", "abandoned_at": now.isoformat()}
            moved = await clones_repo.transition_state(
                session,
                clone_id=row.id,
                from_states=(CLONE_STATE_PROVISIONING,),
                to_state=CLONE_STATE_FAILED,
                values={"metadata_json": metadata},
            )
            if moved:
                logger.warning("clone_reservation_abandoned clone_id=%s name=%s", row.id, row.qualified_name)
                reclaimed.append({"clone_id": row.id, "clone_name": row.qualified_name, "owner": row.owner})
        await session.commit()
    return reclaimed


async def sweep(
    *,
    environment: str | None = None,
    dry_run: bool = True,
    now: datetime | None = None,
    controller: AdmissionController | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    request_id: str | None = None,
) -> ReaperReport:
    """Find expired clones and, unless ``dry_run``, delete them as the reaper identity.

    Deletion goes through the admission controller with ``force=True`` so each clone gets
    its own audit record and concurrent interactive deletes stay idempotent. A failure on
    one clone is reported and the sweep moves on to the next.
    """
    settings = get_settings()
    now = as_utc(now) or datetime.now(timezone.utc)
    session_factory = session_factory or SessionLocal
    if environment:
        environment = normalize_environment(environment)
    report = ReaperReport(mode=REAPER_MODE_DRY_RUN if dry_run else REAPER_MODE_EXECUTED)

    try:
        async with session_factory() as session:
            expired = await clones_repo.list_expired(
                session,
                now=now,
                states=_EXPIRABLE_STATES,
                environment=environment,
            )
        report.expired = [clone_to_dict(row, now=now) for row in expired]
        if dry_run:
            return report
        report.abandoned = await _reclaim_abandoned(session_factory, now=now, environment=environment)
    except SQLAlchemyError as exc:
        raise ExternalError("Clone registry unavailable") from exc

    controller = controller or get_admission_controller()
    for row in expired:
        try:
            deletion = await controller.delete_clone(
                actor=settings.reaper_actor,
                clone_ref=row.id,
                force=True,
                actor_role="admin",
                request_id=request_id,
            )
        except CloneGuardError as exc:
            logger.warning(
                "clone_reap_failed clone_id=%s name=%s code=%s",
                row.id,
                row.qualified_name,
                exc.code,
            )
            report.failed.append(
                {"clone_id": row.id, "clone_name": row.qualified_name, "error_code": exc.code, "error": exc.message}
            )
            continue
        report.deleted.append(
            {
                "clone_id": row.id,
                "clone_name": row.qualified_name,
                "already_deleted": deletion.already_deleted,
            }
        )
    logger.info(
        "clone_reaper_sweep mode=%s expired=%s deleted=%s failed=%s abandoned=%s",
        report.mode,
        len(report.expired),
        len(report.deleted),
        len(report.failed),
        len(report.abandoned),
    )
    return report


async def run_reaper_cycle() -> dict[str, Any]:
    lock = await acquire_reaper_lock()
    if lock is None:
        return {"status": "skipped_lock"}
    try:
        report = await sweep(dry_run=False)
        return {"status": "ok", **report.to_dict()}
    finally:
        await release_reaper_lock(lock)


async def run_reaper_loop() -> None:
    # Sweep on a fixed cadence and keep going after failed cycles.
    interval = max(5, int(get_settings().reaper_interval_s))
    while True:
        try:
            await run_reaper_cycle()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("clone reaper cycle failed")
        await asyncio.sleep(interval)
