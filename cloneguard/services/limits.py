from __future__ import annotations

from dataclasses import asdict
import logging
import time

from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.core.config import get_settings
from cloneguard.core.errors import InvalidArgumentError
from cloneguard.domain.models import CloneLimit
from cloneguard.domain.types import AUDIT_SUCCESS, ENVIRONMENTS, CloneLimits
from cloneguard.persistence.repos import limits as limits_repo
from cloneguard.services.audit import record_clone_audit


logger = logging.getLogger(__name__)


DEFAULT_LIMITS: dict[str, CloneLimits] = {
    "DEV": CloneLimits("DEV", 5, None, True, True),
    "TST": CloneLimits("TST", 3, 30, False, True),
    "UAT": CloneLimits("UAT", 2, 14, False, True),
    "PPE": CloneLimits("PPE", 1, 7, False, True),
    "PRD": CloneLimits("PRD", 1, 7, False, True),
}


def normalize_environment(environment: str | None) -> str:
    value = (environment or "").strip().upper()
    if value not in ENVIRONMENTS:
        raise InvalidArgumentError(
            "Invalid environment",
            details={"environment": environment, "allowed": list(ENVIRONMENTS)},
        )
    return value


def _to_limits(row: CloneLimit) -> CloneLimits:
    return CloneLimits(
        environment=row.environment,
        max_clones_per_user=row.max_clones_per_user,
        expiry_days=row.expiry_days,
        allow_database_clones=row.allow_database_clones,
        allow_schema_clones=row.allow_schema_clones,
    )


class LimitStore:
    """Read-through cache over the per-environment limit rows.

    Entries live for ``config_cache_ttl_s`` seconds and every write through this store
    drops the cache, so an administrator's change is visible to the next admission in
    this process.
    """

    def __init__(self, ttl_s: float | None = None) -> None:
        self._ttl_s = ttl_s
        self._cached: dict[str, CloneLimits] | None = None
        self._loaded_at = 0.0

    @property
    def ttl_s(self) -> float:
        return self._ttl_s if self._ttl_s is not None else float(get_settings().config_cache_ttl_s)

    def invalidate(self) -> None:
        self._cached = None
        self._loaded_at = 0.0

    async def _load(self, session: AsyncSession) -> dict[str, CloneLimits]:
        cached = self._cached
        if cached is not None and time.monotonic() - self._loaded_at < self.ttl_s:
            return cached
        rows = await limits_repo.list_limits(session)
        merged = dict(DEFAULT_LIMITS)
        for row in rows:
            merged[row.environment] = _to_limits(row)
        self._cached = merged
        self._loaded_at = time.monotonic()
        return merged

    async def get(self, session: AsyncSession, environment: str) -> CloneLimits:
        environment = normalize_environment(environment)
        return (await self._load(session))[environment]

    async def get_all(self, session: AsyncSession) -> list[CloneLimits]:
        limits = await self._load(session)
        return [limits[env] for env in ENVIRONMENTS]

    async def set(
        self,
        session: AsyncSession,
        *,
        environment: str,
        max_clones_per_user: int,
        expiry_days: int | None,
        allow_database_clones: bool,
        allow_schema_clones: bool,
        actor: str,
        actor_role: str | None = None,
        request_id: str | None = None,
    ) -> CloneLimits:
        environment = normalize_environment(environment)
        if max_clones_per_user < 0:
            raise InvalidArgumentError("max_clones_per_user must be >= 0")
        if expiry_days is not None and expiry_days < 1:
            raise InvalidArgumentError("expiry_days must be >= 1 or null")
        previous = (await self._load(session))[environment]
        row = await limits_repo.upsert_limit(
            session,
            environment=environment,
            max_clones_per_user=max_clones_per_user,
            expiry_days=expiry_days,
            allow_database_clones=allow_database_clones,
            allow_schema_clones=allow_schema_clones,
            updated_by=actor,
        )
        updated = _to_limits(row)
        await session.commit()
        self.invalidate()
        logger.info(
            "clone_limits_updated environment=%s max=%s expiry_days=%s actor=%s",
            environment,
            max_clones_per_user,
            expiry_days,
            actor,
        )
        await record_clone_audit(
            operation="SET_LIMITS",
            status=AUDIT_SUCCESS,
            actor=actor,
            actor_role=actor_role,
            environment=environment,
            request_id=request_id,
            metadata={
                "previous": asdict(previous),
                "current": asdict(updated),
            },
        )
        return updated


_limit_store = LimitStore()


def get_limit_store() -> LimitStore:
    return _limit_store
