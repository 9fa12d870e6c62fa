from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.core.config import get_settings
from cloneguard.core.errors import InvalidArgumentError, NotFoundError
from cloneguard.domain.models import ClonePolicy
from cloneguard.domain.types import (
    AUDIT_SUCCESS,
    POLICY_ACTION_BLOCK,
    POLICY_ACTION_REQUIRE_APPROVAL,
    POLICY_ACTION_WARN_AND_LOG,
    POLICY_ACTIONS,
    POLICY_TYPE_DATA_CLASSIFICATION,
    POLICY_TYPE_ENVIRONMENT_RESTRICTION,
    POLICY_TYPE_MAX_AGE,
    POLICY_TYPE_SENSITIVE_DATA,
    POLICY_TYPE_TIME_RESTRICTION,
    POLICY_TYPE_USER_QUOTA,
    POLICY_TYPES,
    SEVERITIES,
    SEVERITY_CRITICAL,
    SEVERITY_ERROR,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    PolicySnapshot,
)
from cloneguard.persistence.repos import policies as policies_repo
from cloneguard.services.audit import record_clone_audit
from cloneguard.services.limits import normalize_environment
from cloneguard.services.policy_engine import parse_definition


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicySpec:
    name: str
    policy_type: str
    environment: str | None
    description: str
    definition: dict[str, Any]
    severity: str
    action: str


DEFAULT_POLICIES: tuple[PolicySpec, ...] = (
    PolicySpec(
        name="PRD_MAX_CLONE_AGE_7_DAYS",
        policy_type=POLICY_TYPE_MAX_AGE,
        environment="PRD",
        description="Production clones must not exist longer than 7 days",
        definition={"max_age_days": 7},
        severity=SEVERITY_WARNING,
        action=POLICY_ACTION_WARN_AND_LOG,
    ),
    PolicySpec(
        name="UAT_MAX_CLONE_AGE_14_DAYS",
        policy_type=POLICY_TYPE_MAX_AGE,
        environment="UAT",
        description="UAT clones must not exist longer than 14 days",
        definition={"max_age_days": 14},
        severity=SEVERITY_WARNING,
        action=POLICY_ACTION_WARN_AND_LOG,
    ),
    PolicySpec(
        name="RESTRICT_PII_SCHEMA_CLONES",
        policy_type=POLICY_TYPE_SENSITIVE_DATA,
        environment=None,
        description="Schemas holding personal or regulated data require approval before cloning",
        definition={
            "restricted_schemas": ["PII", "SENSITIVE", "CONFIDENTIAL", "PHI", "PCI"],
            "approvers": ["SRS_SECURITY_ADMIN"],
        },
        severity=SEVERITY_CRITICAL,
        action=POLICY_ACTION_REQUIRE_APPROVAL,
    ),
    PolicySpec(
        name="NO_PRD_DATABASE_CLONES",
        policy_type=POLICY_TYPE_ENVIRONMENT_RESTRICTION,
        environment="PRD",
        description="Full database clones are not allowed in production",
        definition={"restricted_clone_types": ["DATABASE"]},
        severity=SEVERITY_ERROR,
        action=POLICY_ACTION_BLOCK,
    ),
    PolicySpec(
        name="PRD_BUSINESS_HOURS_ONLY",
        policy_type=POLICY_TYPE_TIME_RESTRICTION,
        environment="PRD",
        description="Production clones may only be created during business hours",
        definition={
            "allowed_hours_start": 8,
            "allowed_hours_end": 18,
            "allowed_days": ["MON", "TUE", "WED", "THU", "FRI"],
            "timezone": "America/New_York",
        },
        severity=SEVERITY_ERROR,
        action=POLICY_ACTION_BLOCK,
    ),
    PolicySpec(
        name="MAX_TOTAL_USER_CLONES_10",
        policy_type=POLICY_TYPE_USER_QUOTA,
        environment=None,
        description="No actor may hold more than 10 clones across all environments",
        definition={"max_total_clones": 10},
        severity=SEVERITY_ERROR,
        action=POLICY_ACTION_BLOCK,
    ),
    PolicySpec(
        name="AUDIT_RETENTION_365_DAYS",
        policy_type=POLICY_TYPE_DATA_CLASSIFICATION,
        environment=None,
        description="Clone audit records are retained for 365 days",
        definition={"applies_to": "AUDIT_LOG", "retention_days": 365},
        severity=SEVERITY_INFO,
        action=POLICY_ACTION_WARN_AND_LOG,
    ),
)


def to_snapshot(policy: ClonePolicy) -> PolicySnapshot:
    return PolicySnapshot(
        policy_id=policy.id,
        name=policy.name,
        policy_type=policy.policy_type,
        environment=policy.environment,
        severity=policy.severity,
        action=policy.action,
        definition=dict(policy.definition_json or {}),
        is_active=policy.is_active,
    )


def _choice(value: str | None, allowed: tuple[str, ...], *, field: str) -> str:
    normalized = (value or "").strip().upper()
    if normalized not in allowed:
        raise InvalidArgumentError(
            f"Invalid {field}",
            details={field: value, "allowed": list(allowed)},
        )
    return normalized


class PolicyStore:
    """Policy CRUD plus a read-through cache of active policy snapshots."""

    def __init__(self, ttl_s: float | None = None) -> None:
        self._ttl_s = ttl_s
        self._cached: tuple[PolicySnapshot, ...] | None = None
        self._loaded_at = 0.0

    @property
    def ttl_s(self) -> float:
        return self._ttl_s if self._ttl_s is not None else float(get_settings().config_cache_ttl_s)

    def invalidate(self) -> None:
        self._cached = None
        self._loaded_at = 0.0

    async def active_for(self, session: AsyncSession, environment: str) -> list[PolicySnapshot]:
        # Active policies scoped to the environment or global.
        cached = self._cached
        if cached is None or time.monotonic() - self._loaded_at >= self.ttl_s:
            rows = await policies_repo.list_policies(session, active_only=True)
            cached = tuple(to_snapshot(row) for row in rows)
            self._cached = cached
            self._loaded_at = time.monotonic()
        return [item for item in cached if item.environment is None or item.environment == environment]

    async def list_policies(
        self,
        session: AsyncSession,
        *,
        environment: str | None = None,
        policy_type: str | None = None,
        active_only: bool = True,
    ) -> list[ClonePolicy]:
        if environment:
            environment = normalize_environment(environment)
        if policy_type:
            policy_type = _choice(policy_type, POLICY_TYPES, field="policy_type")
        return await policies_repo.list_policies(
            session,
            environment=environment,
            policy_type=policy_type,
            active_only=active_only,
        )

    async def create(
        self,
        session: AsyncSession,
        *,
        name: str,
        policy_type: str,
        environment: str | None,
        description: str | None,
        definition: dict[str, Any] | None,
        severity: str,
        action: str,
        actor: str,
        actor_role: str | None = None,
        request_id: str | None = None,
    ) -> ClonePolicy:
        """Create or replace the policy with this name.

        Re-creating an existing name swaps in the new definition, re-activates the policy
        and bumps its version, so there is only ever one policy per name.
        """
        name = (name or "").strip().upper()
        if not name:
            raise InvalidArgumentError("Policy name is required")
        policy_type = _choice(policy_type, POLICY_TYPES, field="policy_type")
        severity = _choice(severity, SEVERITIES, field="severity")
        action = _choice(action, POLICY_ACTIONS, field="action")
        if environment:
            environment = normalize_environment(environment)
        else:
            environment = None
        params = parse_definition(policy_type, definition)
        stored = dict(definition or {})
        stored.update(params.model_dump())

        now = datetime.now(timezone.utc)
        policy = await policies_repo.get_policy_by_name(session, name)
        if policy is None:
            policy = ClonePolicy(
                id=uuid4().hex,
                name=name,
                version=1,
                created_by=actor,
                created_at=now,
            )
            session.add(policy)
        else:
            policy.version = (policy.version or 0) + 1
        policy.policy_type = policy_type
        policy.environment = environment
        policy.description = description
        policy.definition_json = stored
        policy.severity = severity
        policy.action = action
        policy.is_active = True
        policy.updated_at = now
        await session.commit()
        await session.refresh(policy)
        self.invalidate()
        logger.info(
            "clone_policy_saved name=%s type=%s version=%s actor=%s",
            name,
            policy_type,
            policy.version,
            actor,
        )
        await record_clone_audit(
            operation="POLICY_CREATE",
            status=AUDIT_SUCCESS,
            actor=actor,
            actor_role=actor_role,
            environment=environment,
            policy_name=name,
            request_id=request_id,
            metadata={
                "policy_type": policy_type,
                "severity": severity,
                "action": action,
                "version": policy.version,
            },
        )
        return policy

    async def set_status(
        self,
        session: AsyncSession,
        *,
        name: str,
        is_active: bool,
        actor: str,
        actor_role: str | None = None,
        request_id: str | None = None,
    ) -> ClonePolicy:
        name = (name or "").strip().upper()
        policy = await policies_repo.get_policy_by_name(session, name)
        if policy is None:
            raise NotFoundError("Policy not found", details={"policy_name": name})
        policy.is_active = is_active
        policy.updated_at = datetime.now(timezone.utc)
        await session.commit()
        await session.refresh(policy)
        self.invalidate()
        await record_clone_audit(
            operation="POLICY_STATUS",
            status=AUDIT_SUCCESS,
            actor=actor,
            actor_role=actor_role,
            environment=policy.environment,
            policy_name=name,
            request_id=request_id,
            metadata={"is_active": is_active},
        )
        return policy

    async def delete(
        self,
        session: AsyncSession,
        *,
        name: str,
        actor: str,
        actor_role: str | None = None,
        request_id: str | None = None,
    ) -> None:
        name = (name or "").strip().upper()
        deleted = await policies_repo.delete_policy(session, name)
        if not deleted:
            await session.rollback()
            raise NotFoundError("Policy not found", details={"policy_name": name})
        await session.commit()
        self.invalidate()
        logger.info("clone_policy_deleted name=%s actor=%s", name, actor)
        await record_clone_audit(
            operation="POLICY_DELETE",
            status=AUDIT_SUCCESS,
            actor=actor,
            actor_role=actor_role,
            policy_name=name,
            request_id=request_id,
        )

    async def setup_defaults(
        self,
        session: AsyncSession,
        *,
        actor: str,
        actor_role: str | None = None,
        request_id: str | None = None,
    ) -> list[ClonePolicy]:
        # Idempotent: re-running replaces each default by name.
        created = []
        for spec in DEFAULT_POLICIES:
            created.append(
                await self.create(
                    session,
                    name=spec.name,
                    policy_type=spec.policy_type,
                    environment=spec.environment,
                    description=spec.description,
                    definition=spec.definition,
                    severity=spec.severity,
                    action=spec.action,
                    actor=actor,
                    actor_role=actor_role,
                    request_id=request_id,
                )
            )
        return created


_policy_store = PolicyStore()


def get_policy_store() -> PolicyStore:
    return _policy_store
