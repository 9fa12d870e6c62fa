"""Clone admission, provisioning and deletion.

``AdmissionController`` is the only writer of clone lifecycle state. A request is
validated, checked against the environment's limits, serialized per sanitized actor and
environment while the quota is counted and a sequence number is claimed, evaluated
against the active policies, and only then handed to the data platform. Every call to
``request_clone`` or ``delete_clone`` writes exactly one audit record, whatever the
outcome, and only typed ``CloneGuardError`` subclasses leave this module.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable, Iterable, Protocol
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cloneguard.core.config import Settings, get_settings
from cloneguard.core.errors import (
    CloneGuardError,
    CloneTimeoutError,
    ExternalError,
    InvalidArgumentError,
    NotFoundError,
    PartialFailureError,
    PermissionDeniedError,
    PolicyDeniedError,
    PolicyViolationError,
    QuotaExceededError,
)
from cloneguard.domain.models import Clone, PolicyViolation
from cloneguard.domain.types import (
    AUDIT_BLOCKED,
    AUDIT_DENIED,
    AUDIT_FAILED,
    AUDIT_PARTIAL_FAILURE,
    AUDIT_SUCCESS,
    AUDIT_TIMEOUT,
    CLONE_KIND_SCHEMA,
    CLONE_KINDS,
    CLONE_STATE_ACTIVE,
    CLONE_STATE_DELETED,
    CLONE_STATE_DELETING,
    CLONE_STATE_FAILED,
    CLONE_STATE_PARTIAL,
    CLONE_STATE_PROVISIONING,
    DELETABLE_CLONE_STATES,
    VIOLATION_STATUS_OPEN,
    CloneCandidate,
    CloneLimits,
    PolicyEvaluation,
    PolicyFinding,
    PolicySnapshot,
    QuotaState,
)
from cloneguard.persistence.db import SessionLocal
from cloneguard.persistence.repos import clones as clones_repo
from cloneguard.providers.platform.base import DataPlatform, ObjectRef, RoleRef
from cloneguard.providers.platform.factory import get_data_platform
from cloneguard.services.access_plan import build_access_plan
from cloneguard.services.audit import findings_to_json, record_clone_audit
from cloneguard.services.limits import LimitStore, get_limit_store, normalize_environment
from cloneguard.services.naming import (
    build_clone_names,
    canonical_actor,
    normalize_identifier,
    sanitize_actor,
    sanitize_token,
    source_key,
)
from cloneguard.services.policies import PolicyStore, get_policy_store
from cloneguard.services.policy_engine import evaluate
from cloneguard.services.registry import clone_to_dict


logger = logging.getLogger(__name__)


class ApprovalGate(Protocol):
    """Answers which approval-gated policies have been approved for a request."""

    async def approved_policies(
        self,
        *,
        actor: str,
        environment: str,
        kind: str,
        source_database: str,
        source_schema: str | None,
    ) -> frozenset[str]:
        ...


class NoApprovals:
    """Default gate: nothing is ever approved, so REQUIRE_APPROVAL behaves like BLOCK."""

    async def approved_policies(self, **_: Any) -> frozenset[str]:
        return frozenset()


@dataclass(frozen=True)
class CloneAdmission:
    clone: dict[str, Any]
    violations: tuple[PolicyFinding, ...]
    clones_used: int
    clones_max: int


@dataclass(frozen=True)
class CloneDeletion:
    clone: dict[str, Any]
    already_deleted: bool = False
    force_deleted: bool = False
    role_drop_errors: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class CloneReplacement:
    replaced_clone: dict[str, Any] | None
    admission: CloneAdmission


@dataclass
class _Attempt:
    # Audit identity gathered while a call progresses.
    operation: str
    actor: str | None
    actor_role: str | None
    request_id: str | None
    environment: str | None = None
    clone_kind: str | None = None
    source_database: str | None = None
    source_schema: str | None = None
    clone_id: str | None = None
    clone_name: str | None = None
    violations: tuple[PolicyFinding, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    def describe(self, clone: Clone) -> None:
        self.environment = clone.environment
        self.clone_kind = clone.kind
        self.source_database = clone.source_database
        self.source_schema = clone.source_schema
        self.clone_id = clone.id
        self.clone_name = clone.qualified_name


_DENIED_ERRORS = (
    InvalidArgumentError,
    PolicyDeniedError,
    QuotaExceededError,
    PermissionDeniedError,
    NotFoundError,
)


def _audit_status_for(exc: CloneGuardError) -> str:
    if isinstance(exc, PolicyViolationError):
        return AUDIT_BLOCKED
    if isinstance(exc, _DENIED_ERRORS):
        return AUDIT_DENIED
    if isinstance(exc, CloneTimeoutError):
        return AUDIT_TIMEOUT
    if isinstance(exc, PartialFailureError):
        return AUDIT_PARTIAL_FAILURE
    return AUDIT_FAILED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_kind(kind: str | None) -> str:
    value = (kind or "").strip().upper()
    if value not in CLONE_KINDS:
        raise InvalidArgumentError(
            "Invalid clone type",
            details={"clone_type": kind, "allowed": list(CLONE_KINDS)},
        )
    return value


class AdmissionController:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        platform: DataPlatform | None = None,
        limit_store: LimitStore | None = None,
        policy_store: PolicyStore | None = None,
        approval_gate: ApprovalGate | None = None,
        time_provider: Callable[[], datetime] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._platform = platform
        self._limit_store = limit_store or get_limit_store()
        self._policy_store = policy_store or get_policy_store()
        self._approval_gate: ApprovalGate = approval_gate or NoApprovals()
        self._time_provider = time_provider or _utcnow
        self._settings = settings or get_settings()

    @property
    def platform(self) -> DataPlatform:
        if self._platform is None:
            self._platform = get_data_platform()
        return self._platform

    def _now(self) -> datetime:
        return self._time_provider()

    async def _record(self, attempt: _Attempt, status: str, error: CloneGuardError | None = None) -> None:
        await record_clone_audit(
            operation=attempt.operation,
            status=status,
            actor=attempt.actor,
            actor_role=attempt.actor_role,
            occurred_at=self._now(),
            clone_id=attempt.clone_id,
            clone_name=attempt.clone_name,
            clone_kind=attempt.clone_kind,
            environment=attempt.environment,
            source_database=attempt.source_database,
            source_schema=attempt.source_schema,
            error_code=error.code if error else None,
            error_message=error.message if error else None,
            violations=attempt.violations,
            metadata=attempt.metadata,
            request_id=attempt.request_id,
        )

    # -- admission ---------------------------------------------------------------

    async def request_clone(
        self,
        *,
        actor: str,
        environment: str,
        source_database: str,
        source_schema: str | None = None,
        kind: str = CLONE_KIND_SCHEMA,
        copy_data: bool = True,
        requested_suffix: str | None = None,
        actor_role: str | None = None,
        request_id: str | None = None,
        timeout_s: float | None = None,
    ) -> CloneAdmission:
        actor = canonical_actor(actor)
        attempt = _Attempt(
            operation="CREATE_CLONE",
            actor=actor,
            actor_role=actor_role,
            request_id=request_id,
            environment=(environment or "").strip().upper() or None,
            clone_kind=(kind or "").strip().upper() or None,
            source_database=source_database,
            source_schema=source_schema,
        )
        try:
            admission = await self._admit(
                attempt,
                actor=actor,
                environment=environment,
                source_database=source_database,
                source_schema=source_schema,
                kind=kind,
                copy_data=copy_data,
                requested_suffix=requested_suffix,
                timeout_s=timeout_s,
            )
        except CloneGuardError as exc:
            logger.info(
                "clone_request_rejected actor=%s environment=%s code=%s request_id=%s",
                actor,
                attempt.environment,
                exc.code,
                request_id,
            )
            await self._record(attempt, _audit_status_for(exc), exc)
            raise
        await self._record(attempt, AUDIT_SUCCESS)
        return admission

    async def _admit(
        self,
        attempt: _Attempt,
        *,
        actor: str,
        environment: str,
        source_database: str,
        source_schema: str | None,
        kind: str,
        copy_data: bool,
        requested_suffix: str | None,
        timeout_s: float | None,
    ) -> CloneAdmission:
        environment = normalize_environment(environment)
        kind = _normalize_kind(kind)
        attempt.environment = environment
        attempt.clone_kind = kind
        source_database = normalize_identifier(source_database, field="source_database")
        attempt.source_database = source_database
        if kind == CLONE_KIND_SCHEMA:
            source_schema = normalize_identifier(source_schema, field="source_schema")
        else:
            source_schema = None
        attempt.source_schema = source_schema
        owner_key = sanitize_actor(actor)
        suffix = sanitize_token(requested_suffix) if requested_suffix else None

        try:
            async with self._session_factory() as session:
                limits = await self._limit_store.get(session, environment)
                policies = await self._policy_store.active_for(session, environment)
        except SQLAlchemyError as exc:
            raise ExternalError("Clone registry unavailable") from exc
        if not limits.allows(kind):
            raise PolicyDeniedError(
                f"{kind} clones are not allowed in {environment}",
                details={"environment": environment, "clone_type": kind},
            )
        approvals = await self._approval_gate.approved_policies(
            actor=actor,
            environment=environment,
            kind=kind,
            source_database=source_database,
            source_schema=source_schema,
        )

        candidate, evaluation, clones_used = await self._claim_with_retry(
            attempt,
            actor=actor,
            owner_key=owner_key,
            environment=environment,
            kind=kind,
            source_database=source_database,
            source_schema=source_schema,
            copy_data=copy_data,
            suffix=suffix,
            limits=limits,
            policies=policies,
            approvals=approvals,
        )
        logger.info(
            "clone_reserved clone_id=%s name=%s actor=%s environment=%s",
            candidate.clone_id,
            candidate.qualified_name,
            actor,
            environment,
        )

        clone = await self._provision(candidate, actor=actor, timeout_s=timeout_s)
        logger.info(
            "clone_admitted clone_id=%s name=%s actor=%s",
            candidate.clone_id,
            candidate.qualified_name,
            actor,
        )
        return CloneAdmission(
            clone=clone_to_dict(clone, now=self._now()),
            violations=evaluation.violations,
            clones_used=clones_used,
            clones_max=limits.max_clones_per_user,
        )

    async def _claim_with_retry(self, attempt: _Attempt, **kwargs: Any) -> tuple[CloneCandidate, PolicyEvaluation, int]:
        max_retries = max(0, int(self._settings.clone_sequence_max_retries))
        for retry in range(max_retries + 1):
            try:
                return await self._claim(attempt, **kwargs)
            except IntegrityError as exc:
                logger.warning(
                    "clone_sequence_conflict actor=%s environment=%s retry=%s",
                    kwargs["actor"],
                    kwargs["environment"],
                    retry,
                    exc_info=exc,
                )
        raise ExternalError(
            "Could not allocate a unique clone name",
            details={"retries": max_retries},
        )

    async def _ensure_lock_row(self, owner_key: str, environment: str) -> None:
        async with self._session_factory() as session:
            await clones_repo.ensure_admission_lock(session, owner_key=owner_key, environment=environment)
            if not session.new:
                return
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent first request created the row; it only needs to exist.
                await session.rollback()

    async def _claim(
        self,
        attempt: _Attempt,
        *,
        actor: str,
        owner_key: str,
        environment: str,
        kind: str,
        source_database: str,
        source_schema: str | None,
        copy_data: bool,
        suffix: str | None,
        limits: CloneLimits,
        policies: list[PolicySnapshot],
        approvals: frozenset[str],
    ) -> tuple[CloneCandidate, PolicyEvaluation, int]:
        """Count, name, evaluate and reserve while holding the per-key lock row.

        The lock row update is the first statement of the transaction, so competing
        claims for the same actor and environment queue behind it until commit. Quota and
        sequence are therefore read after every earlier reservation is visible.
        """
        try:
            await self._ensure_lock_row(owner_key, environment)
            async with self._session_factory() as session:
                if not await clones_repo.acquire_admission_lock(
                    session, owner_key=owner_key, environment=environment
                ):
                    raise ExternalError("Admission lock row is missing")
                env_live = await clones_repo.count_live(session, owner=actor, environment=environment)
                if env_live >= limits.max_clones_per_user:
                    existing = await clones_repo.list_clones(session, owner=actor, environment=environment)
                    raise QuotaExceededError(
                        f"Clone limit reached for {environment}: "
                        f"{env_live} of {limits.max_clones_per_user}",
                        details={
                            "clones_used": env_live,
                            "clones_max": limits.max_clones_per_user,
                            "existing_clones": [
                                {"clone_id": row.id, "clone_name": row.qualified_name, "state": row.state}
                                for row in existing
                            ],
                        },
                    )
                total_live = await clones_repo.count_live(session, owner=actor)

                key = source_key(source_database, source_schema)
                sequence = await clones_repo.max_sequence(
                    session, owner=actor, environment=environment, source_key=key
                ) + 1
                names = build_clone_names(
                    kind=kind,
                    environment=environment,
                    source_database=source_database,
                    source_schema=source_schema,
                    actor_token=owner_key,
                    sequence=sequence,
                )
                # Distinct actors can sanitize to the same token; skip names already taken.
                while await clones_repo.qualified_name_taken(session, names.qualified_name):
                    sequence += 1
                    names = build_clone_names(
                        kind=kind,
                        environment=environment,
                        source_database=source_database,
                        source_schema=source_schema,
                        actor_token=owner_key,
                        sequence=sequence,
                    )

                now = self._now()
                expires_at = now + timedelta(days=limits.expiry_days) if limits.expiry_days else None
                candidate = CloneCandidate(
                    clone_id=uuid4().hex,
                    kind=kind,
                    environment=environment,
                    source_database=source_database,
                    source_schema=source_schema,
                    owner=actor,
                    clone_name=names.clone_name,
                    qualified_name=names.qualified_name,
                    sequence=sequence,
                    include_data=copy_data,
                    created_at=now,
                    expires_at=expires_at,
                )
                attempt.clone_id = candidate.clone_id
                attempt.clone_name = candidate.qualified_name
                attempt.metadata.update(
                    {
                        "sequence": sequence,
                        "include_data": copy_data,
                        "expires_at": expires_at,
                        **({"suffix": suffix} if suffix else {}),
                    }
                )

                evaluation = evaluate(
                    candidate,
                    policies,
                    QuotaState(
                        environment_live=env_live,
                        total_live=total_live,
                        max_per_environment=limits.max_clones_per_user,
                    ),
                    now,
                    approvals,
                )
                attempt.violations = evaluation.violations
                if evaluation.should_block:
                    # No registry row is written, so nothing may point at the candidate id.
                    attempt.clone_id = None
                    _add_violations(session, candidate, evaluation.violations, detected_at=now, clone_id=None)
                    await session.commit()
                    raise PolicyViolationError(
                        "Clone request blocked by policy",
                        details={"violations": findings_to_json(evaluation.violations)},
                    )

                metadata: dict[str, Any] = {"role_prefix": names.role_prefix}
                if suffix:
                    metadata["suffix"] = suffix
                if evaluation.violations:
                    metadata["violations"] = [item.policy_name for item in evaluation.violations]
                session.add(
                    Clone(
                        id=candidate.clone_id,
                        name=names.clone_name,
                        qualified_name=names.qualified_name,
                        kind=kind,
                        environment=environment,
                        source_database=source_database,
                        source_schema=source_schema,
                        source_key=key,
                        clone_database=names.clone_database,
                        clone_schema=names.clone_schema,
                        owner=actor,
                        sequence=sequence,
                        read_role=names.read_role,
                        write_role=names.write_role,
                        admin_role=names.admin_role,
                        include_data=copy_data,
                        state=CLONE_STATE_PROVISIONING,
                        created_at=now,
                        expires_at=expires_at,
                        metadata_json=metadata,
                    )
                )
                _add_violations(
                    session, candidate, evaluation.violations, detected_at=now, clone_id=candidate.clone_id
                )
                await session.commit()
                return candidate, evaluation, env_live + 1
        except (CloneGuardError, IntegrityError):
            raise
        except SQLAlchemyError as exc:
            raise ExternalError("Clone registry unavailable") from exc

    async def _provision(self, candidate: CloneCandidate, *, actor: str, timeout_s: float | None) -> Clone:
        platform = self.platform
        if candidate.kind == CLONE_KIND_SCHEMA:
            source = ObjectRef(candidate.source_database, candidate.source_schema)
            target = ObjectRef(candidate.source_database, candidate.clone_name)
            copy = platform.copy_schema(source, target, include_data=candidate.include_data)
        else:
            source = ObjectRef(candidate.source_database)
            target = ObjectRef(candidate.clone_name)
            copy = platform.copy_database(source, target, include_data=candidate.include_data)

        timeout = timeout_s if timeout_s is not None else float(self._settings.clone_copy_timeout_s)
        try:
            await asyncio.wait_for(copy, timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "clone_copy_timeout clone_id=%s name=%s timeout_s=%s",
                candidate.clone_id,
                candidate.qualified_name,
                timeout,
            )
            await self._finish(candidate.clone_id, CLONE_STATE_FAILED, {"failure": "TIMEOUT", "timeout_s": timeout})
            raise CloneTimeoutError(
                "Clone copy timed out",
                details={"clone_id": candidate.clone_id, "clone_name": candidate.qualified_name, "timeout_s": timeout},
            ) from exc
        except Exception as exc:
            logger.warning(
                "clone_copy_failed clone_id=%s name=%s",
                candidate.clone_id,
                candidate.qualified_name,
                exc_info=exc,
            )
            await self._finish(
                candidate.clone_id,
                CLONE_STATE_FAILED,
                {"failure": "COPY_FAILED", "error": str(exc)},
            )
            raise ExternalError(
                "Clone copy failed",
                details={"clone_id": candidate.clone_id, "clone_name": candidate.qualified_name},
            ) from exc

        async with self._session_factory() as session:
            clone = await clones_repo.get_clone(session, candidate.clone_id)
        if clone is None:
            raise ExternalError("Reserved clone disappeared", details={"clone_id": candidate.clone_id})

        plan = build_access_plan(
            kind=candidate.kind,
            clone_database=clone.clone_database,
            clone_schema=clone.clone_schema,
            read_role=clone.read_role,
            write_role=clone.write_role,
            admin_role=clone.admin_role,
            actor=actor,
        )
        step = "create_read_role"
        try:
            await platform.create_access_role(plan.read_role)
            step = "create_write_role"
            await platform.create_access_role(plan.write_role)
            for item in plan.steps:
                step = item.label
                await platform.grant(item.command)
        except Exception as exc:
            logger.warning(
                "clone_access_setup_failed clone_id=%s name=%s step=%s",
                candidate.clone_id,
                candidate.qualified_name,
                step,
                exc_info=exc,
            )
            await self._finish(
                candidate.clone_id,
                CLONE_STATE_PARTIAL,
                {"failure": "ACCESS_SETUP", "failed_step": step, "error": str(exc)},
            )
            raise PartialFailureError(
                "Clone created but access setup did not complete",
                details={
                    "clone_id": candidate.clone_id,
                    "clone_name": candidate.qualified_name,
                    "failed_step": step,
                },
            ) from exc

        return await self._finish(candidate.clone_id, CLONE_STATE_ACTIVE, {})

    async def _finish(self, clone_id: str, state: str, metadata: dict[str, Any]) -> Clone:
        # Provisioning outcome; only a clone still PROVISIONING may move.
        try:
            async with self._session_factory() as session:
                clone = await clones_repo.get_clone(session, clone_id)
                if clone is None:
                    raise ExternalError("Reserved clone disappeared", details={"clone_id": clone_id})
                merged = {**(clone.metadata_json or {}), **metadata}
                moved = await clones_repo.transition_state(
                    session,
                    clone_id=clone_id,
                    from_states=(CLONE_STATE_PROVISIONING,),
                    to_state=state,
                    values={"metadata_json": merged},
                )
                await session.commit()
                if not moved:
                    logger.warning("clone_state_transition_lost clone_id=%s target=%s", clone_id, state)
                await session.refresh(clone)
                return clone
        except SQLAlchemyError as exc:
            raise ExternalError("Clone registry unavailable", details={"clone_id": clone_id}) from exc

    # -- deletion ----------------------------------------------------------------

    async def delete_clone(
        self,
        *,
        actor: str,
        clone_ref: str,
        force: bool = False,
        actor_role: str | None = None,
        request_id: str | None = None,
    ) -> CloneDeletion:
        actor = canonical_actor(actor)
        attempt = _Attempt(
            operation="DELETE_CLONE",
            actor=actor,
            actor_role=actor_role,
            request_id=request_id,
            clone_name=clone_ref,
            metadata={"force": force},
        )
        try:
            deletion = await self._delete(attempt, actor=actor, clone_ref=clone_ref, force=force)
        except CloneGuardError as exc:
            logger.info(
                "clone_delete_rejected actor=%s clone=%s code=%s request_id=%s",
                actor,
                clone_ref,
                exc.code,
                request_id,
            )
            await self._record(attempt, _audit_status_for(exc), exc)
            raise
        attempt.metadata.update(
            {
                "already_deleted": deletion.already_deleted,
                "force_deleted": deletion.force_deleted,
                **({"role_drop_errors": list(deletion.role_drop_errors)} if deletion.role_drop_errors else {}),
            }
        )
        await self._record(attempt, AUDIT_SUCCESS)
        return deletion

    async def _load_clone(self, clone_ref: str) -> Clone:
        if not clone_ref or not str(clone_ref).strip():
            raise InvalidArgumentError("Clone reference is required")
        try:
            async with self._session_factory() as session:
                clone = await clones_repo.find_clone(session, str(clone_ref).strip())
        except SQLAlchemyError as exc:
            raise ExternalError("Clone registry unavailable") from exc
        if clone is None:
            raise NotFoundError("Clone not found", details={"clone": clone_ref})
        return clone

    async def _transition(
        self,
        clone_id: str,
        *,
        from_states: Iterable[str],
        to_state: str,
        values: dict[str, Any] | None = None,
    ) -> bool:
        try:
            async with self._session_factory() as session:
                moved = await clones_repo.transition_state(
                    session,
                    clone_id=clone_id,
                    from_states=from_states,
                    to_state=to_state,
                    values=values,
                )
                await session.commit()
                return moved
        except SQLAlchemyError as exc:
            raise ExternalError("Clone registry unavailable", details={"clone_id": clone_id}) from exc

    async def _delete(self, attempt: _Attempt, *, actor: str, clone_ref: str, force: bool) -> CloneDeletion:
        clone = await self._load_clone(clone_ref)
        attempt.describe(clone)
        if clone.state == CLONE_STATE_DELETED:
            return CloneDeletion(clone=clone_to_dict(clone, now=self._now()), already_deleted=True)
        if clone.state not in DELETABLE_CLONE_STATES:
            raise InvalidArgumentError(
                f"Clone is {clone.state} and cannot be deleted now",
                details={"clone_id": clone.id, "state": clone.state},
            )
        is_owner = clones_repo.owned_by(clone, actor)
        if not is_owner and not force:
            raise PermissionDeniedError(
                "Only the clone owner can delete this clone",
                details={"clone_id": clone.id, "owner": clone.owner},
            )

        previous_state = clone.state
        claimed = await self._transition(
            clone.id,
            from_states=(previous_state,),
            to_state=CLONE_STATE_DELETING,
        )
        if not claimed:
            # Another caller moved the clone first; report its outcome instead of acting twice.
            current = await self._load_clone(clone.id)
            if current.state in (CLONE_STATE_DELETED, CLONE_STATE_DELETING):
                return CloneDeletion(clone=clone_to_dict(current, now=self._now()), already_deleted=True)
            raise InvalidArgumentError(
                "Clone changed state during delete; retry",
                details={"clone_id": clone.id, "state": current.state},
            )

        platform = self.platform
        role_errors: list[dict[str, Any]] = []
        for role_name in (clone.write_role, clone.read_role):
            try:
                await platform.drop("DATABASE_ROLE", RoleRef(name=role_name, database=clone.clone_database))
            except Exception as exc:
                logger.warning(
                    "clone_role_drop_failed clone_id=%s role=%s",
                    clone.id,
                    role_name,
                    exc_info=exc,
                )
                role_errors.append({"role": role_name, "error": str(exc)})

        try:
            if clone.kind == CLONE_KIND_SCHEMA:
                await platform.drop("SCHEMA", ObjectRef(clone.clone_database, clone.clone_schema))
            else:
                await platform.drop("DATABASE", ObjectRef(clone.clone_database))
        except Exception as exc:
            logger.warning("clone_drop_failed clone_id=%s name=%s", clone.id, clone.qualified_name, exc_info=exc)
            await self._transition(clone.id, from_states=(CLONE_STATE_DELETING,), to_state=previous_state)
            raise ExternalError(
                "Failed to drop clone",
                details={"clone_id": clone.id, "clone_name": clone.qualified_name},
            ) from exc

        now = self._now()
        force_deleted = bool(force and not is_owner)
        metadata = dict(clone.metadata_json or {})
        metadata.update(
            {
                "deleted_by": actor,
                "deleted_at": now.isoformat(),
                "force_deleted": force_deleted,
            }
        )
        if role_errors:
            metadata["role_drop_errors"] = role_errors
        await self._transition(
            clone.id,
            from_states=(CLONE_STATE_DELETING,),
            to_state=CLONE_STATE_DELETED,
            values={"deleted_at": now, "metadata_json": metadata},
        )
        logger.info(
            "clone_deleted clone_id=%s name=%s actor=%s force=%s",
            clone.id,
            clone.qualified_name,
            actor,
            force_deleted,
        )
        deleted = await self._load_clone(clone.id)
        return CloneDeletion(
            clone=clone_to_dict(deleted, now=now),
            force_deleted=force_deleted,
            role_drop_errors=tuple(role_errors),
        )

    # -- replacement -------------------------------------------------------------

    async def replace_clone(
        self,
        *,
        actor: str,
        environment: str,
        source_database: str,
        source_schema: str | None = None,
        kind: str = CLONE_KIND_SCHEMA,
        copy_data: bool = True,
        requested_suffix: str | None = None,
        replace_oldest: bool = True,
        clone_to_replace: str | None = None,
        actor_role: str | None = None,
        request_id: str | None = None,
        timeout_s: float | None = None,
    ) -> CloneReplacement:
        """Free a quota slot if needed, then request a new clone.

        When the actor is at the limit, ``clone_to_replace`` (or, with ``replace_oldest``,
        the oldest deletable clone in the environment) is deleted first. A failed delete
        propagates and no new clone is requested.
        """
        actor = canonical_actor(actor)
        replaced: dict[str, Any] | None = None
        try:
            target = await self._replacement_target(
                actor=actor,
                environment=environment,
                replace_oldest=replace_oldest,
                clone_to_replace=clone_to_replace,
            )
        except CloneGuardError as exc:
            attempt = _Attempt(
                operation="CREATE_CLONE",
                actor=actor,
                actor_role=actor_role,
                request_id=request_id,
                environment=(environment or "").strip().upper() or None,
                clone_kind=(kind or "").strip().upper() or None,
                source_database=source_database,
                source_schema=source_schema,
                metadata={"replace": True},
            )
            await self._record(attempt, _audit_status_for(exc), exc)
            raise
        if target is not None:
            deletion = await self.delete_clone(
                actor=actor,
                clone_ref=target,
                force=False,
                actor_role=actor_role,
                request_id=request_id,
            )
            replaced = deletion.clone
        admission = await self.request_clone(
            actor=actor,
            environment=environment,
            source_database=source_database,
            source_schema=source_schema,
            kind=kind,
            copy_data=copy_data,
            requested_suffix=requested_suffix,
            actor_role=actor_role,
            request_id=request_id,
            timeout_s=timeout_s,
        )
        return CloneReplacement(replaced_clone=replaced, admission=admission)

    async def _replacement_target(
        self,
        *,
        actor: str,
        environment: str,
        replace_oldest: bool,
        clone_to_replace: str | None,
    ) -> str | None:
        environment = normalize_environment(environment)
        actor = canonical_actor(actor)
        sanitize_actor(actor)
        try:
            async with self._session_factory() as session:
                limits = await self._limit_store.get(session, environment)
                live = await clones_repo.count_live(session, owner=actor, environment=environment)
                if live < limits.max_clones_per_user:
                    return None
                if clone_to_replace:
                    clone = await clones_repo.find_clone(session, clone_to_replace.strip())
                    if clone is None:
                        raise NotFoundError("Clone not found", details={"clone": clone_to_replace})
                    if clone.environment != environment:
                        raise InvalidArgumentError(
                            "Clone to replace belongs to a different environment",
                            details={"clone_id": clone.id, "environment": clone.environment},
                        )
                    return clone.id
                if replace_oldest:
                    candidates = await clones_repo.list_clones(
                        session,
                        owner=actor,
                        environment=environment,
                        states=(CLONE_STATE_ACTIVE, CLONE_STATE_PARTIAL),
                        limit=1000,
                    )
                    if candidates:
                        oldest = min(candidates, key=lambda row: (row.created_at, row.id))
                        return oldest.id
        except SQLAlchemyError as exc:
            raise ExternalError("Clone registry unavailable") from exc
        raise QuotaExceededError(
            f"Clone limit reached for {environment}: {live} of {limits.max_clones_per_user}",
            details={"clones_used": live, "clones_max": limits.max_clones_per_user},
        )


def _add_violations(
    session: AsyncSession,
    candidate: CloneCandidate,
    findings: Iterable[PolicyFinding],
    *,
    detected_at: datetime,
    clone_id: str | None,
) -> None:
    for finding in findings:
        session.add(
            PolicyViolation(
                policy_id=finding.policy_id,
                policy_name=finding.policy_name,
                clone_id=clone_id,
                clone_name=candidate.qualified_name,
                environment=candidate.environment,
                violated_by=candidate.owner,
                details_json={
                    "message": finding.message,
                    "action": finding.action,
                    "policy_type": finding.policy_type,
                    "blocking": finding.blocking,
                    **finding.details,
                },
                severity=finding.severity,
                status=VIOLATION_STATUS_OPEN,
                detected_at=detected_at,
            )
        )


_controller: AdmissionController | None = None


def get_admission_controller() -> AdmissionController:
    global _controller
    if _controller is None:
        _controller = AdmissionController()
    return _controller
