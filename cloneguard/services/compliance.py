from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cloneguard.core.errors import ExternalError
from cloneguard.domain.models import PolicyViolation
from cloneguard.domain.types import (
    AUDIT_SUCCESS,
    CLONE_STATE_ACTIVE,
    CLONE_STATE_PARTIAL,
    POLICY_TYPE_MAX_AGE,
    VIOLATION_STATUS_OPEN,
)
from cloneguard.persistence.db import SessionLocal
from cloneguard.persistence.repos import clones as clones_repo
from cloneguard.persistence.repos import policies as policies_repo
from cloneguard.persistence.repos import violations as violations_repo
from cloneguard.services.audit import record_clone_audit
from cloneguard.services.limits import normalize_environment
from cloneguard.services.policy_engine import MaxAgeParams, parse_definition
from cloneguard.services.registry import as_utc


logger = logging.getLogger(__name__)

_SCANNED_STATES = (CLONE_STATE_ACTIVE, CLONE_STATE_PARTIAL)


def age_in_days(created_at: datetime, now: datetime) -> int:
    return (as_utc(now) - as_utc(created_at)).days


async def run_compliance_scan(
    *,
    actor: str,
    environment: str | None = None,
    actor_role: str | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    """Check existing clones against the active MAX_AGE policies.

    Each (clone, applicable policy) pair counts once as compliant or non-compliant. A
    non-compliant pair opens a violation unless one is already open for the same policy
    and clone, so repeated scans do not pile up duplicates.
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    if environment:
        environment = normalize_environment(environment)
    session_factory = session_factory or SessionLocal

    compliant = 0
    non_compliant = 0
    violations: list[dict[str, Any]] = []
    opened = 0
    try:
        async with session_factory() as session:
            policies = await policies_repo.list_policies(
                session,
                environment=environment,
                policy_type=POLICY_TYPE_MAX_AGE,
                active_only=True,
            )
            clones = await clones_repo.list_clones(
                session,
                environment=environment,
                states=_SCANNED_STATES,
                limit=100000,
            )
            for clone in clones:
                age_days = age_in_days(clone.created_at, now)
                for policy in policies:
                    if policy.environment is not None and policy.environment != clone.environment:
                        continue
                    params = parse_definition(policy.policy_type, policy.definition_json)
                    assert isinstance(params, MaxAgeParams)
                    if age_days <= params.max_age_days:
                        compliant += 1
                        continue
                    non_compliant += 1
                    message = f"Clone age ({age_days} days) exceeds maximum ({params.max_age_days} days)"
                    violations.append(
                        {
                            "clone_id": clone.id,
                            "clone_name": clone.qualified_name,
                            "clone_owner": clone.owner,
                            "policy_name": policy.name,
                            "violation": message,
                            "severity": policy.severity,
                            "environment": clone.environment,
                            "age_days": age_days,
                        }
                    )
                    if await violations_repo.open_violation_exists(
                        session, policy_id=policy.id, clone_id=clone.id
                    ):
                        continue
                    session.add(
                        PolicyViolation(
                            policy_id=policy.id,
                            policy_name=policy.name,
                            clone_id=clone.id,
                            clone_name=clone.qualified_name,
                            environment=clone.environment,
                            violated_by=clone.owner,
                            details_json={
                                "message": message,
                                "action": policy.action,
                                "policy_type": policy.policy_type,
                                "blocking": False,
                                "age_days": age_days,
                                "max_age_days": params.max_age_days,
                                "source": "COMPLIANCE_SCAN",
                            },
                            severity=policy.severity,
                            status=VIOLATION_STATUS_OPEN,
                            detected_at=now,
                        )
                    )
                    await session.flush()
                    opened += 1
            await session.commit()
    except SQLAlchemyError as exc:
        raise ExternalError("Clone registry unavailable") from exc

    logger.info(
        "clone_compliance_scan environment=%s compliant=%s non_compliant=%s opened=%s",
        environment,
        compliant,
        non_compliant,
        opened,
    )
    await record_clone_audit(
        operation="COMPLIANCE_SCAN",
        status=AUDIT_SUCCESS,
        actor=actor,
        actor_role=actor_role,
        environment=environment,
        request_id=request_id,
        occurred_at=now,
        metadata={
            "compliant_clones": compliant,
            "non_compliant_clones": non_compliant,
            "violations_opened": opened,
        },
    )
    return {
        "compliant_clones": compliant,
        "non_compliant_clones": non_compliant,
        "violations_opened": opened,
        "violations": violations,
        "scan_timestamp": now.isoformat(),
    }
