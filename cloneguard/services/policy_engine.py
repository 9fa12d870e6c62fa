"""Clone policy evaluation.

Evaluation is a pure function of the candidate clone, the already-loaded policy
snapshots, the actor's quota state, an explicit ``now`` and the set of approved policy
names. It never reads the clock or the database, so the same inputs always produce the
same, deterministically ordered, findings.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from cloneguard.core.errors import InvalidArgumentError
from cloneguard.domain.types import (
    CLONE_KINDS,
    POLICY_ACTION_BLOCK,
    POLICY_ACTION_REQUIRE_APPROVAL,
    POLICY_TYPE_APPROVAL_REQUIRED,
    POLICY_TYPE_DATA_CLASSIFICATION,
    POLICY_TYPE_ENVIRONMENT_RESTRICTION,
    POLICY_TYPE_MAX_AGE,
    POLICY_TYPE_RESTRICTED_SOURCE,
    POLICY_TYPE_SENSITIVE_DATA,
    POLICY_TYPE_TIME_RESTRICTION,
    POLICY_TYPE_USER_QUOTA,
    CloneCandidate,
    PolicyEvaluation,
    PolicyFinding,
    PolicySnapshot,
    QuotaState,
    severity_rank,
)
from cloneguard.services.time_window import WEEKDAYS, TimeWindow


def _upper_all(values: list[str]) -> list[str]:
    return [str(value).strip().upper() for value in values if str(value).strip()]


class PolicyParams(BaseModel):
    # Legacy keys such as a per-definition "action" are ignored; the policy row owns the action.
    model_config = ConfigDict(extra="ignore", frozen=True)


class MaxAgeParams(PolicyParams):
    max_age_days: int = Field(ge=1)


class RestrictedSourceParams(PolicyParams):
    restricted_databases: list[str] = Field(default_factory=list)
    # Either bare schema names or DB.SCHEMA pairs.
    restricted_schemas: list[str] = Field(default_factory=list)

    @field_validator("restricted_databases", "restricted_schemas")
    @classmethod
    def normalize(cls, value: list[str]) -> list[str]:
        return _upper_all(value)


class DataClassificationParams(PolicyParams):
    classified_sources: dict[str, str] = Field(default_factory=dict)
    restricted_classifications: list[str] = Field(default_factory=list)
    applies_to: str = "CLONE"
    retention_days: int | None = Field(default=None, ge=1)

    @field_validator("classified_sources")
    @classmethod
    def normalize_sources(cls, value: dict[str, str]) -> dict[str, str]:
        return {key.strip().upper(): str(label).strip().upper() for key, label in value.items()}

    @field_validator("restricted_classifications")
    @classmethod
    def normalize_labels(cls, value: list[str]) -> list[str]:
        return _upper_all(value)

    @field_validator("applies_to")
    @classmethod
    def normalize_scope(cls, value: str) -> str:
        return value.strip().upper()


class UserQuotaParams(PolicyParams):
    max_total_clones: int = Field(ge=0)


class EnvironmentRestrictionParams(PolicyParams):
    restricted_clone_types: list[str] = Field(default_factory=list)

    @field_validator("restricted_clone_types")
    @classmethod
    def known_kinds(cls, value: list[str]) -> list[str]:
        kinds = _upper_all(value)
        unknown = [kind for kind in kinds if kind not in CLONE_KINDS]
        if unknown:
            raise ValueError(f"unknown clone types: {', '.join(unknown)}")
        return kinds


class TimeRestrictionParams(PolicyParams):
    allowed_hours_start: int = Field(default=0, ge=0, le=23)
    allowed_hours_end: int = Field(default=24, ge=1, le=24)
    allowed_days: list[str] = Field(default_factory=lambda: list(WEEKDAYS))
    timezone: str = "UTC"

    @field_validator("allowed_days")
    @classmethod
    def known_days(cls, value: list[str]) -> list[str]:
        days = _upper_all(value)
        unknown = [day for day in days if day not in WEEKDAYS]
        if unknown:
            raise ValueError(f"unknown days: {', '.join(unknown)}")
        return days

    def window(self) -> TimeWindow:
        return TimeWindow(
            start_hour=self.allowed_hours_start,
            end_hour=self.allowed_hours_end,
            days=frozenset(self.allowed_days),
            timezone=self.timezone,
        )


class SensitiveDataParams(PolicyParams):
    # Substrings matched against the upper-cased source schema.
    restricted_schemas: list[str] = Field(default_factory=list)
    approvers: list[str] = Field(default_factory=list)

    @field_validator("restricted_schemas")
    @classmethod
    def normalize(cls, value: list[str]) -> list[str]:
        return _upper_all(value)


class ApprovalRequiredParams(PolicyParams):
    # Empty means every clone kind needs approval.
    clone_types: list[str] = Field(default_factory=list)
    approvers: list[str] = Field(default_factory=list)

    @field_validator("clone_types")
    @classmethod
    def normalize(cls, value: list[str]) -> list[str]:
        return _upper_all(value)


PARAMS_BY_TYPE: dict[str, type[PolicyParams]] = {
    POLICY_TYPE_MAX_AGE: MaxAgeParams,
    POLICY_TYPE_RESTRICTED_SOURCE: RestrictedSourceParams,
    POLICY_TYPE_DATA_CLASSIFICATION: DataClassificationParams,
    POLICY_TYPE_USER_QUOTA: UserQuotaParams,
    POLICY_TYPE_ENVIRONMENT_RESTRICTION: EnvironmentRestrictionParams,
    POLICY_TYPE_TIME_RESTRICTION: TimeRestrictionParams,
    POLICY_TYPE_SENSITIVE_DATA: SensitiveDataParams,
    POLICY_TYPE_APPROVAL_REQUIRED: ApprovalRequiredParams,
}


def parse_definition(policy_type: str, definition: dict[str, Any] | None) -> PolicyParams:
    # Validate one parameter bundle against its policy type.
    model = PARAMS_BY_TYPE.get(policy_type)
    if model is None:
        raise InvalidArgumentError(
            "Invalid policy type",
            details={"policy_type": policy_type, "allowed": sorted(PARAMS_BY_TYPE)},
        )
    try:
        params = model.model_validate(definition or {})
        if isinstance(params, TimeRestrictionParams):
            params.window()
        return params
    except ValidationError as exc:
        raise InvalidArgumentError(
            f"Invalid {policy_type} policy definition",
            details={
                "errors": [
                    {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
                    for err in exc.errors()
                ]
            },
        ) from exc


_Match = tuple[str, dict[str, Any]] | None


def _source_label(candidate: CloneCandidate) -> str:
    if candidate.source_schema:
        return f"{candidate.source_database}.{candidate.source_schema}"
    return candidate.source_database


def _check_environment(candidate: CloneCandidate, params: Any, quota: QuotaState, now: datetime) -> _Match:
    if candidate.kind in params.restricted_clone_types:
        return f"{candidate.kind} clones are not allowed in {candidate.environment}", {}
    return None


def _check_user_quota(candidate: CloneCandidate, params: Any, quota: QuotaState, now: datetime) -> _Match:
    if quota.total_live >= params.max_total_clones:
        return (
            f"Total clone limit exceeded. You have {quota.total_live} clones "
            f"(max: {params.max_total_clones})",
            {"total_clones": quota.total_live, "max_total_clones": params.max_total_clones},
        )
    return None


def _check_time(candidate: CloneCandidate, params: Any, quota: QuotaState, now: datetime) -> _Match:
    window = params.window()
    if window.contains(now):
        return None
    days = ", ".join(day for day in WEEKDAYS if day in window.days)
    return (
        f"Clone creation not allowed at this time. Allowed: {window.start_hour}:00 - "
        f"{window.end_hour}:00 on {days}",
        window.describe(now),
    )


def _check_sensitive(candidate: CloneCandidate, params: Any, quota: QuotaState, now: datetime) -> _Match:
    if not candidate.source_schema:
        return None
    schema = candidate.source_schema.upper()
    matched = [item for item in params.restricted_schemas if item in schema]
    if not matched:
        return None
    return (
        "Schema contains sensitive data and requires approval",
        {"matched": matched, "approvers": list(params.approvers)},
    )


def _check_max_age(candidate: CloneCandidate, params: Any, quota: QuotaState, now: datetime) -> _Match:
    limit = timedelta(days=params.max_age_days)
    if candidate.expires_at is None:
        return (
            f"Clone has no expiry (maximum age: {params.max_age_days} days)",
            {"max_age_days": params.max_age_days},
        )
    lifetime = candidate.expires_at - candidate.created_at
    if lifetime > limit:
        return (
            f"Clone lifetime ({lifetime.days} days) exceeds maximum ({params.max_age_days} days)",
            {"lifetime_days": lifetime.days, "max_age_days": params.max_age_days},
        )
    return None


def _check_restricted_source(candidate: CloneCandidate, params: Any, quota: QuotaState, now: datetime) -> _Match:
    hits: list[str] = []
    if candidate.source_database in params.restricted_databases:
        hits.append(candidate.source_database)
    if candidate.source_schema:
        qualified = f"{candidate.source_database}.{candidate.source_schema}"
        if candidate.source_schema in params.restricted_schemas or qualified in params.restricted_schemas:
            hits.append(qualified)
    if not hits:
        return None
    return f"Source {_source_label(candidate)} is restricted", {"restricted": hits}


def _check_classification(candidate: CloneCandidate, params: Any, quota: QuotaState, now: datetime) -> _Match:
    if params.applies_to != "CLONE":
        return None
    label = None
    if candidate.source_schema:
        label = params.classified_sources.get(f"{candidate.source_database}.{candidate.source_schema}")
    if label is None:
        label = params.classified_sources.get(candidate.source_database)
    if label is None or label not in params.restricted_classifications:
        return None
    return (
        f"Source {_source_label(candidate)} is classified {label}",
        {"classification": label},
    )


def _check_approval(candidate: CloneCandidate, params: Any, quota: QuotaState, now: datetime) -> _Match:
    if params.clone_types and candidate.kind not in params.clone_types:
        return None
    return f"{candidate.kind} clones require approval", {"approvers": list(params.approvers)}


_CHECKS: dict[str, Callable[[CloneCandidate, Any, QuotaState, datetime], _Match]] = {
    POLICY_TYPE_ENVIRONMENT_RESTRICTION: _check_environment,
    POLICY_TYPE_USER_QUOTA: _check_user_quota,
    POLICY_TYPE_TIME_RESTRICTION: _check_time,
    POLICY_TYPE_SENSITIVE_DATA: _check_sensitive,
    POLICY_TYPE_MAX_AGE: _check_max_age,
    POLICY_TYPE_RESTRICTED_SOURCE: _check_restricted_source,
    POLICY_TYPE_DATA_CLASSIFICATION: _check_classification,
    POLICY_TYPE_APPROVAL_REQUIRED: _check_approval,
}


def applies_to_environment(policy: PolicySnapshot, environment: str) -> bool:
    return policy.environment is None or policy.environment == environment


def evaluate(
    candidate: CloneCandidate,
    policies: Iterable[PolicySnapshot],
    quota_state: QuotaState,
    now: datetime,
    approvals: frozenset[str] = frozenset(),
) -> PolicyEvaluation:
    findings: list[PolicyFinding] = []
    for policy in policies:
        if not policy.is_active or not applies_to_environment(policy, candidate.environment):
            continue
        check = _CHECKS.get(policy.policy_type)
        if check is None:
            continue
        match = check(candidate, parse_definition(policy.policy_type, policy.definition), quota_state, now)
        if match is None:
            continue
        message, details = match
        # An approval only lifts REQUIRE_APPROVAL; BLOCK is unconditional.
        blocking = policy.action == POLICY_ACTION_BLOCK or (
            policy.action == POLICY_ACTION_REQUIRE_APPROVAL and policy.name not in approvals
        )
        findings.append(
            PolicyFinding(
                policy_id=policy.policy_id,
                policy_name=policy.name,
                policy_type=policy.policy_type,
                severity=policy.severity,
                action=policy.action,
                message=message,
                blocking=blocking,
                details=details,
            )
        )
    findings.sort(key=lambda item: (-severity_rank(item.severity), item.policy_name))
    return PolicyEvaluation(
        violations=tuple(findings),
        should_block=any(item.blocking for item in findings),
    )
