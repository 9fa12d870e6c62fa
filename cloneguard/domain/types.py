from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal


ENVIRONMENTS: tuple[str, ...] = ("DEV", "TST", "UAT", "PPE", "PRD")

CLONE_KIND_SCHEMA = "SCHEMA"
CLONE_KIND_DATABASE = "DATABASE"
CLONE_KINDS: tuple[str, ...] = (CLONE_KIND_SCHEMA, CLONE_KIND_DATABASE)

CloneState = Literal["PROVISIONING", "ACTIVE", "PARTIAL", "FAILED", "DELETING", "DELETED"]
CLONE_STATE_PROVISIONING = "PROVISIONING"
CLONE_STATE_ACTIVE = "ACTIVE"
CLONE_STATE_PARTIAL = "PARTIAL"
CLONE_STATE_FAILED = "FAILED"
CLONE_STATE_DELETING = "DELETING"
CLONE_STATE_DELETED = "DELETED"
# Live clones hold a quota slot; reservations count so in-flight copies cannot overshoot.
LIVE_CLONE_STATES: tuple[str, ...] = (
    CLONE_STATE_PROVISIONING,
    CLONE_STATE_ACTIVE,
    CLONE_STATE_PARTIAL,
)
DELETABLE_CLONE_STATES: tuple[str, ...] = (
    CLONE_STATE_ACTIVE,
    CLONE_STATE_PARTIAL,
    CLONE_STATE_FAILED,
)

POLICY_TYPE_MAX_AGE = "MAX_AGE"
POLICY_TYPE_RESTRICTED_SOURCE = "RESTRICTED_SOURCE"
POLICY_TYPE_DATA_CLASSIFICATION = "DATA_CLASSIFICATION"
POLICY_TYPE_USER_QUOTA = "USER_QUOTA"
POLICY_TYPE_ENVIRONMENT_RESTRICTION = "ENVIRONMENT_RESTRICTION"
POLICY_TYPE_TIME_RESTRICTION = "TIME_RESTRICTION"
POLICY_TYPE_SENSITIVE_DATA = "SENSITIVE_DATA"
POLICY_TYPE_APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
POLICY_TYPES: tuple[str, ...] = (
    POLICY_TYPE_MAX_AGE,
    POLICY_TYPE_RESTRICTED_SOURCE,
    POLICY_TYPE_DATA_CLASSIFICATION,
    POLICY_TYPE_USER_QUOTA,
    POLICY_TYPE_ENVIRONMENT_RESTRICTION,
    POLICY_TYPE_TIME_RESTRICTION,
    POLICY_TYPE_SENSITIVE_DATA,
    POLICY_TYPE_APPROVAL_REQUIRED,
)

SEVERITY_INFO = "INFO"
SEVERITY_WARNING = "WARNING"
SEVERITY_ERROR = "ERROR"
SEVERITY_CRITICAL = "CRITICAL"
SEVERITIES: tuple[str, ...] = (SEVERITY_INFO, SEVERITY_WARNING, SEVERITY_ERROR, SEVERITY_CRITICAL)
# Higher rank sorts first; unknown severities sort after INFO.
SEVERITY_RANK: dict[str, int] = {
    SEVERITY_CRITICAL: 4,
    SEVERITY_ERROR: 3,
    SEVERITY_WARNING: 2,
    SEVERITY_INFO: 1,
}

POLICY_ACTION_WARN_AND_LOG = "WARN_AND_LOG"
POLICY_ACTION_BLOCK = "BLOCK"
POLICY_ACTION_REQUIRE_APPROVAL = "REQUIRE_APPROVAL"
POLICY_ACTIONS: tuple[str, ...] = (
    POLICY_ACTION_WARN_AND_LOG,
    POLICY_ACTION_BLOCK,
    POLICY_ACTION_REQUIRE_APPROVAL,
)

VIOLATION_STATUS_OPEN = "OPEN"
VIOLATION_STATUS_RESOLVED = "RESOLVED"

AuditOperation = Literal[
    "CREATE_CLONE",
    "DELETE_CLONE",
    "SET_LIMITS",
    "POLICY_CREATE",
    "POLICY_STATUS",
    "POLICY_DELETE",
    "RESOLVE_VIOLATION",
    "COMPLIANCE_SCAN",
    "AUDIT_PURGE",
]
AuditStatus = Literal["SUCCESS", "BLOCKED", "DENIED", "FAILED", "PARTIAL_FAILURE", "TIMEOUT"]
AUDIT_SUCCESS = "SUCCESS"
AUDIT_BLOCKED = "BLOCKED"
AUDIT_DENIED = "DENIED"
AUDIT_FAILED = "FAILED"
AUDIT_PARTIAL_FAILURE = "PARTIAL_FAILURE"
AUDIT_TIMEOUT = "TIMEOUT"
AUDIT_STATUSES: tuple[str, ...] = (
    AUDIT_SUCCESS,
    AUDIT_BLOCKED,
    AUDIT_DENIED,
    AUDIT_FAILED,
    AUDIT_PARTIAL_FAILURE,
    AUDIT_TIMEOUT,
)


def severity_rank(severity: str | None) -> int:
    return SEVERITY_RANK.get((severity or "").upper(), 0)


@dataclass(frozen=True)
class CloneLimits:
    # Effective per-environment limits after applying built-in defaults.
    environment: str
    max_clones_per_user: int
    expiry_days: int | None
    allow_database_clones: bool
    allow_schema_clones: bool

    def allows(self, kind: str) -> bool:
        if kind == CLONE_KIND_DATABASE:
            return self.allow_database_clones
        return self.allow_schema_clones


@dataclass(frozen=True)
class CloneCandidate:
    # Descriptor of a clone as it would be registered, evaluated before any resource exists.
    clone_id: str
    kind: str
    environment: str
    source_database: str
    source_schema: str | None
    owner: str
    clone_name: str
    qualified_name: str
    sequence: int
    include_data: bool
    created_at: datetime
    expires_at: datetime | None


@dataclass(frozen=True)
class QuotaState:
    # Actor clone counts captured under the admission lock.
    environment_live: int
    total_live: int
    max_per_environment: int


@dataclass(frozen=True)
class PolicySnapshot:
    # Immutable view of an active policy so evaluation never touches the session.
    policy_id: str
    name: str
    policy_type: str
    environment: str | None
    severity: str
    action: str
    definition: dict[str, Any]
    is_active: bool = True


@dataclass(frozen=True)
class PolicyFinding:
    # A single policy match; blocking is decided by action and approvals.
    policy_id: str
    policy_name: str
    policy_type: str
    severity: str
    action: str
    message: str
    blocking: bool
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "policy_name": self.policy_name,
            "policy_type": self.policy_type,
            "severity": self.severity,
            "action": self.action,
            "message": self.message,
            "blocking": self.blocking,
            **({"details": dict(self.details)} if self.details else {}),
        }


@dataclass(frozen=True)
class PolicyEvaluation:
    violations: tuple[PolicyFinding, ...]
    should_block: bool

    @property
    def blocking(self) -> tuple[PolicyFinding, ...]:
        return tuple(item for item in self.violations if item.blocking)
