from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from cloneguard.core.errors import InvalidArgumentError
from cloneguard.domain.types import CloneCandidate, PolicySnapshot, QuotaState
from cloneguard.services.policy_engine import evaluate, parse_definition


_NOW = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)
_QUOTA = QuotaState(environment_live=0, total_live=0, max_per_environment=5)


def _candidate(**overrides: Any) -> CloneCandidate:
    base = CloneCandidate(
        clone_id="c-1",
        kind="SCHEMA",
        environment="DEV",
        source_database="HR",
        source_schema="PAYROLL",
        owner="b",
        clone_name="PAYROLL_CLONE_B_1",
        qualified_name="HR.PAYROLL_CLONE_B_1",
        sequence=1,
        include_data=True,
        created_at=_NOW,
        expires_at=_NOW + timedelta(days=7),
    )
    return replace(base, **overrides)


def _policy(
    name: str,
    policy_type: str,
    definition: dict[str, Any],
    *,
    severity: str = "ERROR",
    action: str = "BLOCK",
    environment: str | None = None,
    is_active: bool = True,
) -> PolicySnapshot:
    return PolicySnapshot(
        policy_id=f"p-{name.lower()}",
        name=name,
        policy_type=policy_type,
        environment=environment,
        severity=severity,
        action=action,
        definition=definition,
        is_active=is_active,
    )


def test_no_policies_means_no_findings() -> None:
    result = evaluate(_candidate(), [], _QUOTA, _NOW)
    assert result.violations == ()
    assert result.should_block is False


def test_environment_restriction_blocks_database_clones() -> None:
    policy = _policy(
        "NO_PRD_DATABASE_CLONES",
        "ENVIRONMENT_RESTRICTION",
        {"restricted_clone_types": ["DATABASE"]},
        environment="PRD",
    )
    blocked = evaluate(
        _candidate(kind="DATABASE", environment="PRD", source_schema=None),
        [policy],
        _QUOTA,
        _NOW,
    )
    assert blocked.should_block is True
    assert blocked.violations[0].message == "DATABASE clones are not allowed in PRD"

    allowed = evaluate(_candidate(environment="PRD"), [policy], _QUOTA, _NOW)
    assert allowed.violations == ()


def test_policies_for_other_environments_and_inactive_policies_are_skipped() -> None:
    policies = [
        _policy("UAT_ONLY", "SENSITIVE_DATA", {"restricted_schemas": ["PAY"]}, environment="UAT"),
        _policy("DISABLED", "SENSITIVE_DATA", {"restricted_schemas": ["PAY"]}, is_active=False),
    ]
    assert evaluate(_candidate(), policies, _QUOTA, _NOW).violations == ()


def test_warn_and_log_findings_do_not_block() -> None:
    policy = _policy(
        "WARN_PAYROLL",
        "SENSITIVE_DATA",
        {"restricted_schemas": ["pay"]},
        severity="WARNING",
        action="WARN_AND_LOG",
    )
    result = evaluate(_candidate(), [policy], _QUOTA, _NOW)
    assert result.should_block is False
    assert [item.policy_name for item in result.violations] == ["WARN_PAYROLL"]
    assert result.violations[0].blocking is False
    assert result.violations[0].details["matched"] == ["PAY"]


def test_sensitive_data_matches_schema_substrings() -> None:
    policy = _policy("PII", "SENSITIVE_DATA", {"restricted_schemas": ["PII"]}, severity="CRITICAL")
    result = evaluate(_candidate(source_schema="CUSTOMER_PII"), [policy], _QUOTA, _NOW)
    assert result.should_block is True
    assert result.violations[0].message == "Schema contains sensitive data and requires approval"
    assert result.violations[0].severity == "CRITICAL"


def test_require_approval_is_lifted_only_by_an_approval() -> None:
    policy = _policy(
        "PII_APPROVAL",
        "SENSITIVE_DATA",
        {"restricted_schemas": ["PII"]},
        action="REQUIRE_APPROVAL",
    )
    candidate = _candidate(source_schema="CUSTOMER_PII")
    pending = evaluate(candidate, [policy], _QUOTA, _NOW)
    assert pending.should_block is True

    approved = evaluate(candidate, [policy], _QUOTA, _NOW, frozenset({"PII_APPROVAL"}))
    assert approved.should_block is False
    assert len(approved.violations) == 1
    assert approved.violations[0].blocking is False


def test_approval_does_not_lift_block() -> None:
    policy = _policy("PII_BLOCK", "SENSITIVE_DATA", {"restricted_schemas": ["PII"]})
    result = evaluate(
        _candidate(source_schema="CUSTOMER_PII"),
        [policy],
        _QUOTA,
        _NOW,
        frozenset({"PII_BLOCK"}),
    )
    assert result.should_block is True


def test_user_quota_counts_live_clones_across_environments() -> None:
    policy = _policy("MAX_TOTAL", "USER_QUOTA", {"max_total_clones": 10})
    under = evaluate(_candidate(), [policy], replace(_QUOTA, total_live=9), _NOW)
    assert under.violations == ()
    over = evaluate(_candidate(), [policy], replace(_QUOTA, total_live=10), _NOW)
    assert over.should_block is True
    assert over.violations[0].message == "Total clone limit exceeded. You have 10 clones (max: 10)"


def test_time_restriction_uses_the_supplied_instant() -> None:
    policy = _policy(
        "BUSINESS_HOURS",
        "TIME_RESTRICTION",
        {
            "allowed_hours_start": 8,
            "allowed_hours_end": 18,
            "allowed_days": ["MON", "TUE", "WED", "THU", "FRI"],
            "timezone": "America/New_York",
        },
    )
    inside = evaluate(_candidate(), [policy], _QUOTA, _NOW)
    assert inside.violations == ()

    saturday = datetime(2026, 10, 24, 15, 0, tzinfo=timezone.utc)
    outside = evaluate(_candidate(), [policy], _QUOTA, saturday)
    assert outside.should_block is True
    assert outside.violations[0].message == (
        "Clone creation not allowed at this time. Allowed: 8:00 - 18:00 on MON, TUE, WED, THU, FRI"
    )
    assert outside.violations[0].details["local_day"] == "SAT"


def test_max_age_checks_the_planned_lifetime() -> None:
    policy = _policy("MAX_AGE_7", "MAX_AGE", {"max_age_days": 7}, severity="WARNING", action="WARN_AND_LOG")
    assert evaluate(_candidate(), [policy], _QUOTA, _NOW).violations == ()

    too_long = evaluate(_candidate(expires_at=_NOW + timedelta(days=14)), [policy], _QUOTA, _NOW)
    assert too_long.violations[0].message == "Clone lifetime (14 days) exceeds maximum (7 days)"

    never_expires = evaluate(_candidate(expires_at=None), [policy], _QUOTA, _NOW)
    assert never_expires.violations[0].details == {"max_age_days": 7}


def test_restricted_source_matches_database_or_qualified_schema() -> None:
    by_database = _policy("NO_FINANCE", "RESTRICTED_SOURCE", {"restricted_databases": ["finance"]})
    by_schema = _policy("NO_PAYROLL", "RESTRICTED_SOURCE", {"restricted_schemas": ["hr.payroll"]})

    assert evaluate(_candidate(), [by_database], _QUOTA, _NOW).violations == ()
    hit = evaluate(_candidate(source_database="FINANCE"), [by_database], _QUOTA, _NOW)
    assert hit.violations[0].message == "Source FINANCE.PAYROLL is restricted"

    schema_hit = evaluate(_candidate(), [by_schema], _QUOTA, _NOW)
    assert schema_hit.violations[0].details == {"restricted": ["HR.PAYROLL"]}


def test_data_classification_applies_only_to_clone_scope() -> None:
    classified = _policy(
        "CONFIDENTIAL_SOURCES",
        "DATA_CLASSIFICATION",
        {
            "classified_sources": {"HR.PAYROLL": "confidential"},
            "restricted_classifications": ["CONFIDENTIAL"],
        },
    )
    retention = _policy(
        "AUDIT_RETENTION",
        "DATA_CLASSIFICATION",
        {"applies_to": "AUDIT_LOG", "retention_days": 365},
        severity="INFO",
        action="WARN_AND_LOG",
    )
    result = evaluate(_candidate(), [classified, retention], _QUOTA, _NOW)
    assert [item.policy_name for item in result.violations] == ["CONFIDENTIAL_SOURCES"]
    assert result.violations[0].message == "Source HR.PAYROLL is classified CONFIDENTIAL"


def test_approval_required_can_target_clone_kinds() -> None:
    policy = _policy(
        "DATABASE_APPROVAL",
        "APPROVAL_REQUIRED",
        {"clone_types": ["DATABASE"], "approvers": ["DBA"]},
        action="REQUIRE_APPROVAL",
    )
    assert evaluate(_candidate(), [policy], _QUOTA, _NOW).violations == ()
    result = evaluate(_candidate(kind="DATABASE", source_schema=None), [policy], _QUOTA, _NOW)
    assert result.should_block is True
    assert result.violations[0].details == {"approvers": ["DBA"]}


def test_findings_are_ordered_by_severity_then_name() -> None:
    policies = [
        _policy("B_WARN", "SENSITIVE_DATA", {"restricted_schemas": ["PAY"]}, severity="WARNING", action="WARN_AND_LOG"),
        _policy("Z_CRIT", "SENSITIVE_DATA", {"restricted_schemas": ["PAY"]}, severity="CRITICAL"),
        _policy("A_WARN", "SENSITIVE_DATA", {"restricted_schemas": ["PAY"]}, severity="WARNING", action="WARN_AND_LOG"),
        _policy("M_ERR", "SENSITIVE_DATA", {"restricted_schemas": ["PAY"]}, severity="ERROR"),
        _policy("INFO_ONLY", "SENSITIVE_DATA", {"restricted_schemas": ["PAY"]}, severity="INFO", action="WARN_AND_LOG"),
    ]
    first = evaluate(_candidate(), policies, _QUOTA, _NOW)
    assert [item.policy_name for item in first.violations] == ["Z_CRIT", "M_ERR", "A_WARN", "B_WARN", "INFO_ONLY"]
    second = evaluate(_candidate(), list(reversed(policies)), _QUOTA, _NOW)
    assert second == first


def test_parse_definition_rejects_bad_parameters() -> None:
    with pytest.raises(InvalidArgumentError):
        parse_definition("NOT_A_TYPE", {})
    with pytest.raises(InvalidArgumentError):
        parse_definition("MAX_AGE", {"max_age_days": 0})
    with pytest.raises(InvalidArgumentError):
        parse_definition("ENVIRONMENT_RESTRICTION", {"restricted_clone_types": ["TABLE"]})
    with pytest.raises(InvalidArgumentError):
        parse_definition("TIME_RESTRICTION", {"timezone": "Nowhere/Special"})
    with pytest.raises(InvalidArgumentError):
        parse_definition("TIME_RESTRICTION", {"allowed_hours_start": 18, "allowed_hours_end": 8})


def test_parse_definition_ignores_legacy_keys() -> None:
    params = parse_definition("MAX_AGE", {"max_age_days": 7, "action": "WARN"})
    assert params.model_dump() == {"max_age_days": 7}
