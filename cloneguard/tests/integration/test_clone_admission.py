from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from cloneguard.core.errors import (
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
from cloneguard.domain.models import Clone, CloneAuditRecord, PolicyViolation
from cloneguard.persistence.db import SessionLocal
from cloneguard.providers.platform.factory import get_data_platform
from cloneguard.services.admission import AdmissionController
from cloneguard.services.policies import get_policy_store
from cloneguard.services.registry import list_clones


# Monday 11:00 in New York, inside the default production business hours.
_MONDAY = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)


def _controller(clock: dict | None = None) -> AdmissionController:
    clock = clock if clock is not None else {"now": _MONDAY}
    return AdmissionController(time_provider=lambda: clock["now"])


async def _audit_rows(operation: str) -> list[CloneAuditRecord]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(CloneAuditRecord)
            .where(CloneAuditRecord.operation == operation)
            .order_by(CloneAuditRecord.id.asc())
        )
        return list(result.scalars().all())


async def _clone_count() -> int:
    async with SessionLocal() as session:
        result = await session.execute(select(func.count()).select_from(Clone))
        return int(result.scalar_one())


async def _load_clone(clone_id: str) -> Clone:
    async with SessionLocal() as session:
        clone = await session.get(Clone, clone_id)
        assert clone is not None
        return clone


async def _create_policy(name: str, policy_type: str, definition: dict, *, severity: str, action: str) -> None:
    async with SessionLocal() as session:
        await get_policy_store().create(
            session,
            name=name,
            policy_type=policy_type,
            environment=None,
            description=None,
            definition=definition,
            severity=severity,
            action=action,
            actor="security-admin",
        )


@pytest.mark.asyncio
async def test_schema_clone_is_admitted_with_indirection_roles() -> None:
    controller = _controller()
    admission = await controller.request_clone(
        actor="b",
        environment="dev",
        source_database="hr",
        source_schema="payroll",
        request_id="req-admit",
    )
    clone = admission.clone
    assert clone["clone_name"] == "PAYROLL_CLONE_B_1"
    assert clone["qualified_name"] == "HR.PAYROLL_CLONE_B_1"
    assert clone["state"] == "ACTIVE"
    assert clone["sequence"] == 1
    assert clone["owner"] == "B"
    assert clone["read_role"] == "SRD_HR_DEV_PAYROLL_CLONE_B_1_READ"
    assert clone["write_role"] == "SRD_HR_DEV_PAYROLL_CLONE_B_1_WRITE"
    assert clone["admin_role"] == "SRF_DEV_DBADMIN"
    assert clone["expires_at"] is None
    assert admission.clones_used == 1
    assert admission.clones_max == 5
    assert admission.violations == ()

    platform = get_data_platform()
    assert "HR.PAYROLL_CLONE_B_1" in platform.schemas
    assert platform.roles == {
        "HR.SRD_HR_DEV_PAYROLL_CLONE_B_1_READ",
        "HR.SRD_HR_DEV_PAYROLL_CLONE_B_1_WRITE",
    }
    user_grants = platform.grants_to("B")
    assert len(user_grants) == 1
    assert user_grants[0].target.role.name == "SRD_HR_DEV_PAYROLL_CLONE_B_1_WRITE"

    records = await _audit_rows("CREATE_CLONE")
    assert [(row.status, row.request_id) for row in records] == [("SUCCESS", "req-admit")]
    assert records[0].clone_id == clone["clone_id"]


@pytest.mark.asyncio
async def test_expiry_follows_environment_limits() -> None:
    admission = await _controller().request_clone(
        actor="b", environment="TST", source_database="HR", source_schema="PAYROLL"
    )
    assert admission.clone["expires_at"] == (_MONDAY + timedelta(days=30)).isoformat()
    assert admission.clone["days_until_expiry"] == 30


@pytest.mark.asyncio
async def test_database_clone_in_production_is_denied_before_any_work() -> None:
    with pytest.raises(PolicyDeniedError):
        await _controller().request_clone(
            actor="b", environment="PRD", source_database="HR", kind="DATABASE"
        )
    assert await _clone_count() == 0
    assert get_data_platform().calls == []
    records = await _audit_rows("CREATE_CLONE")
    assert [(row.status, row.error_code) for row in records] == [("DENIED", "POLICY_DENIED")]


@pytest.mark.asyncio
async def test_invalid_arguments_are_denied_and_audited() -> None:
    controller = _controller()
    with pytest.raises(InvalidArgumentError):
        await controller.request_clone(actor="b", environment="QA", source_database="HR", source_schema="X")
    with pytest.raises(InvalidArgumentError):
        await controller.request_clone(actor="b", environment="DEV", source_database="HR")
    with pytest.raises(InvalidArgumentError):
        await controller.request_clone(actor="---", environment="DEV", source_database="HR", source_schema="X")
    records = await _audit_rows("CREATE_CLONE")
    assert [row.status for row in records] == ["DENIED", "DENIED", "DENIED"]
    assert {row.error_code for row in records} == {"INVALID_ARGUMENT"}


@pytest.mark.asyncio
async def test_blocking_policy_rejects_request_and_keeps_violation() -> None:
    await _create_policy(
        "BLOCK_PII_SCHEMAS",
        "SENSITIVE_DATA",
        {"restricted_schemas": ["PII"]},
        severity="CRITICAL",
        action="BLOCK",
    )
    with pytest.raises(PolicyViolationError) as excinfo:
        await _controller().request_clone(
            actor="b", environment="DEV", source_database="HR", source_schema="CUSTOMER_PII"
        )
    violations = excinfo.value.details["violations"]
    assert [item["policy_name"] for item in violations] == ["BLOCK_PII_SCHEMAS"]
    assert violations[0]["severity"] == "CRITICAL"

    assert await _clone_count() == 0
    assert get_data_platform().calls == []
    async with SessionLocal() as session:
        rows = list((await session.execute(select(PolicyViolation))).scalars().all())
    assert len(rows) == 1
    assert rows[0].status == "OPEN"
    assert rows[0].severity == "CRITICAL"
    assert rows[0].clone_name == "HR.CUSTOMER_PII_CLONE_B_1"
    assert rows[0].clone_id is None
    assert rows[0].violated_by == "B"

    records = await _audit_rows("CREATE_CLONE")
    assert [row.status for row in records] == ["BLOCKED"]
    assert records[0].clone_id is None
    assert records[0].clone_name == "HR.CUSTOMER_PII_CLONE_B_1"
    assert records[0].violations_json[0]["policy_name"] == "BLOCK_PII_SCHEMAS"


@pytest.mark.asyncio
async def test_warning_policy_admits_clone_and_records_violation() -> None:
    await _create_policy(
        "WARN_PAYROLL",
        "SENSITIVE_DATA",
        {"restricted_schemas": ["PAY"]},
        severity="WARNING",
        action="WARN_AND_LOG",
    )
    admission = await _controller().request_clone(
        actor="b", environment="DEV", source_database="HR", source_schema="PAYROLL"
    )
    assert admission.clone["state"] == "ACTIVE"
    assert [item.policy_name for item in admission.violations] == ["WARN_PAYROLL"]
    assert admission.clone["metadata"]["violations"] == ["WARN_PAYROLL"]
    async with SessionLocal() as session:
        rows = list((await session.execute(select(PolicyViolation))).scalars().all())
    assert [(row.clone_id, row.status) for row in rows] == [(admission.clone["clone_id"], "OPEN")]


@pytest.mark.asyncio
async def test_default_policies_govern_production_hours() -> None:
    async with SessionLocal() as session:
        await get_policy_store().setup_defaults(session, actor="security-admin")
    clock = {"now": datetime(2026, 10, 24, 15, 0, tzinfo=timezone.utc)}
    controller = _controller(clock)
    with pytest.raises(PolicyViolationError) as excinfo:
        await controller.request_clone(actor="b", environment="PRD", source_database="HR", source_schema="PAYROLL")
    names = [item["policy_name"] for item in excinfo.value.details["violations"]]
    assert names == ["PRD_BUSINESS_HOURS_ONLY"]

    clock["now"] = _MONDAY
    admission = await controller.request_clone(
        actor="b", environment="PRD", source_database="HR", source_schema="PAYROLL"
    )
    assert admission.clone["state"] == "ACTIVE"
    assert admission.clone["expires_at"] == (_MONDAY + timedelta(days=7)).isoformat()
    assert admission.violations == ()


@pytest.mark.asyncio
async def test_approval_required_policy_needs_an_approval_gate() -> None:
    async with SessionLocal() as session:
        await get_policy_store().setup_defaults(session, actor="security-admin")
    with pytest.raises(PolicyViolationError) as excinfo:
        await _controller().request_clone(
            actor="b", environment="DEV", source_database="CRM", source_schema="CUSTOMER_PII"
        )
    names = [item["policy_name"] for item in excinfo.value.details["violations"]]
    assert names == ["RESTRICT_PII_SCHEMA_CLONES"]

    class ApproveSensitiveClones:
        async def approved_policies(self, **_: object) -> frozenset[str]:
            return frozenset({"RESTRICT_PII_SCHEMA_CLONES"})

    controller = AdmissionController(time_provider=lambda: _MONDAY, approval_gate=ApproveSensitiveClones())
    admission = await controller.request_clone(
        actor="b", environment="DEV", source_database="CRM", source_schema="CUSTOMER_PII"
    )
    assert admission.clone["state"] == "ACTIVE"
    assert [item.policy_name for item in admission.violations] == ["RESTRICT_PII_SCHEMA_CLONES"]


@pytest.mark.asyncio
async def test_quota_is_enforced_per_environment() -> None:
    controller = _controller()
    for schema in ("PAYROLL", "BENEFITS"):
        await controller.request_clone(actor="b", environment="UAT", source_database="HR", source_schema=schema)
    with pytest.raises(QuotaExceededError) as excinfo:
        await controller.request_clone(actor="b", environment="UAT", source_database="HR", source_schema="STAFF")
    assert excinfo.value.details["clones_used"] == 2
    assert excinfo.value.details["clones_max"] == 2
    assert len(excinfo.value.details["existing_clones"]) == 2

    # Other environments and other actors keep their own quota.
    await controller.request_clone(actor="b", environment="TST", source_database="HR", source_schema="STAFF")
    await controller.request_clone(actor="c", environment="UAT", source_database="HR", source_schema="STAFF")
    statuses = [row.status for row in await _audit_rows("CREATE_CLONE")]
    assert statuses == ["SUCCESS", "SUCCESS", "DENIED", "SUCCESS", "SUCCESS"]


@pytest.mark.asyncio
async def test_concurrent_requests_never_exceed_quota() -> None:
    controller = _controller()
    results = await asyncio.gather(
        *[
            controller.request_clone(actor="b", environment="UAT", source_database="HR", source_schema="PAYROLL")
            for _ in range(4)
        ],
        return_exceptions=True,
    )
    admitted = [item for item in results if not isinstance(item, BaseException)]
    rejected = [item for item in results if isinstance(item, BaseException)]
    assert len(admitted) == 2
    assert len(rejected) == 2
    assert all(isinstance(item, QuotaExceededError) for item in rejected)
    assert sorted(item.clone["sequence"] for item in admitted) == [1, 2]
    assert len({item.clone["qualified_name"] for item in admitted}) == 2
    assert len(await _audit_rows("CREATE_CLONE")) == 4


@pytest.mark.asyncio
async def test_sequence_numbers_are_never_reused() -> None:
    controller = _controller()
    first = await controller.request_clone(actor="b", environment="DEV", source_database="HR", source_schema="PAYROLL")
    await controller.delete_clone(actor="b", clone_ref=first.clone["clone_id"])
    second = await controller.request_clone(actor="b", environment="DEV", source_database="HR", source_schema="PAYROLL")
    assert second.clone["clone_name"] == "PAYROLL_CLONE_B_2"
    assert second.clone["sequence"] == 2
    # Another source schema starts its own sequence.
    other = await controller.request_clone(actor="b", environment="DEV", source_database="HR", source_schema="STAFF")
    assert other.clone["clone_name"] == "STAFF_CLONE_B_1"


@pytest.mark.asyncio
async def test_actors_sharing_a_token_get_distinct_names() -> None:
    controller = _controller()
    first = await controller.request_clone(
        actor="jane.doe", environment="DEV", source_database="HR", source_schema="PAYROLL"
    )
    second = await controller.request_clone(
        actor="jane-doe", environment="DEV", source_database="HR", source_schema="PAYROLL"
    )
    assert first.clone["clone_name"] == "PAYROLL_CLONE_JANE_DOE_1"
    assert second.clone["clone_name"] == "PAYROLL_CLONE_JANE_DOE_2"


@pytest.mark.asyncio
async def test_access_setup_failure_leaves_partial_clone() -> None:
    platform = get_data_platform()
    platform.fail_on("grant", when=lambda command: command.grantee.kind == "USER")
    with pytest.raises(PartialFailureError) as excinfo:
        await _controller().request_clone(actor="b", environment="UAT", source_database="HR", source_schema="PAYROLL")
    clone = await _load_clone(excinfo.value.details["clone_id"])
    assert clone.state == "PARTIAL"
    assert clone.metadata_json["failed_step"] == "grant_write_to_actor"
    assert "HR.PAYROLL_CLONE_B_1" in platform.schemas
    assert platform.grants_to("B") == []

    records = await _audit_rows("CREATE_CLONE")
    assert [(row.status, row.error_code) for row in records] == [("PARTIAL_FAILURE", "PARTIAL_FAILURE")]

    # Partial clones still hold a quota slot until they are deleted.
    platform.clear_failures()
    await _controller().request_clone(actor="b", environment="UAT", source_database="HR", source_schema="STAFF")
    with pytest.raises(QuotaExceededError):
        await _controller().request_clone(actor="b", environment="UAT", source_database="HR", source_schema="OTHER")


@pytest.mark.asyncio
async def test_copy_timeout_marks_clone_failed() -> None:
    platform = get_data_platform()
    platform.copy_delay_s = 0.5
    with pytest.raises(CloneTimeoutError) as excinfo:
        await _controller().request_clone(
            actor="b", environment="PPE", source_database="HR", source_schema="PAYROLL", timeout_s=0.05
        )
    clone = await _load_clone(excinfo.value.details["clone_id"])
    assert clone.state == "FAILED"
    assert clone.metadata_json["failure"] == "TIMEOUT"
    records = await _audit_rows("CREATE_CLONE")
    assert [row.status for row in records] == ["TIMEOUT"]

    # Failed clones release their slot; PPE allows a single clone.
    platform.copy_delay_s = 0.0
    admission = await _controller().request_clone(
        actor="b", environment="PPE", source_database="HR", source_schema="PAYROLL"
    )
    assert admission.clone["sequence"] == 2


@pytest.mark.asyncio
async def test_copy_failure_is_reported_as_external_error() -> None:
    get_data_platform().fail_on("copy_schema")
    with pytest.raises(ExternalError) as excinfo:
        await _controller().request_clone(actor="b", environment="DEV", source_database="HR", source_schema="PAYROLL")
    clone = await _load_clone(excinfo.value.details["clone_id"])
    assert clone.state == "FAILED"
    assert [row.status for row in await _audit_rows("CREATE_CLONE")] == ["FAILED"]


@pytest.mark.asyncio
async def test_delete_is_idempotent() -> None:
    controller = _controller()
    admission = await controller.request_clone(
        actor="b", environment="DEV", source_database="HR", source_schema="PAYROLL"
    )
    first = await controller.delete_clone(actor="b", clone_ref="HR.PAYROLL_CLONE_B_1")
    assert first.already_deleted is False
    assert first.clone["state"] == "DELETED"
    assert first.clone["deleted_at"] is not None

    platform = get_data_platform()
    assert platform.schemas == set()
    assert platform.roles == set()
    drops_after_first = [name for name, _ in platform.calls].count("drop")

    second = await controller.delete_clone(actor="b", clone_ref=admission.clone["clone_id"])
    assert second.already_deleted is True
    assert [name for name, _ in platform.calls].count("drop") == drops_after_first

    records = await _audit_rows("DELETE_CLONE")
    assert [row.status for row in records] == ["SUCCESS", "SUCCESS"]
    assert records[1].metadata_json["already_deleted"] is True


@pytest.mark.asyncio
async def test_actor_name_case_variants_share_one_quota_and_ownership() -> None:
    controller = _controller()
    first = await controller.request_clone(
        actor="bob", environment="UAT", source_database="HR", source_schema="PAYROLL"
    )
    await controller.request_clone(actor="Bob", environment="UAT", source_database="HR", source_schema="BENEFITS")
    with pytest.raises(QuotaExceededError):
        await controller.request_clone(
            actor=" BOB ", environment="UAT", source_database="HR", source_schema="STAFF"
        )
    assert first.clone["owner"] == "BOB"
    assert first.clone["qualified_name"] == "HR.PAYROLL_CLONE_BOB_1"
    async with SessionLocal() as session:
        listed = await list_clones(session, owner="bOb", environment="UAT")
    assert sorted(item["clone_name"] for item in listed) == ["BENEFITS_CLONE_BOB_1", "PAYROLL_CLONE_BOB_1"]

    with pytest.raises(PermissionDeniedError):
        await controller.delete_clone(actor="bobby", clone_ref=first.clone["clone_id"])
    deletion = await controller.delete_clone(actor="BOB", clone_ref=first.clone["clone_id"])
    assert deletion.force_deleted is False
    assert deletion.clone["state"] == "DELETED"


@pytest.mark.asyncio
async def test_delete_requires_ownership_unless_forced() -> None:
    controller = _controller()
    admission = await controller.request_clone(
        actor="b", environment="DEV", source_database="HR", source_schema="PAYROLL"
    )
    clone_id = admission.clone["clone_id"]
    with pytest.raises(PermissionDeniedError):
        await controller.delete_clone(actor="c", clone_ref=clone_id)
    assert (await _load_clone(clone_id)).state == "ACTIVE"

    forced = await controller.delete_clone(actor="ops", clone_ref=clone_id, force=True, actor_role="admin")
    assert forced.force_deleted is True
    assert forced.clone["metadata"]["deleted_by"] == "OPS"

    with pytest.raises(NotFoundError):
        await controller.delete_clone(actor="b", clone_ref="HR.NOT_A_CLONE")
    statuses = [row.status for row in await _audit_rows("DELETE_CLONE")]
    assert statuses == ["DENIED", "SUCCESS", "DENIED"]


@pytest.mark.asyncio
async def test_failed_drop_restores_previous_state() -> None:
    controller = _controller()
    admission = await controller.request_clone(
        actor="b", environment="DEV", source_database="HR", source_schema="PAYROLL"
    )
    get_data_platform().fail_on("drop", when=lambda item: item[0] == "SCHEMA")
    with pytest.raises(ExternalError):
        await controller.delete_clone(actor="b", clone_ref=admission.clone["clone_id"])
    assert (await _load_clone(admission.clone["clone_id"])).state == "ACTIVE"
    assert [row.status for row in await _audit_rows("DELETE_CLONE")] == ["FAILED"]


@pytest.mark.asyncio
async def test_role_drop_errors_do_not_stop_delete() -> None:
    controller = _controller()
    admission = await controller.request_clone(
        actor="b", environment="DEV", source_database="HR", source_schema="PAYROLL"
    )
    get_data_platform().fail_on("drop", when=lambda item: item[0] == "DATABASE_ROLE")
    deletion = await controller.delete_clone(actor="b", clone_ref=admission.clone["clone_id"])
    assert deletion.clone["state"] == "DELETED"
    assert {item["role"] for item in deletion.role_drop_errors} == {
        "SRD_HR_DEV_PAYROLL_CLONE_B_1_READ",
        "SRD_HR_DEV_PAYROLL_CLONE_B_1_WRITE",
    }


@pytest.mark.asyncio
async def test_replace_deletes_oldest_clone_when_at_limit() -> None:
    clock = {"now": _MONDAY}
    controller = _controller(clock)
    oldest = await controller.request_clone(actor="b", environment="UAT", source_database="HR", source_schema="PAYROLL")
    clock["now"] = _MONDAY + timedelta(hours=1)
    await controller.request_clone(actor="b", environment="UAT", source_database="HR", source_schema="BENEFITS")
    clock["now"] = _MONDAY + timedelta(hours=2)

    replacement = await controller.replace_clone(
        actor="b", environment="UAT", source_database="HR", source_schema="STAFF"
    )
    assert replacement.replaced_clone is not None
    assert replacement.replaced_clone["clone_id"] == oldest.clone["clone_id"]
    assert replacement.replaced_clone["state"] == "DELETED"
    assert replacement.admission.clone["clone_name"] == "STAFF_CLONE_B_1"


@pytest.mark.asyncio
async def test_replace_below_limit_only_creates() -> None:
    replacement = await _controller().replace_clone(
        actor="b", environment="DEV", source_database="HR", source_schema="PAYROLL"
    )
    assert replacement.replaced_clone is None
    assert replacement.admission.clone["state"] == "ACTIVE"
    assert len(await _audit_rows("DELETE_CLONE")) == 0
