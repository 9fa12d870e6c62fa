from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from cloneguard.domain.models import Clone, CloneAuditRecord
from cloneguard.persistence.db import SessionLocal
from cloneguard.providers.platform.factory import get_data_platform
from cloneguard.services import reaper
from cloneguard.services.admission import AdmissionController


_CREATED = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)
# TST clones expire after 30 days.
_AFTER_EXPIRY = _CREATED + timedelta(days=31)


async def _create(actor: str, environment: str, schema: str) -> str:
    controller = AdmissionController(time_provider=lambda: _CREATED)
    admission = await controller.request_clone(
        actor=actor, environment=environment, source_database="HR", source_schema=schema
    )
    return admission.clone["clone_id"]


async def _state(clone_id: str) -> str:
    async with SessionLocal() as session:
        clone = await session.get(Clone, clone_id)
        assert clone is not None
        return clone.state


@pytest.mark.asyncio
async def test_dry_run_reports_without_deleting() -> None:
    expiring = await _create("b", "TST", "PAYROLL")
    await _create("b", "DEV", "PAYROLL")

    report = await reaper.sweep(dry_run=True, now=_AFTER_EXPIRY)
    assert report.mode == "DRY_RUN"
    assert [item["clone_id"] for item in report.expired] == [expiring]
    assert report.deleted == []
    assert await _state(expiring) == "ACTIVE"


@pytest.mark.asyncio
async def test_sweep_deletes_expired_clones_as_reaper() -> None:
    expiring = await _create("b", "TST", "PAYROLL")
    fresh = await _create("b", "TST", "STAFF")
    async with SessionLocal() as session:
        clone = await session.get(Clone, fresh)
        clone.expires_at = _AFTER_EXPIRY + timedelta(days=1)
        await session.commit()

    report = await reaper.sweep(dry_run=False, now=_AFTER_EXPIRY, request_id="req-sweep")
    summary = report.to_dict()
    assert summary["mode"] == "EXECUTED"
    assert summary["expired_count"] == 1
    assert summary["deleted_count"] == 1
    assert summary["failed_count"] == 0
    assert await _state(expiring) == "DELETED"
    assert await _state(fresh) == "ACTIVE"

    async with SessionLocal() as session:
        result = await session.execute(
            select(CloneAuditRecord).where(CloneAuditRecord.operation == "DELETE_CLONE")
        )
        records = list(result.scalars().all())
    assert len(records) == 1
    assert records[0].actor == "CLONEGUARD_REAPER"
    assert records[0].request_id == "req-sweep"
    assert records[0].metadata_json["force_deleted"] is True


@pytest.mark.asyncio
async def test_sweep_scopes_to_environment() -> None:
    tst = await _create("b", "TST", "PAYROLL")
    uat = await _create("b", "UAT", "PAYROLL")
    report = await reaper.sweep(environment="uat", dry_run=False, now=_AFTER_EXPIRY)
    assert [item["clone_id"] for item in report.deleted] == [uat]
    assert await _state(tst) == "ACTIVE"


@pytest.mark.asyncio
async def test_sweep_reports_failures_and_continues() -> None:
    first = await _create("b", "TST", "PAYROLL")
    second = await _create("c", "TST", "PAYROLL")
    get_data_platform().fail_on(
        "drop",
        when=lambda item: item[0] == "SCHEMA" and item[1].schema == "PAYROLL_CLONE_B_1",
    )
    report = await reaper.sweep(dry_run=False, now=_AFTER_EXPIRY)
    assert [item["clone_id"] for item in report.failed] == [first]
    assert report.failed[0]["error_code"] == "EXTERNAL_ERROR"
    assert [item["clone_id"] for item in report.deleted] == [second]
    assert await _state(first) == "ACTIVE"


@pytest.mark.asyncio
async def test_sweep_reclaims_abandoned_reservations() -> None:
    async with SessionLocal() as session:
        session.add(
            Clone(
                id="stale-reservation",
                name="PAYROLL_CLONE_B_1",
                qualified_name="HR.PAYROLL_CLONE_B_1",
                kind="SCHEMA",
                environment="DEV",
                source_database="HR",
                source_schema="PAYROLL",
                source_key="HR.PAYROLL",
                clone_database="HR",
                clone_schema="PAYROLL_CLONE_B_1",
                owner="B",
                sequence=1,
                read_role="SRD_HR_DEV_PAYROLL_CLONE_B_1_READ",
                write_role="SRD_HR_DEV_PAYROLL_CLONE_B_1_WRITE",
                admin_role="SRF_DEV_DBADMIN",
                include_data=True,
                state="PROVISIONING",
                created_at=_CREATED,
                metadata_json={},
            )
        )
        await session.commit()

    report = await reaper.sweep(dry_run=False, now=_CREATED + timedelta(hours=2))
    assert [item["clone_id"] for item in report.abandoned] == ["stale-reservation"]
    assert await _state("stale-reservation") == "FAILED"


@pytest.mark.asyncio
async def test_reaper_lock_allows_one_sweeper() -> None:
    lock = await reaper.acquire_reaper_lock()
    assert lock is not None
    try:
        assert await reaper.acquire_reaper_lock() is None
        assert await reaper.run_reaper_cycle() == {"status": "skipped_lock"}
    finally:
        await reaper.release_reaper_lock(lock)

    result = await reaper.run_reaper_cycle()
    assert result["status"] == "ok"
    assert result["mode"] == "EXECUTED"
