from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.apps.api.deps import Principal, get_db, require_role
from cloneguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from cloneguard.apps.api.response import success_response
from cloneguard.services.audit import list_audit_records, record_to_dict
from cloneguard.services.compliance import run_compliance_scan
from cloneguard.services.maintenance import purge_audit_records
from cloneguard.services.violations import list_violations, resolve_violation, violation_to_dict


router = APIRouter(prefix="/admin", tags=["governance"], responses=DEFAULT_ERROR_RESPONSES)


class ResolveViolationRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class ComplianceScanRequest(BaseModel):
    environment: str | None = None


class PurgeAuditRequest(BaseModel):
    retention_days: int | None = Field(default=None, ge=1)
    dry_run: bool = True


@router.get("/clone-audit")
async def get_audit_log(
    request: Request,
    operation: str | None = Query(default=None),
    status: str | None = Query(default=None),
    actor: str | None = Query(default=None),
    clone_id: str | None = Query(default=None),
    environment: str | None = Query(default=None),
    request_id: str | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1),
    _principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    records = await list_audit_records(
        db,
        operation=operation,
        status=status,
        actor=actor,
        clone_id=clone_id,
        environment=environment,
        request_id=request_id,
        start=start,
        end=end,
        offset=offset,
        limit=limit,
    )
    items = [record_to_dict(record) for record in records]
    return success_response(request=request, data={"records": items, "count": len(items)})


@router.get("/violations")
async def get_violations(
    request: Request,
    status: str | None = Query(default="OPEN"),
    severity: str | None = Query(default=None),
    environment: str | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    _principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_violations(
        db,
        status=status,
        severity=severity,
        environment=environment,
        start=start,
        end=end,
        offset=offset,
        limit=limit,
    )
    items = [violation_to_dict(row) for row in rows]
    return success_response(request=request, data={"violations": items, "count": len(items)})


@router.post("/violations/{violation_id}/resolve")
async def resolve_policy_violation(
    request: Request,
    violation_id: int,
    payload: ResolveViolationRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await resolve_violation(
        db,
        violation_id=violation_id,
        resolver=principal.actor,
        notes=payload.notes,
        actor_role=principal.role,
        request_id=principal.request_id,
    )
    return success_response(
        request=request,
        message=f"Violation {violation_id} resolved",
        data={"violation": violation_to_dict(row)},
    )


@router.post("/compliance/scan")
async def compliance_scan(
    request: Request,
    payload: ComplianceScanRequest,
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    result = await run_compliance_scan(
        actor=principal.actor,
        environment=payload.environment,
        actor_role=principal.role,
        request_id=principal.request_id,
    )
    message = (
        f"{result['compliant_clones']} compliant, "
        f"{result['non_compliant_clones']} non-compliant"
    )
    return success_response(request=request, message=message, data=result)


@router.post("/maintenance/purge-audit")
async def purge_audit(
    request: Request,
    payload: PurgeAuditRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await purge_audit_records(
        db,
        retention_days=payload.retention_days,
        dry_run=payload.dry_run,
        actor=principal.actor,
        actor_role=principal.role,
        request_id=principal.request_id,
    )
    verb = "Would purge" if payload.dry_run else "Purged"
    message = f"{verb} {result['audit_records']} audit records older than {result['retention_days']} days"
    return success_response(request=request, message=message, data=result)
