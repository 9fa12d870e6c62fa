from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.apps.api.deps import Principal, get_controller, get_current_principal, get_db, require_role
from cloneguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from cloneguard.apps.api.response import SuccessEnvelope, success_response
from cloneguard.core.errors import PermissionDeniedError
from cloneguard.domain.types import CLONE_KIND_SCHEMA
from cloneguard.persistence.repos import clones as clones_repo
from cloneguard.services.admission import AdmissionController, CloneAdmission
from cloneguard.services.audit import record_clone_access
from cloneguard.services.limits import normalize_environment
from cloneguard.services.naming import canonical_actor
from cloneguard.services.reaper import sweep
from cloneguard.services.registry import clone_to_dict, get_clone, list_clones


router = APIRouter(tags=["clones"], responses=DEFAULT_ERROR_RESPONSES)


class CloneCreateRequest(BaseModel):
    environment: str = Field(min_length=1, max_length=16)
    source_database: str = Field(min_length=1, max_length=255)
    source_schema: str | None = Field(default=None, max_length=255)
    clone_type: str = CLONE_KIND_SCHEMA
    copy_data: bool = True
    suffix: str | None = Field(default=None, max_length=64)


class CloneReplaceRequest(CloneCreateRequest):
    replace_oldest: bool = True
    clone_to_replace: str | None = None


class CloneAccessRequest(BaseModel):
    access_type: str = Field(default="QUERY", min_length=1, max_length=32)
    query_count: int = Field(default=1, ge=1)


class CloneCleanupRequest(BaseModel):
    environment: str | None = None
    execute: bool = False


class ClonePayload(BaseModel):
    status: str
    message: str | None = None
    clone: dict[str, Any]
    violations: list[dict[str, Any]] = Field(default_factory=list)
    clones_used: int | None = None
    clones_max: int | None = None


def _admission_payload(admission: CloneAdmission) -> dict[str, Any]:
    return {
        "clone": admission.clone,
        "violations": [item.to_dict() for item in admission.violations],
        "clones_used": admission.clones_used,
        "clones_max": admission.clones_max,
    }


@router.post(
    "/clones",
    status_code=201,
    response_model=SuccessEnvelope[ClonePayload],
)
async def create_clone(
    request: Request,
    payload: CloneCreateRequest,
    principal: Principal = Depends(get_current_principal),
    controller: AdmissionController = Depends(get_controller),
) -> dict:
    admission = await controller.request_clone(
        actor=principal.actor,
        environment=payload.environment,
        source_database=payload.source_database,
        source_schema=payload.source_schema,
        kind=payload.clone_type,
        copy_data=payload.copy_data,
        requested_suffix=payload.suffix,
        actor_role=principal.role,
        request_id=principal.request_id,
    )
    message = f"Clone {admission.clone['qualified_name']} created"
    if admission.violations:
        message += f" with {len(admission.violations)} policy warning(s)"
    return success_response(request=request, data=_admission_payload(admission), message=message)


@router.post("/clones/replace", status_code=201)
async def replace_clone(
    request: Request,
    payload: CloneReplaceRequest,
    principal: Principal = Depends(get_current_principal),
    controller: AdmissionController = Depends(get_controller),
) -> dict:
    replacement = await controller.replace_clone(
        actor=principal.actor,
        environment=payload.environment,
        source_database=payload.source_database,
        source_schema=payload.source_schema,
        kind=payload.clone_type,
        copy_data=payload.copy_data,
        requested_suffix=payload.suffix,
        replace_oldest=payload.replace_oldest,
        clone_to_replace=payload.clone_to_replace,
        actor_role=principal.role,
        request_id=principal.request_id,
    )
    data = _admission_payload(replacement.admission)
    data["replaced_clone"] = replacement.replaced_clone
    if replacement.replaced_clone:
        message = (
            f"Replaced {replacement.replaced_clone['qualified_name']} with "
            f"{replacement.admission.clone['qualified_name']}"
        )
    else:
        message = f"Clone {replacement.admission.clone['qualified_name']} created"
    return success_response(request=request, data=data, message=message)


@router.get("/clones")
async def list_my_clones(
    request: Request,
    environment: str | None = Query(default=None),
    states: str | None = Query(default=None, description="Comma-separated states, or ALL"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    clones = await list_clones(
        db,
        owner=principal.actor,
        environment=normalize_environment(environment) if environment else None,
        states=states,
        offset=offset,
        limit=limit,
    )
    return success_response(request=request, data={"clones": clones, "count": len(clones)})


@router.get("/clones/{clone_ref}")
async def get_clone_detail(
    request: Request,
    clone_ref: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    clone = await get_clone(db, clone_ref)
    if not principal.is_admin and not clones_repo.owned_by(clone, canonical_actor(principal.actor)):
        raise PermissionDeniedError("Clone belongs to another user", details={"clone_id": clone.id})
    return success_response(request=request, data={"clone": clone_to_dict(clone)})


@router.delete("/clones/{clone_ref}")
async def delete_clone(
    request: Request,
    clone_ref: str,
    force: bool = Query(default=False),
    principal: Principal = Depends(get_current_principal),
    controller: AdmissionController = Depends(get_controller),
) -> dict:
    if force and not principal.is_admin:
        raise PermissionDeniedError("Only admins can force-delete clones")
    deletion = await controller.delete_clone(
        actor=principal.actor,
        clone_ref=clone_ref,
        force=force,
        actor_role=principal.role,
        request_id=principal.request_id,
    )
    name = deletion.clone.get("qualified_name")
    message = f"Clone {name} was already deleted" if deletion.already_deleted else f"Clone {name} deleted"
    return success_response(
        request=request,
        message=message,
        data={
            "clone": deletion.clone,
            "already_deleted": deletion.already_deleted,
            "force_deleted": deletion.force_deleted,
            "role_drop_errors": list(deletion.role_drop_errors),
        },
    )


@router.post("/clones/{clone_ref}/access", status_code=201)
async def log_clone_access(
    request: Request,
    clone_ref: str,
    payload: CloneAccessRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    clone = await get_clone(db, clone_ref)
    event = await record_clone_access(
        db,
        clone_id=clone.id,
        clone_name=clone.qualified_name,
        accessed_by=principal.actor,
        access_type=payload.access_type.strip().upper(),
        query_count=payload.query_count,
    )
    return success_response(
        request=request,
        message="Access logged",
        data={
            "access_id": event.id,
            "clone_id": clone.id,
            "clone_name": clone.qualified_name,
            "access_type": event.access_type,
            "query_count": event.query_count,
        },
    )


@router.get("/admin/clones")
async def list_all_clones(
    request: Request,
    owner: str | None = Query(default=None),
    environment: str | None = Query(default=None),
    states: str | None = Query(default=None, description="Comma-separated states, or ALL"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    _principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    clones = await list_clones(
        db,
        owner=owner,
        environment=normalize_environment(environment) if environment else None,
        states=states,
        offset=offset,
        limit=limit,
    )
    return success_response(request=request, data={"clones": clones, "count": len(clones)})


@router.post("/admin/clones/cleanup-expired")
async def cleanup_expired_clones(
    request: Request,
    payload: CloneCleanupRequest,
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    report = await sweep(
        environment=payload.environment,
        dry_run=not payload.execute,
        request_id=principal.request_id,
    )
    data = report.to_dict()
    if payload.execute:
        message = f"Deleted {len(report.deleted)} of {len(report.expired)} expired clones"
    else:
        message = f"Found {len(report.expired)} expired clones"
    return success_response(request=request, data=data, message=message)
