from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.apps.api.deps import Principal, get_db, require_role
from cloneguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from cloneguard.apps.api.response import success_response
from cloneguard.domain.models import ClonePolicy
from cloneguard.domain.types import POLICY_ACTION_WARN_AND_LOG, SEVERITY_WARNING
from cloneguard.services.policies import get_policy_store
from cloneguard.services.registry import as_utc


router = APIRouter(prefix="/admin/clone-policies", tags=["policies"], responses=DEFAULT_ERROR_RESPONSES)


class PolicyCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    policy_type: str
    environment: str | None = None
    description: str | None = Field(default=None, max_length=2000)
    definition: dict[str, Any] = Field(default_factory=dict)
    severity: str = SEVERITY_WARNING
    action: str = POLICY_ACTION_WARN_AND_LOG


class PolicyStatusRequest(BaseModel):
    is_active: bool


def _policy_response(policy: ClonePolicy) -> dict[str, Any]:
    created_at = as_utc(policy.created_at)
    updated_at = as_utc(policy.updated_at)
    return {
        "policy_id": policy.id,
        "name": policy.name,
        "policy_type": policy.policy_type,
        "environment": policy.environment,
        "description": policy.description,
        "definition": dict(policy.definition_json or {}),
        "severity": policy.severity,
        "action": policy.action,
        "is_active": policy.is_active,
        "version": policy.version,
        "created_by": policy.created_by,
        "created_at": created_at.isoformat() if created_at else None,
        "updated_at": updated_at.isoformat() if updated_at else None,
    }


@router.post("", status_code=201)
async def create_policy(
    request: Request,
    payload: PolicyCreateRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policy = await get_policy_store().create(
        db,
        name=payload.name,
        policy_type=payload.policy_type,
        environment=payload.environment,
        description=payload.description,
        definition=payload.definition,
        severity=payload.severity,
        action=payload.action,
        actor=principal.actor,
        actor_role=principal.role,
        request_id=principal.request_id,
    )
    return success_response(
        request=request,
        message=f"Policy {policy.name} saved (version {policy.version})",
        data={"policy": _policy_response(policy)},
    )


@router.get("")
async def list_policies(
    request: Request,
    environment: str | None = Query(default=None),
    policy_type: str | None = Query(default=None),
    active_only: bool = Query(default=True),
    _principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policies = await get_policy_store().list_policies(
        db,
        environment=environment,
        policy_type=policy_type,
        active_only=active_only,
    )
    items = [_policy_response(policy) for policy in policies]
    return success_response(request=request, data={"policies": items, "count": len(items)})


@router.post("/defaults", status_code=201)
async def setup_default_policies(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policies = await get_policy_store().setup_defaults(
        db,
        actor=principal.actor,
        actor_role=principal.role,
        request_id=principal.request_id,
    )
    return success_response(
        request=request,
        message=f"{len(policies)} default policies installed",
        data={"policies": [_policy_response(policy) for policy in policies]},
    )


@router.patch("/{name}/status")
async def set_policy_status(
    request: Request,
    name: str,
    payload: PolicyStatusRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policy = await get_policy_store().set_status(
        db,
        name=name,
        is_active=payload.is_active,
        actor=principal.actor,
        actor_role=principal.role,
        request_id=principal.request_id,
    )
    state = "activated" if policy.is_active else "deactivated"
    return success_response(
        request=request,
        message=f"Policy {policy.name} {state}",
        data={"policy": _policy_response(policy)},
    )


@router.delete("/{name}")
async def delete_policy(
    request: Request,
    name: str,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await get_policy_store().delete(
        db,
        name=name,
        actor=principal.actor,
        actor_role=principal.role,
        request_id=principal.request_id,
    )
    normalized = name.strip().upper()
    return success_response(request=request, message=f"Policy {normalized} deleted", data={"name": normalized})
