from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.apps.api.deps import Principal, get_current_principal, get_db, require_role
from cloneguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from cloneguard.apps.api.response import success_response
from cloneguard.services.limits import get_limit_store


router = APIRouter(tags=["limits"], responses=DEFAULT_ERROR_RESPONSES)


class CloneLimitsRequest(BaseModel):
    max_clones_per_user: int = Field(ge=0)
    expiry_days: int | None = Field(default=None, ge=1)
    allow_database_clones: bool = False
    allow_schema_clones: bool = True


@router.get("/clone-limits")
async def get_clone_limits(
    request: Request,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    limits = await get_limit_store().get_all(db)
    return success_response(request=request, data={"limits": [asdict(item) for item in limits]})


@router.put("/admin/clone-limits/{environment}")
async def set_clone_limits(
    request: Request,
    environment: str,
    payload: CloneLimitsRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    limits = await get_limit_store().set(
        db,
        environment=environment,
        max_clones_per_user=payload.max_clones_per_user,
        expiry_days=payload.expiry_days,
        allow_database_clones=payload.allow_database_clones,
        allow_schema_clones=payload.allow_schema_clones,
        actor=principal.actor,
        actor_role=principal.role,
        request_id=principal.request_id,
    )
    return success_response(
        request=request,
        message=f"Limits updated for {limits.environment}",
        data={"limits": asdict(limits)},
    )
