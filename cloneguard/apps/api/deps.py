from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from cloneguard.apps.api.response import get_request_id
from cloneguard.core.config import get_settings
from cloneguard.persistence.db import get_session
from cloneguard.services.admission import AdmissionController, get_admission_controller


ROLE_USER = "user"
ROLE_ADMIN = "admin"
_ROLE_RANK = {ROLE_USER: 1, ROLE_ADMIN: 2}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity asserted by the upstream gateway.
    actor: str
    role: str = ROLE_USER
    request_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def get_current_principal(request: Request) -> Principal:
    settings = get_settings()
    actor = (request.headers.get(settings.auth_actor_header) or "").strip()
    if not actor:
        raise _auth_error("Missing actor identity")
    role = (request.headers.get(settings.auth_role_header) or ROLE_USER).strip().lower()
    if role not in _ROLE_RANK:
        raise _auth_error("Unknown role")
    return Principal(actor=actor, role=role, request_id=get_request_id(request))


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if _ROLE_RANK[principal.role] < _ROLE_RANK[minimum_role]:
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def get_controller() -> AdmissionController:
    return get_admission_controller()
