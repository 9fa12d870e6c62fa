from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from cloneguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from cloneguard.apps.api.response import SuccessEnvelope, success_response
from cloneguard.core.config import get_settings

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    service: str
    data_platform: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    settings = get_settings()
    return success_response(
        request=request,
        status="ok",
        data={"service": settings.app_name, "data_platform": settings.data_platform},
    )
