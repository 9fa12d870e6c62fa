from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from cloneguard.apps.api.errors import (
    clone_guard_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from cloneguard.apps.api.response import API_VERSION
from cloneguard.apps.api.routes.clones import router as clones_router
from cloneguard.apps.api.routes.governance_admin import router as governance_admin_router
from cloneguard.apps.api.routes.health import router as health_router
from cloneguard.apps.api.routes.limits import router as limits_router
from cloneguard.apps.api.routes.policies import router as policies_router
from cloneguard.core.config import get_settings
from cloneguard.core.errors import CloneGuardError
from cloneguard.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title="CloneGuard API",
        version=API_VERSION,
        openapi_url=f"/{API_VERSION}/openapi.json",
        docs_url=None,
        redoc_url=None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "api_request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(CloneGuardError)
    async def _clone_guard_exception_handler(request: Request, exc: CloneGuardError):
        return await clone_guard_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Self-service clone lifecycle plus the admin views over every clone.
    app.include_router(clones_router, prefix=f"/{API_VERSION}")
    app.include_router(limits_router, prefix=f"/{API_VERSION}")
    app.include_router(policies_router, prefix=f"/{API_VERSION}")
    # Audit trail, violation workflow, compliance scan and retention purge.
    app.include_router(governance_admin_router, prefix=f"/{API_VERSION}")

    @app.get(f"/{API_VERSION}/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url=f"/{API_VERSION}/openapi.json", title=f"{settings.app_name} API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=f"/{API_VERSION}/docs")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        return JSONResponse({"service": settings.app_name, "docs": f"/{API_VERSION}/docs"})

    return app


app = create_app()
