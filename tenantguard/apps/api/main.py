from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantguard.apps.api.routes.audit import router as audit_router
from tenantguard.apps.api.routes.entitlements import router as entitlements_router
from tenantguard.apps.api.routes.health import router as health_router
from tenantguard.apps.api.routes.impersonation import router as impersonation_router
from tenantguard.apps.api.routes.modules import router as modules_router
from tenantguard.apps.api.routes.rollout_admin import router as rollout_admin_router
from tenantguard.apps.api.routes.step_up import router as step_up_router
from tenantguard.apps.api.routes.subscription import router as subscription_router
from tenantguard.core.config import get_settings
from tenantguard.core.logging import configure_logging
from tenantguard.persistence.guards import TenantPredicateError


API_VERSION = "v1"

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="TenantGuard API", docs_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed path=%s status=%s latency_ms=%.1f request_id=%s",
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

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

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(step_up_router, prefix=f"/{API_VERSION}")
    app.include_router(impersonation_router, prefix=f"/{API_VERSION}")
    app.include_router(entitlements_router, prefix=f"/{API_VERSION}")
    app.include_router(subscription_router, prefix=f"/{API_VERSION}")
    # Module and feature access checks combine country rollout with the plan gate.
    app.include_router(modules_router, prefix=f"/{API_VERSION}")
    app.include_router(rollout_admin_router, prefix=f"/{API_VERSION}")
    # Expose admin-only audit endpoints for security investigations.
    app.include_router(audit_router, prefix=f"/{API_VERSION}")

    # Serve versioned OpenAPI JSON and docs endpoints for v1 consumers.
    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="TenantGuard API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Document the upstream identity headers every guarded route expects.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="TenantGuard API",
            version=API_VERSION,
            routes=app.routes,
        )
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["UserHeader"] = {
            "type": "apiKey",
            "in": "header",
            "name": settings.auth_user_header,
        }
        security_schemes["TenantHeader"] = {
            "type": "apiKey",
            "in": "header",
            "name": settings.auth_tenant_header,
        }
        public_paths = {"/v1/health"}
        for path, operations in schema.get("paths", {}).items():
            if path in public_paths:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"UserHeader": [], "TenantHeader": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
