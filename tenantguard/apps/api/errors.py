from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.apps.api.response import error_body
from tenantguard.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "PAYMENT_REQUIRED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

_RESERVED_KEYS = {"code", "message", "requestId"}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any]]:
    # Extract code/message/context from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        context = {k: v for k, v in detail.items() if k not in _RESERVED_KEYS}
        return code, message, context
    if isinstance(detail, str):
        return _default_code(status_code), detail, {}
    return _default_code(status_code), "Request failed", {}


def _json_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, context = _split_detail(exc.detail, exc.status_code)
    payload = error_body(request=request, code=code, message=message, context=context)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _json_error(request, exc)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Routing errors (404/405) share the same flat body.
    return _json_error(request, exc)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Surface validation errors with structured details for UI/SDK parsing.
    payload = error_body(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        context={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_body(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


async def tenant_predicate_exception_handler(
    request: Request, exc: TenantPredicateError
) -> JSONResponse:
    # A missing tenant predicate is a server bug; never serve the unscoped result.
    logger.error("tenant_predicate_missing path=%s message=%s", request.url.path, exc.message)
    payload = error_body(
        request=request,
        code="TENANT_PREDICATE_REQUIRED",
        message="Tenant scope could not be established",
    )
    return JSONResponse(content=payload, status_code=500)
