from __future__ import annotations

from typing import Any

from tenantguard.apps.api.response import ErrorBody


def _error_example(*, code: str, message: str, **context: Any) -> dict[str, Any]:
    # Build a flat denial body example for OpenAPI docs.
    return {"code": code, "message": message, **context, "requestId": "req_example"}


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorBody,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", _error_example(code="BAD_REQUEST", message="Bad request")),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Authentication required"),
    ),
    402: _response(
        "Billing action required",
        _error_example(
            code="TRIAL_EXPIRED",
            message="Your trial has expired. Please subscribe to continue.",
            billingUrl="/settings/billing",
        ),
    ),
    403: _response(
        "Forbidden",
        _error_example(
            code="MODULE_NOT_AVAILABLE",
            message="Module 'legal' not available in free tier",
            currentTier="free",
            module="legal",
            upgradeUrl="/settings/subscription",
        ),
    ),
    429: _response(
        "Rate limited",
        _error_example(code="RATE_LIMITED", message="Too many attempts. Please wait and try again."),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
    503: _response(
        "Service unavailable",
        _error_example(code="SERVICE_UNAVAILABLE", message="Service unavailable"),
    ),
}
