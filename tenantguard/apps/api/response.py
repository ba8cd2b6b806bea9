from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    # Public payloads use camelCase keys; snake_case is accepted on input.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorBody(BaseModel):
    # Flat denial body: code and message plus any context fields.
    model_config = ConfigDict(extra="allow")

    code: str
    message: str
    requestId: str | None = None


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def error_body(
    *,
    request: Request,
    code: str,
    message: str,
    context: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Context keys never override the code, message or request id.
    body = ErrorBody(code=code, message=message, requestId=get_request_id(request), **(context or {}))
    return body.model_dump(exclude_none=True)
