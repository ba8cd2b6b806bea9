from __future__ import annotations

from datetime import datetime
import functools
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request
from starlette.responses import Response

from tenantguard.core.clock import utc_now
from tenantguard.domain.context import TenantContext
from tenantguard.domain.models import AuditLogEntry
from tenantguard.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password"]
# Exact keys only; fragments like "country_code" stay visible.
_SENSITIVE_KEYS = {"code", "otp", "otp_code", "verification_code"}
_REDACTED_VALUE = "[REDACTED]"

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    if lowered in _SENSITIVE_KEYS:
        return True
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


def failure_reason(exc: BaseException) -> str:
    # Prefer the structured denial message over the exception repr.
    if isinstance(exc, HTTPException):
        detail = exc.detail
        if isinstance(detail, dict):
            return str(detail.get("message") or detail.get("code") or exc.status_code)
        return str(detail)
    return str(exc) or exc.__class__.__name__


async def record_audit(
    *,
    session: AsyncSession | None = None,
    tenant_id: str | None,
    actor_user_id: str | None,
    action: str,
    outcome: str = OUTCOME_SUCCESS,
    target_type: str | None = None,
    target_id: str | None = None,
    failure_reason: str | None = None,
    before_value: Any = None,
    after_value: Any = None,
    is_impersonating: bool = False,
    real_user_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
    commit: bool | None = None,
) -> bool:
    """Append one audit entry; never raises.

    Without ``session`` the entry is written in its own transaction. With a
    session the entry joins the caller's unit of work and is committed only
    when ``commit`` is true. Returns whether the write went through.
    """
    if not actor_user_id or not tenant_id:
        logger.debug("audit_entry_skipped action=%s reason=no_actor", action)
        return False

    try:
        entry = AuditLogEntry(
            occurred_at=occurred_at or utc_now(),
            tenant_id=tenant_id,
            actor_user_id=actor_user_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            outcome=outcome,
            failure_reason=failure_reason,
            before_value=sanitize_metadata(before_value),
            after_value=sanitize_metadata(after_value),
            is_impersonating=is_impersonating,
            real_user_id=real_user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
            metadata_json=sanitize_metadata(metadata or {}),
        )
        if session is None:
            async with SessionLocal() as audit_session:
                audit_session.add(entry)
                await audit_session.commit()
            return True

        session.add(entry)
        if commit:
            await session.commit()
        return True
    except Exception as exc:  # noqa: BLE001 - audit failures must not break the audited action
        logger.warning(
            "audit_entry_write_failed action=%s tenant_id=%s request_id=%s",
            action,
            tenant_id,
            request_id,
            exc_info=exc,
        )
        if session is not None and commit:
            try:
                await session.rollback()
            except Exception as rollback_exc:  # noqa: BLE001 - already degraded, keep the request alive
                logger.warning("audit_rollback_failed action=%s", action, exc_info=rollback_exc)
        return False


class AuditLogger:
    """Manual audit writer bound to one request's context.

    Used where the caller knows the before/after state, e.g. policy updates
    and plan changes.
    """

    def __init__(self, ctx: TenantContext | None, *, session: AsyncSession | None = None) -> None:
        self.ctx = ctx
        self.session = session

    async def log(
        self,
        action: str,
        *,
        outcome: str = OUTCOME_SUCCESS,
        target_type: str | None = None,
        target_id: str | None = None,
        failure_reason: str | None = None,
        before: Any = None,
        after: Any = None,
        metadata: dict[str, Any] | None = None,
        commit: bool | None = None,
    ) -> bool:
        ctx = self.ctx
        if ctx is None:
            return False
        return await record_audit(
            session=self.session,
            tenant_id=ctx.tenant_id,
            actor_user_id=ctx.user_id,
            action=action,
            outcome=outcome,
            target_type=target_type,
            target_id=target_id,
            failure_reason=failure_reason,
            before_value=before,
            after_value=after,
            is_impersonating=ctx.is_impersonating,
            real_user_id=ctx.real_user_id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            request_id=ctx.request_id,
            metadata=metadata,
            commit=commit,
        )

    async def success(self, action: str, **kwargs: Any) -> bool:
        return await self.log(action, outcome=OUTCOME_SUCCESS, **kwargs)

    async def fail(self, action: str, *, reason: str, **kwargs: Any) -> bool:
        return await self.log(action, outcome=OUTCOME_FAIL, failure_reason=reason, **kwargs)


def _resolve_target_id(kwargs: dict[str, Any], target_id_param: str | None) -> str | None:
    # Dotted names walk into request bodies, e.g. "payload.target_user_id".
    if not target_id_param:
        return None
    head, *rest = target_id_param.split(".")
    value: Any = kwargs.get(head)
    for attr in rest:
        if value is None:
            return None
        value = value.get(attr) if isinstance(value, dict) else getattr(value, attr, None)
    return None if value is None else str(value)


def _find_instance(kwargs: dict[str, Any], kind: type) -> Any:
    for value in kwargs.values():
        if isinstance(value, kind):
            return value
    return None


def audited(
    action: str,
    *,
    target_type: str | None = None,
    target_id_param: str | None = None,
) -> Callable[[F], F]:
    """Record one success or fail entry around a FastAPI handler.

    The handler must take its ``TenantContext`` (and optionally its
    ``AsyncSession``) as parameters. On error the request session is rolled
    back before the fail entry is written, then the error propagates.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            ctx = _find_instance(kwargs, TenantContext)
            db = _find_instance(kwargs, AsyncSession)
            audit = AuditLogger(ctx)
            target_id = _resolve_target_id(kwargs, target_id_param)
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:
                if db is not None:
                    try:
                        await db.rollback()
                    except Exception as rollback_exc:  # noqa: BLE001 - the handler error is the one to raise
                        logger.warning("audited_rollback_failed action=%s", action, exc_info=rollback_exc)
                await audit.fail(
                    action,
                    reason=failure_reason(exc),
                    target_type=target_type,
                    target_id=target_id,
                )
                raise
            # Handlers that answer with an error response are not successes.
            if isinstance(result, Response) and result.status_code >= 400:
                return result
            injected = _find_instance(kwargs, Response)
            if injected is not None and (injected.status_code or 0) >= 400:
                return result
            await audit.success(action, target_type=target_type, target_id=target_id)
            return result

        # FastAPI reads parameters from the signature; resolve string annotations
        # against the handler's module rather than this one.
        wrapper.__signature__ = inspect.signature(func, eval_str=True)  # type: ignore[attr-defined]
        return wrapper  # type: ignore[return-value]

    return decorator
