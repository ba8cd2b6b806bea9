from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import logging
import secrets
from typing import Any
from uuid import uuid4

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.clock import as_utc, utc_now
from tenantguard.core.config import get_settings
from tenantguard.domain.context import TenantContext
from tenantguard.domain.models import ImpersonationSession, TenantUser
from tenantguard.persistence.guards import tenant_predicate
from tenantguard.persistence.repos import users as users_repo
from tenantguard.services.audit import AuditLogger
from tenantguard.services.auth.roles import role_rank
from tenantguard.services.step_up import StepUpPurpose, require_step_up_grant


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "tgimp_"
ACTION_STARTED = "IMPERSONATION_STARTED"
ACTION_ENDED = "IMPERSONATION_ENDED"
END_REASON_EXIT = "exit"
END_REASON_EXPIRED = "expired"


@dataclass(frozen=True)
class StartedImpersonation:
    raw_token: str
    session: ImpersonationSession
    target: TenantUser


@dataclass(frozen=True)
class ResolvedImpersonation:
    session: ImpersonationSession
    target: TenantUser


def is_impersonation_token(raw_token: str) -> bool:
    return raw_token.startswith(TOKEN_PREFIX)


def hash_impersonation_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_impersonation_token() -> tuple[str, str, str, str]:
    # Embed a short id prefix to support operational tracing without plaintext tokens.
    token_id = uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_token = f"{TOKEN_PREFIX}{token_id}_{secret}"
    token_prefix = raw_token[:14]
    return token_id, raw_token, token_prefix, hash_impersonation_token(raw_token)


def _error(status_code: int, code: str, message: str, **context: Any) -> HTTPException:
    detail: dict[str, Any] = {"code": code, "message": message}
    detail.update(context)
    return HTTPException(status_code=status_code, detail=detail)


def _invalid_token(code: str, message: str) -> HTTPException:
    # Clients drop the token and reload as themselves on any 401 from here.
    return _error(status.HTTP_401_UNAUTHORIZED, code, message, clearToken=True)


def is_expired(row: ImpersonationSession, now: datetime) -> bool:
    return now > as_utc(row.expires_at)


async def get_active_session(
    session: AsyncSession,
    *,
    tenant_id: str,
    acting_user_id: str,
) -> ImpersonationSession | None:
    result = await session.execute(
        select(ImpersonationSession).where(
            tenant_predicate(ImpersonationSession, tenant_id),
            ImpersonationSession.acting_user_id == acting_user_id,
            ImpersonationSession.ended_at.is_(None),
        )
    )
    return result.scalar_one_or_none()


async def end_session(
    session: AsyncSession,
    *,
    row: ImpersonationSession,
    reason: str,
    audit: AuditLogger,
    now: datetime | None = None,
) -> bool:
    """Close an open session once and audit the transition.

    Returns ``False`` when another request already closed it. The caller owns
    the commit.
    """
    now = now or utc_now()
    result = await session.execute(
        update(ImpersonationSession)
        .where(ImpersonationSession.id == row.id, ImpersonationSession.ended_at.is_(None))
        .values(ended_at=now, end_reason=reason)
    )
    if (result.rowcount or 0) != 1:
        return False
    await session.flush()
    logger.info(
        "impersonation_ended tenant_id=%s session_id=%s acting_user_id=%s reason=%s",
        row.tenant_id,
        row.id,
        row.acting_user_id,
        reason,
    )
    await audit.success(
        ACTION_ENDED,
        target_type="user",
        target_id=row.target_user_id,
        metadata={"session_id": row.id, "end_reason": reason, "acting_user_id": row.acting_user_id},
    )
    return True


async def start_impersonation(
    session: AsyncSession,
    *,
    ctx: TenantContext,
    target_user_id: str,
    reason_code: str | None = None,
    now: datetime | None = None,
) -> StartedImpersonation:
    """Open a view-as session for ``ctx`` over ``target_user_id``.

    Spends the caller's ``impersonate`` step-up grant. The raw token is only
    returned here; storage keeps its hash. The caller owns the commit.
    """
    settings = get_settings()
    now = now or utc_now()
    if ctx.is_impersonating:
        raise _error(
            status.HTTP_409_CONFLICT,
            "IMPERSONATION_ALREADY_ACTIVE",
            "Exit the current impersonation session first",
        )
    if target_user_id == ctx.user_id:
        raise _error(status.HTTP_400_BAD_REQUEST, "INVALID_TARGET", "Cannot impersonate yourself")

    target = await users_repo.get_tenant_user(session, tenant_id=ctx.tenant_id, user_id=target_user_id)
    if target is None or not target.is_active:
        raise _error(status.HTTP_404_NOT_FOUND, "TARGET_NOT_FOUND", "Target user not found")
    # View-as never reaches above the actor's own privileges.
    if role_rank(target.role) > role_rank(ctx.role):
        raise _error(
            status.HTTP_403_FORBIDDEN,
            "AUTH_FORBIDDEN",
            "Cannot impersonate a user with a higher role",
        )

    audit = AuditLogger(ctx, session=session)
    existing = await get_active_session(session, tenant_id=ctx.tenant_id, acting_user_id=ctx.user_id)
    if existing is not None:
        if not is_expired(existing, now):
            raise _error(
                status.HTTP_409_CONFLICT,
                "IMPERSONATION_ALREADY_ACTIVE",
                "An impersonation session is already active",
                sessionId=existing.id,
            )
        await end_session(session, row=existing, reason=END_REASON_EXPIRED, audit=audit, now=now)

    await require_step_up_grant(session, ctx=ctx, purpose=StepUpPurpose.IMPERSONATE, now=now)

    token_id, raw_token, token_prefix, token_hash = generate_impersonation_token()
    row = ImpersonationSession(
        id=token_id,
        tenant_id=ctx.tenant_id,
        acting_user_id=ctx.user_id,
        target_user_id=target.id,
        token_prefix=token_prefix,
        token_hash=token_hash,
        reason_code=reason_code,
        created_at=now,
        expires_at=now + timedelta(minutes=settings.impersonation_session_ttl_minutes),
    )
    session.add(row)
    try:
        await session.flush()
    except IntegrityError as exc:
        # Lost a race against a concurrent start for the same actor.
        raise _error(
            status.HTTP_409_CONFLICT,
            "IMPERSONATION_ALREADY_ACTIVE",
            "An impersonation session is already active",
        ) from exc
    logger.info(
        "impersonation_started tenant_id=%s session_id=%s acting_user_id=%s target_user_id=%s",
        ctx.tenant_id,
        row.id,
        ctx.user_id,
        target.id,
    )
    return StartedImpersonation(raw_token=raw_token, session=row, target=target)


async def resolve_impersonation(
    session: AsyncSession,
    *,
    raw_token: str,
    ctx: TenantContext,
    now: datetime | None = None,
) -> ResolvedImpersonation:
    """Map an impersonation token to its open session and target user.

    An elapsed session is closed here with ``end_reason=expired`` and the
    request is refused, the same as after an explicit exit. ``ctx`` is the
    caller's own identity before impersonation is applied.
    """
    now = now or utc_now()
    if not is_impersonation_token(raw_token):
        raise _invalid_token("IMPERSONATION_INVALID", "Invalid impersonation token")
    result = await session.execute(
        select(ImpersonationSession).where(
            ImpersonationSession.token_hash == hash_impersonation_token(raw_token)
        )
    )
    row = result.scalar_one_or_none()
    # The token only works for the user who started the session.
    if row is None or row.tenant_id != ctx.tenant_id or row.acting_user_id != ctx.user_id:
        raise _invalid_token("IMPERSONATION_INVALID", "Invalid impersonation token")
    if row.ended_at is not None:
        raise _invalid_token("IMPERSONATION_ENDED", "Impersonation session has ended")
    if is_expired(row, now):
        audit = AuditLogger(ctx, session=session)
        await end_session(session, row=row, reason=END_REASON_EXPIRED, audit=audit, now=now)
        await session.commit()
        raise _invalid_token("IMPERSONATION_EXPIRED", "Impersonation session has expired")

    target = await users_repo.get_tenant_user(session, tenant_id=ctx.tenant_id, user_id=row.target_user_id)
    if target is None or not target.is_active:
        raise _invalid_token("IMPERSONATION_INVALID", "Impersonated user is no longer available")
    return ResolvedImpersonation(session=row, target=target)


def apply_impersonation(ctx: TenantContext, resolved: ResolvedImpersonation) -> TenantContext:
    # Authorization runs as the target; provenance keeps the real user.
    target = resolved.target
    return ctx.model_copy(
        update={
            "user_id": target.id,
            "role": target.role,
            "permissions": list(target.permissions_json or []),
            "is_impersonating": True,
            "real_user_id": ctx.user_id,
            "impersonation_session_id": resolved.session.id,
        }
    )


async def get_impersonation_status(
    session: AsyncSession,
    *,
    ctx: TenantContext,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Describe the acting user's open session for the client banner."""
    settings = get_settings()
    now = now or utc_now()
    payload: dict[str, Any] = {
        "active": False,
        "pollIntervalS": settings.impersonation_poll_interval_s,
    }
    row = await get_active_session(session, tenant_id=ctx.tenant_id, acting_user_id=ctx.acting_user_id)
    if row is None:
        return payload
    if is_expired(row, now):
        await end_session(
            session, row=row, reason=END_REASON_EXPIRED, audit=AuditLogger(ctx, session=session), now=now
        )
        await session.commit()
        return payload

    target = await users_repo.get_tenant_user(session, tenant_id=ctx.tenant_id, user_id=row.target_user_id)
    payload.update(
        {
            "active": True,
            "sessionId": row.id,
            "expiresAt": as_utc(row.expires_at).isoformat(),
            "target": {
                "userId": row.target_user_id,
                "fullName": target.full_name if target else None,
                "email": target.email if target else None,
            },
        }
    )
    return payload


async def exit_impersonation(
    session: AsyncSession,
    *,
    ctx: TenantContext,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Close the acting user's session, if any; always lands in the inactive state."""
    now = now or utc_now()
    ended = False
    row = await get_active_session(session, tenant_id=ctx.tenant_id, acting_user_id=ctx.acting_user_id)
    if row is not None:
        reason = END_REASON_EXPIRED if is_expired(row, now) else END_REASON_EXIT
        ended = await end_session(
            session, row=row, reason=reason, audit=AuditLogger(ctx, session=session), now=now
        )
    await session.commit()
    return {"active": False, "ended": ended, "clearToken": True, "reload": True}
