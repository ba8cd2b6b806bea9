from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
import hashlib
import hmac
import inspect
import logging
import re
import secrets
from typing import Any, Awaitable, Callable, Protocol
from uuid import uuid4

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.clock import as_utc, utc_now
from tenantguard.core.config import get_settings
from tenantguard.core.errors import OtpProviderError
from tenantguard.domain.context import TenantContext
from tenantguard.domain.models import StepUpChallenge
from tenantguard.persistence.db import SessionLocal
from tenantguard.persistence.guards import tenant_predicate


logger = logging.getLogger(__name__)


class StepUpPurpose(str, Enum):
    REVOKE_SESSION = "revoke_session"
    FORCE_LOGOUT = "force_logout"
    IP_RULE_CHANGE = "ip_rule_change"
    IMPERSONATE = "impersonate"
    CHANGE_ROLE = "change_role"
    CHANGE_PERMISSIONS = "change_permissions"
    SSO_CONFIG = "sso_config"
    BILLING_CHANGE = "billing_change"
    DATA_EXPORT = "data_export"
    SECURITY_SETTINGS = "security_settings"


PURPOSE_LABELS: dict[StepUpPurpose, str] = {
    StepUpPurpose.REVOKE_SESSION: "revoke a session",
    StepUpPurpose.FORCE_LOGOUT: "force a user to sign out",
    StepUpPurpose.IP_RULE_CHANGE: "change IP access rules",
    StepUpPurpose.IMPERSONATE: "view the app as another user",
    StepUpPurpose.CHANGE_ROLE: "change a user's role",
    StepUpPurpose.CHANGE_PERMISSIONS: "change a user's permissions",
    StepUpPurpose.SSO_CONFIG: "change single sign-on settings",
    StepUpPurpose.BILLING_CHANGE: "change billing details",
    StepUpPurpose.DATA_EXPORT: "export tenant data",
    StepUpPurpose.SECURITY_SETTINGS: "change security settings",
}

STATUS_ISSUED = "issued"
STATUS_VERIFIED = "verified"
STATUS_EXPIRED = "expired"
STATUS_FAILED = "failed"

INVALID_OTP = "INVALID_OTP"
INVALID_OTP_MESSAGE = "Invalid code. Please try again."
CODE_LENGTH = 6
_CODE_PATTERN = re.compile(r"^[0-9]{6}$")


class OtpProvider(Protocol):
    async def verify(self, secret: str, code: str) -> bool:
        ...


class CodeSender(Protocol):
    async def send(
        self,
        *,
        tenant_id: str,
        user_id: str,
        purpose: StepUpPurpose,
        code: str,
        expires_at: datetime,
    ) -> None:
        ...


def hash_code(code: str) -> str:
    # Use SHA-256 for deterministic, non-reversible code storage.
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class HashedCodeProvider:
    """Verify issued codes against the stored hash in constant time."""

    async def verify(self, secret: str, code: str) -> bool:
        return hmac.compare_digest(hash_code(code), secret)


class LoggingCodeSender:
    """Record issuance without the code; delivery channels plug in here."""

    async def send(
        self,
        *,
        tenant_id: str,
        user_id: str,
        purpose: StepUpPurpose,
        code: str,
        expires_at: datetime,
    ) -> None:
        logger.info(
            "step_up_code_issued tenant_id=%s user_id=%s purpose=%s expires_at=%s",
            tenant_id,
            user_id,
            purpose.value,
            expires_at.isoformat(),
        )


@dataclass(frozen=True)
class IssuedChallenge:
    challenge: StepUpChallenge
    purpose: StepUpPurpose
    code: str


@dataclass(frozen=True)
class VerificationResult:
    challenge_id: str
    purpose: StepUpPurpose
    verified_at: datetime
    outcome: Any = None


def parse_purpose(purpose: str | None) -> StepUpPurpose | None:
    # Unlisted purposes are rejected rather than given a generic label.
    if not purpose:
        return None
    try:
        return StepUpPurpose(purpose.strip().lower())
    except ValueError:
        return None


def purpose_label(purpose: StepUpPurpose) -> str:
    return PURPOSE_LABELS[purpose]


def is_valid_code_format(code: str | None) -> bool:
    return bool(code) and _CODE_PATTERN.match(code) is not None


def generate_code() -> str:
    return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"


def step_up_failure_message(error: str | None) -> str:
    """Map a verification error to the text shown to the user.

    Bad codes share one generic message so callers cannot discover which
    purposes or challenges exist; operational errors pass through verbatim.
    """
    if not error or error == INVALID_OTP:
        return INVALID_OTP_MESSAGE
    return error


def _invalid_otp() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "code": INVALID_OTP,
            "error": INVALID_OTP,
            "message": step_up_failure_message(INVALID_OTP),
        },
    )


def _provider_unavailable(exc: OtpProviderError) -> HTTPException:
    message = step_up_failure_message(str(exc))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "STEP_UP_UNAVAILABLE", "error": message, "message": message},
    )


def step_up_required(purpose: StepUpPurpose) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "code": "STEP_UP_REQUIRED",
            "message": f"Re-authentication is required to {purpose_label(purpose)}",
            "purpose": purpose.value,
        },
    )


async def _latest_pending(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    purpose: StepUpPurpose,
) -> StepUpChallenge | None:
    result = await session.execute(
        select(StepUpChallenge)
        .where(
            tenant_predicate(StepUpChallenge, tenant_id),
            StepUpChallenge.user_id == user_id,
            StepUpChallenge.purpose == purpose.value,
            StepUpChallenge.status == STATUS_ISSUED,
        )
        .order_by(StepUpChallenge.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _close_pending(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    purpose: StepUpPurpose,
    new_status: str,
) -> int:
    result = await session.execute(
        update(StepUpChallenge)
        .where(
            tenant_predicate(StepUpChallenge, tenant_id),
            StepUpChallenge.user_id == user_id,
            StepUpChallenge.purpose == purpose.value,
            StepUpChallenge.status == STATUS_ISSUED,
        )
        .values(status=new_status)
    )
    return result.rowcount or 0


async def issue_challenge(
    session: AsyncSession,
    *,
    ctx: TenantContext,
    purpose: str,
    now: datetime | None = None,
    sender: CodeSender | None = None,
) -> IssuedChallenge:
    """Issue a fresh code for ``purpose`` and hand it to the sender.

    Earlier pending challenges for the same (user, purpose) are expired so only
    the newest code can verify. The caller owns the commit.
    """
    resolved = parse_purpose(purpose)
    if resolved is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_PURPOSE", "message": "Unsupported step-up purpose"},
        )
    settings = get_settings()
    now = now or utc_now()
    user_id = ctx.acting_user_id

    await _close_pending(
        session,
        tenant_id=ctx.tenant_id,
        user_id=user_id,
        purpose=resolved,
        new_status=STATUS_EXPIRED,
    )
    code = generate_code()
    challenge = StepUpChallenge(
        id=uuid4().hex,
        tenant_id=ctx.tenant_id,
        user_id=user_id,
        purpose=resolved.value,
        code_hash=hash_code(code),
        status=STATUS_ISSUED,
        created_at=now,
        expires_at=now + timedelta(seconds=settings.step_up_code_ttl_seconds),
    )
    session.add(challenge)
    await session.flush()
    await (sender or LoggingCodeSender()).send(
        tenant_id=ctx.tenant_id,
        user_id=user_id,
        purpose=resolved,
        code=code,
        expires_at=challenge.expires_at,
    )
    return IssuedChallenge(challenge=challenge, purpose=resolved, code=code)


async def _mark_expired(challenge_id: str) -> None:
    # Written on its own session so the expiry survives the caller's rollback.
    async with SessionLocal() as expiry_session:
        await expiry_session.execute(
            update(StepUpChallenge)
            .where(StepUpChallenge.id == challenge_id, StepUpChallenge.status == STATUS_ISSUED)
            .values(status=STATUS_EXPIRED)
            .execution_options(synchronize_session=False)
        )
        await expiry_session.commit()


async def verify_challenge(
    session: AsyncSession,
    *,
    ctx: TenantContext,
    purpose: str,
    code: str,
    now: datetime | None = None,
    provider: OtpProvider | None = None,
    on_verified: Callable[[StepUpChallenge], Any | Awaitable[Any]] | None = None,
) -> VerificationResult:
    """Verify ``code`` for ``purpose`` and run ``on_verified`` on success.

    Every bad-code path raises the same ``INVALID_OTP`` denial. Provider
    failures surface as 503 with the provider's own message.
    Only flushes ``session``; the caller owns the commit.
    """
    resolved = parse_purpose(purpose)
    # Format and purpose are checked before any lookup.
    if resolved is None or not is_valid_code_format(code):
        raise _invalid_otp()
    now = now or utc_now()
    user_id = ctx.acting_user_id

    challenge = await _latest_pending(
        session, tenant_id=ctx.tenant_id, user_id=user_id, purpose=resolved
    )
    if challenge is None:
        raise _invalid_otp()
    if as_utc(challenge.expires_at) < now:
        await _mark_expired(challenge.id)
        raise _invalid_otp()

    try:
        matched = await (provider or HashedCodeProvider()).verify(challenge.code_hash, code)
    except OtpProviderError as exc:
        logger.error(
            "step_up_provider_failed tenant_id=%s user_id=%s purpose=%s",
            ctx.tenant_id,
            user_id,
            resolved.value,
            exc_info=exc,
        )
        raise _provider_unavailable(exc) from exc
    if not matched:
        raise _invalid_otp()

    # Conditional update so a concurrent replay of the same code loses.
    result = await session.execute(
        update(StepUpChallenge)
        .where(StepUpChallenge.id == challenge.id, StepUpChallenge.status == STATUS_ISSUED)
        .values(status=STATUS_VERIFIED, verified_at=now)
    )
    if (result.rowcount or 0) != 1:
        raise _invalid_otp()
    await session.flush()

    outcome = None
    if on_verified is not None:
        outcome = on_verified(challenge)
        if inspect.isawaitable(outcome):
            outcome = await outcome
    return VerificationResult(
        challenge_id=challenge.id,
        purpose=resolved,
        verified_at=now,
        outcome=outcome,
    )


async def fail_pending_challenges(
    session: AsyncSession,
    *,
    ctx: TenantContext,
    purpose: str,
) -> int:
    # Throttled verification burns the outstanding code.
    resolved = parse_purpose(purpose)
    if resolved is None:
        return 0
    return await _close_pending(
        session,
        tenant_id=ctx.tenant_id,
        user_id=ctx.acting_user_id,
        purpose=resolved,
        new_status=STATUS_FAILED,
    )


async def consume_step_up_grant(
    session: AsyncSession,
    *,
    ctx: TenantContext,
    purpose: StepUpPurpose,
    now: datetime | None = None,
) -> StepUpChallenge | None:
    """Spend the newest unconsumed verification for ``purpose``.

    Returns ``None`` when no verification inside the grant window exists. The
    caller owns the commit, so a failed guarded action leaves the grant intact.
    """
    settings = get_settings()
    now = now or utc_now()
    window_start = now - timedelta(seconds=settings.step_up_grant_ttl_seconds)
    result = await session.execute(
        select(StepUpChallenge)
        .where(
            tenant_predicate(StepUpChallenge, ctx.tenant_id),
            StepUpChallenge.user_id == ctx.acting_user_id,
            StepUpChallenge.purpose == purpose.value,
            StepUpChallenge.status == STATUS_VERIFIED,
            StepUpChallenge.consumed_at.is_(None),
            StepUpChallenge.verified_at >= window_start,
        )
        .order_by(StepUpChallenge.verified_at.desc())
        .limit(1)
    )
    challenge = result.scalar_one_or_none()
    if challenge is None:
        return None
    stamped = await session.execute(
        update(StepUpChallenge)
        .where(StepUpChallenge.id == challenge.id, StepUpChallenge.consumed_at.is_(None))
        .values(consumed_at=now)
    )
    if (stamped.rowcount or 0) != 1:
        return None
    return challenge


async def require_step_up_grant(
    session: AsyncSession,
    *,
    ctx: TenantContext,
    purpose: StepUpPurpose,
    now: datetime | None = None,
) -> StepUpChallenge:
    challenge = await consume_step_up_grant(session, ctx=ctx, purpose=purpose, now=now)
    if challenge is None:
        logger.info(
            "step_up_required tenant_id=%s user_id=%s purpose=%s",
            ctx.tenant_id,
            ctx.acting_user_id,
            purpose.value,
        )
        raise step_up_required(purpose)
    return challenge
