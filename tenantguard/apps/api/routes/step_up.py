from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import get_db, get_tenant_context
from tenantguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantguard.apps.api.rate_limit import (
    ROUTE_CLASS_STEP_UP_ISSUE,
    ROUTE_CLASS_STEP_UP_VERIFY,
    enforce_step_up_rate_limit,
)
from tenantguard.apps.api.response import CamelModel
from tenantguard.core.clock import as_utc
from tenantguard.core.config import get_settings
from tenantguard.domain.context import TenantContext
from tenantguard.services.audit import AuditLogger, audited, failure_reason
from tenantguard.services.step_up import (
    fail_pending_challenges,
    issue_challenge,
    purpose_label,
    verify_challenge,
)


router = APIRouter(prefix="/step-up", tags=["step-up"], responses=DEFAULT_ERROR_RESPONSES)


class ChallengeRequest(CamelModel):
    purpose: str = Field(min_length=1, max_length=64)


class ChallengeResponse(CamelModel):
    challenge_id: str
    purpose: str
    purpose_label: str
    expires_at: str
    # Only populated when STEP_UP_DEBUG_ECHO_CODE is on.
    code: str | None = None


class VerifyRequest(CamelModel):
    purpose: str = Field(max_length=64)
    code: str = Field(max_length=32)


class VerifyResponse(CamelModel):
    verified: bool
    purpose: str
    challenge_id: str
    verified_at: str
    grant_expires_at: str


@router.post(
    "/challenges",
    status_code=201,
    response_model=ChallengeResponse,
    response_model_exclude_none=True,
)
@audited("step_up.challenge_issued", target_type="step_up", target_id_param="payload.purpose")
async def create_challenge(
    payload: ChallengeRequest,
    response: Response,
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> ChallengeResponse:
    await enforce_step_up_rate_limit(response=response, ctx=ctx, route_class=ROUTE_CLASS_STEP_UP_ISSUE)
    issued = await issue_challenge(db, ctx=ctx, purpose=payload.purpose)
    await db.commit()
    challenge = issued.challenge
    settings = get_settings()
    return ChallengeResponse(
        challenge_id=challenge.id,
        purpose=challenge.purpose,
        purpose_label=purpose_label(issued.purpose),
        expires_at=as_utc(challenge.expires_at).isoformat(),
        code=issued.code if settings.step_up_debug_echo_code else None,
    )


@router.post("/verify", response_model=VerifyResponse)
async def verify(
    payload: VerifyRequest,
    response: Response,
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> VerifyResponse:
    audit = AuditLogger(ctx)
    try:
        await enforce_step_up_rate_limit(
            response=response, ctx=ctx, route_class=ROUTE_CLASS_STEP_UP_VERIFY
        )
    except HTTPException as exc:
        if exc.status_code == 429:
            # A throttled caller loses the outstanding code for this purpose.
            await fail_pending_challenges(db, ctx=ctx, purpose=payload.purpose)
            await db.commit()
        raise

    try:
        result = await verify_challenge(db, ctx=ctx, purpose=payload.purpose, code=payload.code)
        await db.commit()
    except HTTPException as exc:
        await db.rollback()
        await audit.fail(
            "step_up.failed",
            reason=failure_reason(exc),
            target_type="step_up",
            metadata={"purpose": payload.purpose},
        )
        raise

    await audit.success(
        "step_up.verified",
        target_type="step_up",
        target_id=result.challenge_id,
        metadata={"purpose": result.purpose.value},
    )
    grant_ttl = timedelta(seconds=get_settings().step_up_grant_ttl_seconds)
    return VerifyResponse(
        verified=True,
        purpose=result.purpose.value,
        challenge_id=result.challenge_id,
        verified_at=result.verified_at.isoformat(),
        grant_expires_at=(result.verified_at + grant_ttl).isoformat(),
    )
