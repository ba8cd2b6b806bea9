from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import get_db, get_identity_context, require_role
from tenantguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantguard.apps.api.response import CamelModel
from tenantguard.core.clock import as_utc
from tenantguard.core.config import get_settings
from tenantguard.domain.context import TenantContext
from tenantguard.services.audit import audited
from tenantguard.services.impersonation import (
    ACTION_STARTED,
    exit_impersonation,
    get_impersonation_status,
    start_impersonation,
)


router = APIRouter(prefix="/impersonation", tags=["impersonation"], responses=DEFAULT_ERROR_RESPONSES)


class StartRequest(CamelModel):
    target_user_id: str = Field(min_length=1, max_length=128)
    reason_code: str | None = Field(default=None, max_length=64)


class TargetUser(CamelModel):
    user_id: str
    full_name: str | None = None
    email: str | None = None


class StartResponse(CamelModel):
    # Shown once; clients send it back in the impersonation header.
    token: str
    session_id: str
    expires_at: str
    target: TargetUser
    poll_interval_s: int


class StatusResponse(CamelModel):
    active: bool
    poll_interval_s: int
    session_id: str | None = None
    expires_at: str | None = None
    target: TargetUser | None = None


class ExitResponse(CamelModel):
    active: bool
    ended: bool
    clear_token: bool
    reload: bool


@router.post("/start", status_code=201, response_model=StartResponse)
@audited(ACTION_STARTED, target_type="user", target_id_param="payload.target_user_id")
async def start(
    payload: StartRequest,
    ctx: TenantContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> StartResponse:
    started = await start_impersonation(
        db,
        ctx=ctx,
        target_user_id=payload.target_user_id,
        reason_code=payload.reason_code,
    )
    await db.commit()
    target = started.target
    return StartResponse(
        token=started.raw_token,
        session_id=started.session.id,
        expires_at=as_utc(started.session.expires_at).isoformat(),
        target=TargetUser(user_id=target.id, full_name=target.full_name, email=target.email),
        poll_interval_s=get_settings().impersonation_poll_interval_s,
    )


@router.get("/status", response_model=StatusResponse, response_model_exclude_none=True)
async def status(
    ctx: TenantContext = Depends(get_identity_context),
    db: AsyncSession = Depends(get_db),
) -> StatusResponse:
    # Reads the caller's own session, so an expired token never blocks the check.
    return StatusResponse.model_validate(await get_impersonation_status(db, ctx=ctx))


@router.post("/exit", response_model=ExitResponse)
async def exit_session(
    ctx: TenantContext = Depends(get_identity_context),
    db: AsyncSession = Depends(get_db),
) -> ExitResponse:
    return ExitResponse.model_validate(await exit_impersonation(db, ctx=ctx))
