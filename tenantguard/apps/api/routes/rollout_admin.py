from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import get_db, require_permission, require_role
from tenantguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantguard.apps.api.response import CamelModel
from tenantguard.core.clock import as_utc
from tenantguard.domain.context import TenantContext
from tenantguard.persistence.repos import rollouts as rollouts_repo
from tenantguard.services.audit import AuditLogger
from tenantguard.services.rollouts import normalize_country_code, upsert_rollout_policy


# Country policies are platform-wide, so writes need this grant on top of admin.
ROLLOUT_MANAGE_PERMISSION = "platform:rollout:manage"

router = APIRouter(
    prefix="/admin/rollout",
    tags=["rollout-admin"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class RolloutPolicyRequest(CamelModel):
    is_active: bool
    enabled_modules: list[str] = Field(default_factory=list)
    enabled_features: dict[str, bool] = Field(default_factory=dict)
    notes: str | None = Field(default=None, max_length=1000)


class RolloutPolicyResponse(CamelModel):
    country_code: str
    is_active: bool
    enabled_modules: list[str]
    enabled_features: dict[str, bool]
    notes: str | None = None
    updated_by: str | None = None
    updated_at: str | None = None


def _to_response(row) -> RolloutPolicyResponse:
    updated_at = as_utc(row.updated_at)
    return RolloutPolicyResponse(
        country_code=row.country_code,
        is_active=bool(row.is_active),
        enabled_modules=list(row.enabled_modules or []),
        enabled_features=dict(row.enabled_features or {}),
        notes=row.notes,
        updated_by=row.updated_by,
        updated_at=updated_at.isoformat() if updated_at else None,
    )


@router.get("/countries", response_model=list[RolloutPolicyResponse])
async def list_country_policies(
    _ctx: TenantContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> list[RolloutPolicyResponse]:
    rows = await rollouts_repo.list_policies(db)
    return [_to_response(row) for row in rows]


@router.get("/countries/{country_code}", response_model=RolloutPolicyResponse)
async def get_country_policy(
    country_code: str,
    _ctx: TenantContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> RolloutPolicyResponse:
    row = await rollouts_repo.get_policy(db, normalize_country_code(country_code) or "")
    if row is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": "Rollout policy not found", "countryCode": country_code},
        )
    return _to_response(row)


@router.put("/countries/{country_code}", response_model=RolloutPolicyResponse)
async def put_country_policy(
    country_code: str,
    payload: RolloutPolicyRequest,
    ctx: TenantContext = Depends(require_permission(ROLLOUT_MANAGE_PERMISSION)),
    db: AsyncSession = Depends(get_db),
) -> RolloutPolicyResponse:
    before, after = await upsert_rollout_policy(
        db,
        country_code=country_code,
        is_active=payload.is_active,
        enabled_modules=payload.enabled_modules,
        enabled_features=payload.enabled_features,
        notes=payload.notes,
        updated_by=ctx.acting_user_id,
    )
    audit_before: dict[str, Any] | None = before.to_payload() if before else None
    await AuditLogger(ctx, session=db).success(
        "rollout.policy_updated",
        target_type="country_rollout_policy",
        target_id=after.country_code,
        before=audit_before,
        after=after.to_payload(),
    )
    await db.commit()
    row = await rollouts_repo.get_policy(db, after.country_code)
    return _to_response(row)
