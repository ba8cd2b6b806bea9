from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import get_db, get_tenant_context, require_role
from tenantguard.apps.api.guards import require_step_up
from tenantguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantguard.apps.api.response import CamelModel
from tenantguard.domain.context import TenantContext
from tenantguard.domain.models import StepUpChallenge, Subscription
from tenantguard.services.audit import AuditLogger
from tenantguard.services.step_up import StepUpPurpose
from tenantguard.services.subscription_gate import (
    change_plan,
    resolve_subscription_soft,
)


router = APIRouter(prefix="/subscription", tags=["subscription"], responses=DEFAULT_ERROR_RESPONSES)


class PlanChangeRequest(CamelModel):
    plan_id: str = Field(min_length=1, max_length=64)
    trial_days: int | None = Field(default=None, ge=1, le=90)


def _snapshot(subscription: Subscription | None) -> dict[str, Any] | None:
    if subscription is None:
        return None
    return {
        "subscription_id": subscription.id,
        "plan_id": subscription.plan_id,
        "tier": subscription.tier,
        "status": subscription.status,
    }


@router.get("/status")
async def subscription_status(
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Informational; billing denials come from the gate on guarded routes.
    resolved = await resolve_subscription_soft(db, tenant_id=ctx.tenant_id)
    if resolved is None:
        return {"tenantId": ctx.tenant_id, "status": "none", "tier": None}
    return resolved.to_payload()


@router.post("/plan")
async def change_subscription_plan(
    payload: PlanChangeRequest,
    ctx: TenantContext = Depends(require_role("owner")),
    _grant: StepUpChallenge = Depends(require_step_up(StepUpPurpose.BILLING_CHANGE)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    previous, current = await change_plan(
        db,
        tenant_id=ctx.tenant_id,
        plan_id=payload.plan_id,
        trial_days=payload.trial_days,
    )
    await AuditLogger(ctx, session=db).success(
        "subscription.plan_changed",
        target_type="subscription",
        target_id=current.id,
        before=_snapshot(previous),
        after=_snapshot(current),
    )
    await db.commit()
    resolved = await resolve_subscription_soft(db, tenant_id=ctx.tenant_id)
    return resolved.to_payload() if resolved else {"tenantId": ctx.tenant_id, "tier": current.tier}
