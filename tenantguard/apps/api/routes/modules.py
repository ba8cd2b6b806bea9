from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import get_db
from tenantguard.apps.api.guards import require_country_active
from tenantguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantguard.domain.context import TenantContext
from tenantguard.services.rollouts import enforce_country_feature, enforce_country_module
from tenantguard.services.subscription_gate import (
    SubscriptionRequirement,
    enforce_subscription,
    module_access,
)


router = APIRouter(tags=["modules"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/modules/{module_id}/access")
async def module_access_check(
    module_id: str,
    ctx: TenantContext = Depends(require_country_active()),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Rollout first, then billing: a country that is not live never reaches the gate.
    await enforce_country_module(db, country_code=ctx.country_code, module_id=module_id)
    resolved = await enforce_subscription(
        db,
        tenant_id=ctx.tenant_id,
        requirement=SubscriptionRequirement(module=module_id),
    )
    return {
        "allowed": True,
        "module": module_id,
        "currentTier": resolved.tier,
        "access": module_access(resolved.tier, module_id),
    }


@router.get("/features/{feature_key}/access")
async def feature_access_check(
    feature_key: str,
    ctx: TenantContext = Depends(require_country_active()),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await enforce_country_feature(db, country_code=ctx.country_code, feature_key=feature_key)
    resolved = await enforce_subscription(
        db,
        tenant_id=ctx.tenant_id,
        requirement=SubscriptionRequirement(feature=feature_key),
    )
    return {"allowed": True, "feature": feature_key, "currentTier": resolved.tier}
