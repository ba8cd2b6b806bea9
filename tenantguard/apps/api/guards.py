from __future__ import annotations

from typing import Iterable

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import get_db, get_tenant_context
from tenantguard.domain.context import TenantContext
from tenantguard.domain.models import StepUpChallenge
from tenantguard.services.entitlements import EntitlementDecision, require_addon
from tenantguard.services.rollouts import (
    enforce_country_active,
    enforce_country_feature,
    enforce_country_module,
)
from tenantguard.services.step_up import StepUpPurpose, require_step_up_grant
from tenantguard.services.subscription_gate import (
    ResolvedSubscription,
    SubscriptionRequirement,
    enforce_subscription,
)


_READ_METHODS = {"GET", "HEAD", "OPTIONS"}


def require_subscription(
    *,
    allowed_tiers: Iterable[str] | None = None,
    module: str | None = None,
    feature: str | None = None,
    allow_trial: bool = False,
):
    # Dependency factory wrapping the subscription gate for one route.
    requirement = SubscriptionRequirement(
        allowed_tiers=tuple(allowed_tiers) if allowed_tiers else None,
        module=module,
        feature=feature,
        allow_trial=allow_trial,
    )

    async def _dependency(
        ctx: TenantContext = Depends(get_tenant_context),
        db: AsyncSession = Depends(get_db),
    ) -> ResolvedSubscription:
        return await enforce_subscription(db, tenant_id=ctx.tenant_id, requirement=requirement)

    return _dependency


def require_country_active():
    async def _dependency(
        ctx: TenantContext = Depends(get_tenant_context),
        db: AsyncSession = Depends(get_db),
    ) -> TenantContext:
        await enforce_country_active(db, country_code=ctx.country_code)
        return ctx

    return _dependency


def require_country_module(module_id: str):
    async def _dependency(
        ctx: TenantContext = Depends(get_tenant_context),
        db: AsyncSession = Depends(get_db),
    ) -> TenantContext:
        await enforce_country_module(db, country_code=ctx.country_code, module_id=module_id)
        return ctx

    return _dependency


def require_country_feature(feature_key: str):
    async def _dependency(
        ctx: TenantContext = Depends(get_tenant_context),
        db: AsyncSession = Depends(get_db),
    ) -> TenantContext:
        await enforce_country_feature(db, country_code=ctx.country_code, feature_key=feature_key)
        return ctx

    return _dependency


def require_addon_access(
    addon_code: str,
    *,
    allow_grace: bool = True,
    allow_grace_for_reads: bool = False,
    dependencies: Iterable[str] | None = None,
):
    """Dependency factory gating a route on an add-on entitlement.

    Safe methods count as reads for ``allow_grace_for_reads``.
    """
    resolved_dependencies = tuple(dependencies) if dependencies is not None else None

    async def _dependency(
        request: Request,
        ctx: TenantContext = Depends(get_tenant_context),
        db: AsyncSession = Depends(get_db),
    ) -> EntitlementDecision:
        return await require_addon(
            db,
            tenant_id=ctx.tenant_id,
            addon_code=addon_code,
            allow_grace=allow_grace,
            allow_grace_for_reads=allow_grace_for_reads,
            is_read=request.method.upper() in _READ_METHODS,
            dependencies=resolved_dependencies,
        )

    return _dependency


def require_step_up(purpose: StepUpPurpose):
    # Spends one verified challenge; the route's commit makes the spend stick.
    async def _dependency(
        ctx: TenantContext = Depends(get_tenant_context),
        db: AsyncSession = Depends(get_db),
    ) -> StepUpChallenge:
        return await require_step_up_grant(db, ctx=ctx, purpose=purpose)

    return _dependency
