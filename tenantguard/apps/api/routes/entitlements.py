from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import get_db, get_tenant_context
from tenantguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantguard.domain.context import TenantContext
from tenantguard.services.entitlements import (
    check_addon_dependencies,
    get_addon_entitlement,
    list_tenant_entitlements,
    require_addon,
    require_employee_directory,
)


router = APIRouter(prefix="/entitlements", tags=["entitlements"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("")
async def list_entitlements(
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    entitlements = await list_tenant_entitlements(db, tenant_id=ctx.tenant_id)
    return {
        "tenantId": ctx.tenant_id,
        "items": [entitlements[code].to_payload() for code in sorted(entitlements)],
    }


@router.get("/employee-directory/access")
async def employee_directory_access(
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    decision = await require_employee_directory(db, tenant_id=ctx.tenant_id)
    return {"allowed": True, "via": decision.addon_code, "entitlement": decision.to_payload()}


@router.get("/{addon_code}")
async def get_entitlement(
    addon_code: str,
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Reports state without denying; the access route below enforces it.
    decision = await get_addon_entitlement(db, tenant_id=ctx.tenant_id, addon_code=addon_code)
    dependencies = await check_addon_dependencies(db, tenant_id=ctx.tenant_id, addon_code=addon_code)
    payload = decision.to_payload()
    payload["dependencies"] = {
        "satisfied": dependencies.satisfied,
        "reasonCode": dependencies.reason_code,
        "dependency": dependencies.dependency,
        "satisfiedBy": dependencies.satisfied_by,
    }
    return payload


@router.get("/{addon_code}/access")
async def check_addon_access(
    addon_code: str,
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    decision = await require_addon(
        db,
        tenant_id=ctx.tenant_id,
        addon_code=addon_code,
        is_read=True,
    )
    return {"allowed": True, "entitlement": decision.to_payload()}
