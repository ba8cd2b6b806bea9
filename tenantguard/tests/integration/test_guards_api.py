from __future__ import annotations

import pytest
from fastapi import APIRouter, Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from tenantguard.apps.api.guards import (
    require_addon_access,
    require_country_feature,
    require_country_module,
    require_subscription,
)
from tenantguard.apps.api.main import create_app
from tenantguard.services.entitlements import EntitlementDecision
from tenantguard.services.subscription_gate import ResolvedSubscription
from tenantguard.tests.utils.tenants import (
    auth_headers,
    days_from_now,
    seed_addon,
    seed_plan,
    seed_rollout_policy,
    seed_subscription,
    seed_tenant,
)


def _guarded_app() -> FastAPI:
    app = create_app()
    router = APIRouter(prefix="/v1/demo")

    @router.get("/payroll/runs")
    async def list_runs(
        decision: EntitlementDecision = Depends(require_addon_access("payroll", allow_grace_for_reads=True)),
    ) -> dict:
        return {"state": decision.state}

    @router.post("/payroll/runs")
    async def create_run(
        decision: EntitlementDecision = Depends(require_addon_access("payroll", allow_grace_for_reads=True)),
    ) -> dict:
        return {"state": decision.state}

    @router.get("/reports/advanced")
    async def advanced_report(
        resolved: ResolvedSubscription = Depends(require_subscription(allowed_tiers=["pro", "enterprise"])),
    ) -> dict:
        return {"tier": resolved.tier}

    @router.get(
        "/invoices",
        dependencies=[
            Depends(require_country_module("invoicing")),
            Depends(require_country_feature("e_invoicing")),
        ],
    )
    async def invoices() -> dict:
        return {"ok": True}

    app.include_router(router)
    return app


@pytest.fixture
async def guarded_client() -> AsyncClient:
    transport = ASGITransport(app=_guarded_app())
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


@pytest.mark.asyncio
async def test_grace_period_allows_reads_only(guarded_client) -> None:
    tenant_id = await seed_tenant(tier="pro")
    await seed_addon(tenant_id=tenant_id, addon_code="hrms")
    await seed_addon(
        tenant_id=tenant_id,
        addon_code="payroll",
        subscription_status="grace_period",
        paid_until=days_from_now(-1),
        grace_until=days_from_now(2),
    )
    headers = auth_headers(user_id="u1", tenant_id=tenant_id)

    read = await guarded_client.get("/v1/demo/payroll/runs", headers=headers)
    write = await guarded_client.post("/v1/demo/payroll/runs", headers=headers)

    assert read.status_code == 200
    assert read.json() == {"state": "grace"}
    assert write.status_code == 403
    assert write.json()["code"] == "ADDON_EXPIRED"


@pytest.mark.asyncio
async def test_tier_allow_list_guard(guarded_client) -> None:
    await seed_plan("starter", "starter")
    await seed_plan("pro", "pro")
    starter = await seed_tenant(tier="starter")
    await seed_subscription(tenant_id=starter, plan_id="starter", tier="starter")
    pro = await seed_tenant(tier="pro")
    await seed_subscription(tenant_id=pro, plan_id="pro", tier="pro")

    denied = await guarded_client.get(
        "/v1/demo/reports/advanced", headers=auth_headers(user_id="u1", tenant_id=starter)
    )
    allowed = await guarded_client.get(
        "/v1/demo/reports/advanced", headers=auth_headers(user_id="u1", tenant_id=pro)
    )

    assert denied.status_code == 403
    assert denied.json()["code"] == "TIER_UPGRADE_REQUIRED"
    assert denied.json()["requiredTiers"] == ["pro", "enterprise"]
    assert allowed.json() == {"tier": "pro"}


@pytest.mark.asyncio
async def test_country_feature_guard(guarded_client) -> None:
    await seed_rollout_policy("MY", enabled_modules=["invoicing"], enabled_features={"e_invoicing": False})
    tenant_id = await seed_tenant(country_code="MY")

    response = await guarded_client.get("/v1/demo/invoices", headers=auth_headers(user_id="u1", tenant_id=tenant_id))

    assert response.status_code == 403
    assert response.json()["code"] == "FEATURE_NOT_AVAILABLE"
    assert response.json()["feature"] == "e_invoicing"


@pytest.mark.asyncio
async def test_tenant_without_country_skips_rollout(guarded_client) -> None:
    tenant_id = await seed_tenant()
    response = await guarded_client.get("/v1/demo/invoices", headers=auth_headers(user_id="u1", tenant_id=tenant_id))
    assert response.status_code == 200
