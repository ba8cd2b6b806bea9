from __future__ import annotations

import pytest

from tenantguard.tests.utils.tenants import auth_headers, days_from_now, seed_addon, seed_tenant


@pytest.mark.asyncio
async def test_listing_reports_every_install(client) -> None:
    tenant_id = await seed_tenant(tier="pro")
    await seed_addon(tenant_id=tenant_id, addon_code="hrms")
    await seed_addon(
        tenant_id=tenant_id,
        addon_code="clinic",
        subscription_status="trialing",
        trial_ends_at=days_from_now(-1),
    )

    response = await client.get("/v1/entitlements", headers=auth_headers(user_id="u1", tenant_id=tenant_id))

    assert response.status_code == 200
    items = {item["addon"]: item for item in response.json()["items"]}
    assert items["hrms"]["entitled"] is True
    assert items["clinic"]["entitled"] is False
    assert items["clinic"]["reasonCode"] == "ADDON_TRIAL_EXPIRED"


@pytest.mark.asyncio
async def test_regional_hrms_counts_as_hrms(client) -> None:
    tenant_id = await seed_tenant(tier="pro")
    await seed_addon(tenant_id=tenant_id, addon_code="hrms-india")

    response = await client.get("/v1/entitlements", headers=auth_headers(user_id="u1", tenant_id=tenant_id))

    addons = {item["addon"] for item in response.json()["items"]}
    assert addons == {"hrms", "hrms-india"}


@pytest.mark.asyncio
async def test_dependency_must_be_installed(client) -> None:
    tenant_id = await seed_tenant(tier="pro")
    await seed_addon(tenant_id=tenant_id, addon_code="payroll")
    headers = auth_headers(user_id="u1", tenant_id=tenant_id)

    report = await client.get("/v1/entitlements/payroll", headers=headers)
    denied = await client.get("/v1/entitlements/payroll/access", headers=headers)

    assert report.status_code == 200
    assert report.json()["entitled"] is True
    assert report.json()["dependencies"]["satisfied"] is False
    assert denied.status_code == 403
    body = denied.json()
    assert body["code"] == "ADDON_DEPENDENCY_MISSING"
    assert body["dependency"] == "hrms"
    assert body["error"] == "ADDON_ACCESS_DENIED"


@pytest.mark.asyncio
async def test_regional_payroll_accepts_either_hrms(client) -> None:
    tenant_id = await seed_tenant(tier="pro")
    await seed_addon(tenant_id=tenant_id, addon_code="payroll-india")
    await seed_addon(tenant_id=tenant_id, addon_code="hrms")

    response = await client.get(
        "/v1/entitlements/payroll-india/access", headers=auth_headers(user_id="u1", tenant_id=tenant_id)
    )

    assert response.status_code == 200
    assert response.json()["allowed"] is True


@pytest.mark.asyncio
async def test_employee_directory_via_payroll(client) -> None:
    tenant_id = await seed_tenant(tier="pro")
    await seed_addon(tenant_id=tenant_id, addon_code="payroll")
    headers = auth_headers(user_id="u1", tenant_id=tenant_id)

    response = await client.get("/v1/entitlements/employee-directory/access", headers=headers)

    assert response.status_code == 200
    assert response.json()["via"] == "payroll"


@pytest.mark.asyncio
async def test_employee_directory_without_either_addon(client) -> None:
    tenant_id = await seed_tenant(tier="pro")
    response = await client.get(
        "/v1/entitlements/employee-directory/access", headers=auth_headers(user_id="u1", tenant_id=tenant_id)
    )
    assert response.status_code == 403
    assert response.json()["code"] == "ADDON_DEPENDENCY_MISSING"


@pytest.mark.asyncio
@pytest.mark.parametrize("addon_code", ["hrms-india", "payroll-uk"])
async def test_employee_directory_via_regional_install(client, addon_code: str) -> None:
    tenant_id = await seed_tenant(tier="pro")
    await seed_addon(tenant_id=tenant_id, addon_code=addon_code)

    response = await client.get(
        "/v1/entitlements/employee-directory/access", headers=auth_headers(user_id="u1", tenant_id=tenant_id)
    )

    assert response.status_code == 200
    assert response.json()["via"] == addon_code


@pytest.mark.asyncio
async def test_employee_directory_reports_lapsed_regional_install(client) -> None:
    tenant_id = await seed_tenant(tier="pro")
    await seed_addon(
        tenant_id=tenant_id,
        addon_code="payroll-malaysia",
        subscription_status="trialing",
        trial_ends_at=days_from_now(-2),
    )

    response = await client.get(
        "/v1/entitlements/employee-directory/access", headers=auth_headers(user_id="u1", tenant_id=tenant_id)
    )

    assert response.status_code == 403
    assert response.json()["code"] == "ADDON_DEPENDENCY_EXPIRED"
    assert response.json()["dependency"] == "payroll-malaysia"
