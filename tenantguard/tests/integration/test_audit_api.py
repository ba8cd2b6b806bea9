from __future__ import annotations

import pytest

from tenantguard.services.audit import record_audit
from tenantguard.tests.utils.tenants import auth_headers, seed_tenant


def _admin(tenant_id: str) -> dict[str, str]:
    return auth_headers(user_id="u-admin", tenant_id=tenant_id, role="admin")


@pytest.mark.asyncio
async def test_listing_is_tenant_scoped_and_paged(client) -> None:
    tenant_id = await seed_tenant()
    other_tenant = await seed_tenant()
    for index in range(3):
        await record_audit(
            tenant_id=tenant_id,
            actor_user_id="u-staff",
            action="addon.installed",
            target_type="addon",
            target_id=f"addon-{index}",
        )
    await record_audit(tenant_id=other_tenant, actor_user_id="u-x", action="addon.installed")

    first = await client.get("/v1/audit/events", params={"limit": 2}, headers=_admin(tenant_id))
    assert first.status_code == 200
    page = first.json()
    assert len(page["items"]) == 2
    assert page["nextOffset"] == 2
    assert {item["tenantId"] for item in page["items"]} == {tenant_id}

    second = await client.get(
        "/v1/audit/events", params={"limit": 2, "offset": 2}, headers=_admin(tenant_id)
    )
    assert len(second.json()["items"]) == 1
    assert second.json()["nextOffset"] is None


@pytest.mark.asyncio
async def test_filters(client) -> None:
    tenant_id = await seed_tenant()
    await record_audit(tenant_id=tenant_id, actor_user_id="u1", action="plan.viewed")
    await record_audit(
        tenant_id=tenant_id,
        actor_user_id="u2",
        action="plan.viewed",
        outcome="fail",
        failure_reason="Nope",
        is_impersonating=True,
        real_user_id="u-admin",
    )

    response = await client.get(
        "/v1/audit/events",
        params={"outcome": "fail", "isImpersonating": "true"},
        headers=_admin(tenant_id),
    )

    [item] = response.json()["items"]
    assert item["actorUserId"] == "u2"
    assert item["realUserId"] == "u-admin"
    assert item["failureReason"] == "Nope"

    by_actor = await client.get(
        "/v1/audit/events", params={"actorUserId": "u1"}, headers=_admin(tenant_id)
    )
    assert [entry["actorUserId"] for entry in by_actor.json()["items"]] == ["u1"]


@pytest.mark.asyncio
async def test_single_entry_lookup_respects_tenant(client) -> None:
    tenant_id = await seed_tenant()
    other_tenant = await seed_tenant()
    await record_audit(tenant_id=tenant_id, actor_user_id="u1", action="plan.viewed")

    listing = await client.get("/v1/audit/events", headers=_admin(tenant_id))
    entry_id = listing.json()["items"][0]["id"]

    own = await client.get(f"/v1/audit/events/{entry_id}", headers=_admin(tenant_id))
    foreign = await client.get(f"/v1/audit/events/{entry_id}", headers=_admin(other_tenant))

    assert own.status_code == 200
    assert own.json()["action"] == "plan.viewed"
    assert foreign.status_code == 404
