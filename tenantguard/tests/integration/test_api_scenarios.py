from __future__ import annotations

from datetime import datetime, timezone
import logging

import pytest
from fastapi import HTTPException
from sqlalchemy import text

from tenantguard.persistence.db import SessionLocal
from tenantguard.persistence.repos import rollouts as rollouts_repo
from tenantguard.services.entitlements import ADDON_TRIAL_EXPIRED, require_addon
from tenantguard.tests.utils.tenants import (
    auth_headers,
    seed_addon,
    seed_plan,
    seed_rollout_policy,
    seed_subscription,
    seed_tenant,
)


@pytest.mark.asyncio
async def test_free_tenant_cannot_reach_pro_module(client) -> None:
    await seed_plan("free", "free")
    tenant_id = await seed_tenant(tier="free")
    headers = auth_headers(user_id="u-free", tenant_id=tenant_id)

    response = await client.get("/v1/modules/clinic/access", headers=headers)

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "MODULE_NOT_AVAILABLE"
    assert body["currentTier"] == "free"
    assert body["module"] == "clinic"
    assert body["requestId"]


@pytest.mark.asyncio
async def test_free_tenant_reaches_free_module(client) -> None:
    await seed_plan("free", "free")
    tenant_id = await seed_tenant(tier="free")

    response = await client.get(
        "/v1/modules/bookings/access", headers=auth_headers(user_id="u-free", tenant_id=tenant_id)
    )

    assert response.status_code == 200
    assert response.json() == {
        "allowed": True,
        "module": "bookings",
        "currentTier": "free",
        "access": "included",
    }


@pytest.mark.asyncio
async def test_addon_trial_is_inclusive_of_its_last_second() -> None:
    tenant_id = await seed_tenant(tier="pro")
    await seed_addon(
        tenant_id=tenant_id,
        addon_code="hrms",
        status="trial",
        subscription_status="trialing",
        trial_ends_at=datetime(2025, 6, 20, 23, 59, 59, tzinfo=timezone.utc),
    )

    async with SessionLocal() as session:
        decision = await require_addon(
            session,
            tenant_id=tenant_id,
            addon_code="hrms",
            now=datetime(2025, 6, 20, 23, 59, 59, tzinfo=timezone.utc),
        )
        assert decision.entitled is True

        with pytest.raises(HTTPException) as exc_info:
            await require_addon(
                session,
                tenant_id=tenant_id,
                addon_code="hrms",
                now=datetime(2025, 6, 21, 0, 0, 1, tzinfo=timezone.utc),
            )
    assert exc_info.value.status_code == 403
    assert exc_info.value.detail["code"] == ADDON_TRIAL_EXPIRED
    assert exc_info.value.detail["addon"] == "hrms"


@pytest.mark.asyncio
async def test_country_without_policy_is_closed(client) -> None:
    tenant_id = await seed_tenant(tier="starter", country_code="IN")
    headers = auth_headers(user_id="u-in", tenant_id=tenant_id)

    module = await client.get("/v1/modules/hrms/access", headers=headers)
    feature = await client.get("/v1/features/multi_currency/access", headers=headers)

    assert module.status_code == 403
    assert module.json()["code"] == "COUNTRY_NOT_ACTIVE"
    assert module.json()["countryCode"] == "IN"
    assert feature.status_code == 403
    assert feature.json()["code"] == "COUNTRY_NOT_ACTIVE"


@pytest.mark.asyncio
async def test_module_outside_country_allow_list(client) -> None:
    await seed_rollout_policy("IN", enabled_modules=["hrms"])
    tenant_id = await seed_tenant(tier="enterprise", country_code="IN")

    response = await client.get(
        "/v1/modules/clinic/access", headers=auth_headers(user_id="u-in", tenant_id=tenant_id)
    )

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "MODULE_NOT_AVAILABLE"
    assert body["countryCode"] == "IN"
    assert "currentTier" not in body


@pytest.mark.asyncio
async def test_policy_lookup_failure_lets_request_through(
    client, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    await seed_plan("starter", "starter")
    tenant_id = await seed_tenant(tier="starter", country_code="IN")
    await seed_subscription(tenant_id=tenant_id, plan_id="starter", tier="starter")

    async def _broken_lookup(session, country_code):
        raise ConnectionError("policy store unreachable")

    monkeypatch.setattr(rollouts_repo, "get_policy", _broken_lookup)
    with caplog.at_level(logging.WARNING, logger="tenantguard.services.rollouts"):
        response = await client.get(
            "/v1/modules/hrms/access", headers=auth_headers(user_id="u-in", tenant_id=tenant_id)
        )

    assert response.status_code == 200
    assert response.json()["currentTier"] == "starter"
    assert "rollout_policy_lookup_failed" in caplog.text


@pytest.mark.asyncio
async def test_failed_policy_statement_does_not_poison_request_session(
    client, monkeypatch: pytest.MonkeyPatch
) -> None:
    await seed_plan("starter", "starter")
    tenant_id = await seed_tenant(tier="starter", country_code="IN")
    await seed_subscription(tenant_id=tenant_id, plan_id="starter", tier="starter")
    savepoints: list[bool] = []

    async def _failing_statement(session, country_code):
        savepoints.append(session.in_nested_transaction())
        await session.execute(text("SELECT * FROM missing_rollout_table"))

    monkeypatch.setattr(rollouts_repo, "get_policy", _failing_statement)
    response = await client.get(
        "/v1/modules/hrms/access", headers=auth_headers(user_id="u-in", tenant_id=tenant_id)
    )

    # The subscription gate runs on the same session after the failed read.
    assert response.status_code == 200
    assert response.json()["currentTier"] == "starter"
    assert savepoints == [True]


@pytest.mark.asyncio
async def test_missing_identity_is_unauthorized(client) -> None:
    response = await client.get("/v1/entitlements")
    assert response.status_code == 401
    assert response.json()["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_health_is_public(client) -> None:
    response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-Id"]
