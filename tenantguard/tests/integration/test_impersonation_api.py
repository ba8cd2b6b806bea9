from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import update

from tenantguard.core.clock import utc_now
from tenantguard.core.config import get_settings
from tenantguard.domain.models import ImpersonationSession
from tenantguard.persistence.db import SessionLocal
from tenantguard.tests.utils.tenants import (
    auth_headers,
    fetch_audit_entries,
    grant_step_up,
    seed_tenant,
    seed_user,
)


@pytest.fixture(autouse=True)
def echo_codes(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STEP_UP_DEBUG_ECHO_CODE", "true")
    get_settings.cache_clear()


@pytest.fixture
async def tenant() -> str:
    tenant_id = await seed_tenant(tier="pro")
    await seed_user(tenant_id=tenant_id, role="admin", user_id="u-admin")
    await seed_user(tenant_id=tenant_id, role="staff", user_id="u-staff", full_name="Sam Staff")
    await seed_user(tenant_id=tenant_id, role="owner", user_id="u-owner")
    return tenant_id


def _admin(tenant_id: str, token: str | None = None) -> dict[str, str]:
    return auth_headers(user_id="u-admin", tenant_id=tenant_id, role="admin", impersonation_token=token)


async def _start(client, tenant_id: str) -> dict:
    await grant_step_up(client, _admin(tenant_id), "impersonate")
    response = await client.post(
        "/v1/impersonation/start",
        json={"targetUserId": "u-staff", "reasonCode": "support_ticket"},
        headers=_admin(tenant_id),
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_start_requires_fresh_step_up(client, tenant) -> None:
    response = await client.post(
        "/v1/impersonation/start", json={"targetUserId": "u-staff"}, headers=_admin(tenant)
    )

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "STEP_UP_REQUIRED"
    assert body["purpose"] == "impersonate"
    [entry] = await fetch_audit_entries(tenant_id=tenant, action="IMPERSONATION_STARTED")
    assert entry.outcome == "fail"
    assert entry.target_id == "u-staff"


@pytest.mark.asyncio
async def test_start_swaps_identity_and_keeps_provenance(client, tenant) -> None:
    started = await _start(client, tenant)
    assert started["token"].startswith("tgimp_")
    assert started["target"] == {"userId": "u-staff", "fullName": "Sam Staff", "email": "u-staff@example.test"}

    # Authorization now runs as the staff user, so the admin-only audit log is closed.
    response = await client.get("/v1/audit/events", headers=_admin(tenant, started["token"]))
    assert response.status_code == 403
    assert response.json()["requiredRole"] == "admin"

    [denied] = await fetch_audit_entries(tenant_id=tenant, action="rbac.forbidden")
    assert denied.actor_user_id == "u-staff"
    assert denied.real_user_id == "u-admin"
    assert denied.is_impersonating is True

    [started_entry] = await fetch_audit_entries(
        tenant_id=tenant, action="IMPERSONATION_STARTED", outcome="success"
    )
    assert started_entry.actor_user_id == "u-admin"


@pytest.mark.asyncio
async def test_status_and_exit(client, tenant) -> None:
    started = await _start(client, tenant)

    status = await client.get("/v1/impersonation/status", headers=_admin(tenant))
    assert status.status_code == 200
    assert status.json()["active"] is True
    assert status.json()["sessionId"] == started["sessionId"]

    exited = await client.post("/v1/impersonation/exit", headers=_admin(tenant, started["token"]))
    assert exited.status_code == 200
    assert exited.json() == {"active": False, "ended": True, "clearToken": True, "reload": True}

    reused = await client.get("/v1/entitlements", headers=_admin(tenant, started["token"]))
    assert reused.status_code == 401
    assert reused.json()["code"] == "IMPERSONATION_ENDED"
    assert reused.json()["clearToken"] is True

    status = await client.get("/v1/impersonation/status", headers=_admin(tenant))
    assert status.json()["active"] is False
    [ended] = await fetch_audit_entries(tenant_id=tenant, action="IMPERSONATION_ENDED")
    assert ended.metadata_json["end_reason"] == "exit"


@pytest.mark.asyncio
async def test_exit_without_session_is_idempotent(client, tenant) -> None:
    response = await client.post("/v1/impersonation/exit", headers=_admin(tenant))
    assert response.status_code == 200
    assert response.json()["ended"] is False


@pytest.mark.asyncio
async def test_expired_session_collapses(client, tenant) -> None:
    started = await _start(client, tenant)
    async with SessionLocal() as session:
        await session.execute(
            update(ImpersonationSession)
            .where(ImpersonationSession.id == started["sessionId"])
            .values(expires_at=utc_now() - timedelta(minutes=1))
        )
        await session.commit()

    response = await client.get("/v1/entitlements", headers=_admin(tenant, started["token"]))

    assert response.status_code == 401
    assert response.json()["code"] == "IMPERSONATION_EXPIRED"
    assert response.json()["clearToken"] is True
    [ended] = await fetch_audit_entries(tenant_id=tenant, action="IMPERSONATION_ENDED")
    assert ended.metadata_json["end_reason"] == "expired"


@pytest.mark.asyncio
async def test_second_session_is_conflict(client, tenant) -> None:
    await _start(client, tenant)
    await grant_step_up(client, _admin(tenant), "impersonate")

    response = await client.post(
        "/v1/impersonation/start", json={"targetUserId": "u-staff"}, headers=_admin(tenant)
    )

    assert response.status_code == 409
    assert response.json()["code"] == "IMPERSONATION_ALREADY_ACTIVE"


@pytest.mark.asyncio
async def test_cannot_reach_above_own_role(client, tenant) -> None:
    response = await client.post(
        "/v1/impersonation/start", json={"targetUserId": "u-owner"}, headers=_admin(tenant)
    )
    assert response.status_code == 403
    assert response.json()["code"] == "AUTH_FORBIDDEN"


@pytest.mark.asyncio
async def test_cannot_impersonate_self_or_strangers(client, tenant) -> None:
    own = await client.post(
        "/v1/impersonation/start", json={"targetUserId": "u-admin"}, headers=_admin(tenant)
    )
    stranger = await client.post(
        "/v1/impersonation/start", json={"targetUserId": "u-ghost"}, headers=_admin(tenant)
    )
    assert own.status_code == 400
    assert own.json()["code"] == "INVALID_TARGET"
    assert stranger.status_code == 404
    assert stranger.json()["code"] == "TARGET_NOT_FOUND"


@pytest.mark.asyncio
async def test_token_belongs_to_its_actor(client, tenant) -> None:
    started = await _start(client, tenant)
    other_admin = auth_headers(
        user_id="u-other", tenant_id=tenant, role="admin", impersonation_token=started["token"]
    )
    response = await client.get("/v1/entitlements", headers=other_admin)
    assert response.status_code == 401
    assert response.json()["code"] == "IMPERSONATION_INVALID"
