from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from httpx import AsyncClient
from sqlalchemy import select

from tenantguard.domain.models import (
    Addon,
    AuditLogEntry,
    CountryRolloutPolicy,
    Plan,
    Subscription,
    Tenant,
    TenantAddon,
    TenantUser,
)
from tenantguard.persistence.db import SessionLocal


def _utc_now() -> datetime:
    # Keep timestamps consistent for test-generated rows.
    return datetime.now(timezone.utc)


def auth_headers(
    *,
    user_id: str,
    tenant_id: str,
    role: str = "reader",
    permissions: list[str] | None = None,
    impersonation_token: str | None = None,
) -> dict[str, str]:
    # Mirror what the upstream authentication proxy forwards.
    headers = {"X-User-Id": user_id, "X-Tenant-Id": tenant_id, "X-User-Role": role}
    if permissions:
        headers["X-User-Permissions"] = ",".join(permissions)
    if impersonation_token:
        headers["X-Impersonation-Token"] = impersonation_token
    return headers


async def seed_tenant(
    *,
    tenant_id: str | None = None,
    country_code: str | None = None,
    tier: str = "free",
) -> str:
    tenant_id = tenant_id or f"t-{uuid4().hex[:12]}"
    async with SessionLocal() as session:
        session.add(
            Tenant(id=tenant_id, name=f"Tenant {tenant_id}", country_code=country_code, subscription_tier=tier)
        )
        await session.commit()
    return tenant_id


async def seed_user(
    *,
    tenant_id: str,
    role: str,
    user_id: str | None = None,
    full_name: str | None = None,
    email: str | None = None,
    permissions: list[str] | None = None,
    is_active: bool = True,
) -> str:
    user_id = user_id or f"u-{uuid4().hex[:12]}"
    async with SessionLocal() as session:
        session.add(
            TenantUser(
                id=user_id,
                tenant_id=tenant_id,
                email=email or f"{user_id}@example.test",
                full_name=full_name or user_id,
                role=role,
                permissions_json=permissions or [],
                is_active=is_active,
            )
        )
        await session.commit()
    return user_id


async def seed_plan(plan_id: str, tier: str, features: dict[str, Any] | None = None) -> str:
    async with SessionLocal() as session:
        session.add(Plan(id=plan_id, name=plan_id.title(), tier=tier, features_json=features or {}))
        await session.commit()
    return plan_id


async def seed_subscription(
    *,
    tenant_id: str,
    plan_id: str,
    tier: str,
    status: str = "active",
    trial_ends_at: datetime | None = None,
    current_period_end: datetime | None = None,
) -> str:
    subscription_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            Subscription(
                id=subscription_id,
                tenant_id=tenant_id,
                plan_id=plan_id,
                tier=tier,
                status=status,
                trial_ends_at=trial_ends_at,
                current_period_end=current_period_end,
                is_current=True,
            )
        )
        await session.commit()
    return subscription_id


async def seed_addon(
    *,
    tenant_id: str,
    addon_code: str,
    status: str = "active",
    subscription_status: str = "active",
    trial_ends_at: datetime | None = None,
    paid_until: datetime | None = None,
    grace_until: datetime | None = None,
) -> None:
    async with SessionLocal() as session:
        if await session.get(Addon, addon_code) is None:
            session.add(Addon(code=addon_code, name=addon_code.title()))
        session.add(
            TenantAddon(
                tenant_id=tenant_id,
                addon_code=addon_code,
                status=status,
                subscription_status=subscription_status,
                trial_ends_at=trial_ends_at,
                paid_until=paid_until,
                grace_until=grace_until,
            )
        )
        await session.commit()


async def seed_rollout_policy(
    country_code: str,
    *,
    is_active: bool = True,
    enabled_modules: list[str] | None = None,
    enabled_features: dict[str, bool] | None = None,
) -> None:
    async with SessionLocal() as session:
        session.add(
            CountryRolloutPolicy(
                country_code=country_code,
                is_active=is_active,
                enabled_modules=enabled_modules or [],
                enabled_features=enabled_features or {},
                updated_at=_utc_now(),
            )
        )
        await session.commit()


async def fetch_audit_entries(
    *,
    tenant_id: str,
    action: str | None = None,
    outcome: str | None = None,
) -> list[AuditLogEntry]:
    # Read audit rows directly for assertions without using the API.
    async with SessionLocal() as session:
        stmt = select(AuditLogEntry).where(AuditLogEntry.tenant_id == tenant_id)
        if action:
            stmt = stmt.where(AuditLogEntry.action == action)
        if outcome:
            stmt = stmt.where(AuditLogEntry.outcome == outcome)
        result = await session.execute(stmt.order_by(AuditLogEntry.id))
        return list(result.scalars().all())


async def grant_step_up(client: AsyncClient, headers: dict[str, str], purpose: str) -> dict[str, Any]:
    # Requires STEP_UP_DEBUG_ECHO_CODE so the issued code comes back in the response.
    issued = await client.post("/v1/step-up/challenges", json={"purpose": purpose}, headers=headers)
    assert issued.status_code == 201, issued.text
    code = issued.json()["code"]
    verified = await client.post(
        "/v1/step-up/verify", json={"purpose": purpose, "code": code}, headers=headers
    )
    assert verified.status_code == 200, verified.text
    return verified.json()


def days_from_now(days: float) -> datetime:
    return _utc_now() + timedelta(days=days)
