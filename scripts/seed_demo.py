from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
import sys
from uuid import uuid4

from sqlalchemy import select

from tenantguard.core.clock import utc_now
from tenantguard.domain.models import (
    Addon,
    CountryRolloutPolicy,
    Plan,
    Subscription,
    Tenant,
    TenantAddon,
    TenantUser,
)
from tenantguard.persistence.db import SessionLocal


DEMO_TENANT_ID = "t1"
DEMO_TENANT_NAME = "Demo Studio"
DEMO_COUNTRY = "IN"


@dataclass(frozen=True)
class DemoUser:
    # Stable ids so the seeded headers in the README keep working.
    id: str
    email: str
    full_name: str
    role: str


def build_demo_plans() -> tuple[Plan, ...]:
    return (
        Plan(id="free", name="Free", tier="free", features_json={}),
        Plan(id="starter", name="Starter", tier="starter", features_json={}),
        Plan(id="pro", name="Pro", tier="pro", features_json={"multi_currency": True}),
        Plan(
            id="enterprise",
            name="Enterprise",
            tier="enterprise",
            features_json={"multi_currency": True, "ai_insights": True, "white_label": True},
        ),
    )


def build_demo_users() -> tuple[DemoUser, ...]:
    return (
        DemoUser(id="u-owner", email="owner@demo.test", full_name="Olivia Owner", role="owner"),
        DemoUser(id="u-admin", email="admin@demo.test", full_name="Arjun Admin", role="admin"),
        DemoUser(id="u-staff", email="staff@demo.test", full_name="Sam Staff", role="staff"),
    )


def build_demo_addons() -> tuple[Addon, ...]:
    return (
        Addon(code="hrms", name="HRMS", category="people", trial_days=14),
        Addon(code="payroll", name="Payroll", category="people", trial_days=14),
        Addon(code="payroll-india", name="Payroll India", category="people", trial_days=14),
        Addon(code="clinic", name="Clinic", category="vertical", trial_days=14),
    )


async def seed_demo() -> int:
    # Use the shared async session factory so env config matches the API container.
    now = utc_now()
    async with SessionLocal() as session:
        existing = await session.get(Tenant, DEMO_TENANT_ID)
        if existing is not None:
            print("Demo tenant already seeded; skipping.")
            return 0

        for plan in build_demo_plans():
            if await session.get(Plan, plan.id) is None:
                session.add(plan)
        for addon in build_demo_addons():
            if await session.get(Addon, addon.code) is None:
                session.add(addon)

        session.add(
            Tenant(
                id=DEMO_TENANT_ID,
                name=DEMO_TENANT_NAME,
                country_code=DEMO_COUNTRY,
                subscription_tier="starter",
            )
        )
        for user in build_demo_users():
            session.add(
                TenantUser(
                    id=user.id,
                    tenant_id=DEMO_TENANT_ID,
                    email=user.email,
                    full_name=user.full_name,
                    role=user.role,
                    permissions_json=[],
                )
            )
        session.add(
            Subscription(
                id=uuid4().hex,
                tenant_id=DEMO_TENANT_ID,
                plan_id="starter",
                tier="starter",
                status="active",
                current_period_end=now + timedelta(days=30),
                is_current=True,
            )
        )
        session.add(
            TenantAddon(
                tenant_id=DEMO_TENANT_ID,
                addon_code="hrms",
                status="trial",
                subscription_status="trialing",
                trial_ends_at=now + timedelta(days=14),
            )
        )

        policy = (
            await session.execute(
                select(CountryRolloutPolicy).where(CountryRolloutPolicy.country_code == DEMO_COUNTRY)
            )
        ).scalar_one_or_none()
        if policy is None:
            session.add(
                CountryRolloutPolicy(
                    country_code=DEMO_COUNTRY,
                    is_active=True,
                    enabled_modules=[],
                    enabled_features={"multi_currency": True},
                    notes="Demo rollout",
                    updated_by="seed_demo",
                )
            )

        await session.commit()
        print(f"Seeded demo tenant {DEMO_TENANT_ID} with {len(build_demo_users())} users.")
        return 0


def main() -> int:
    # Surface clear failures and exit non-zero so CI/dev scripts can detect issues.
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
