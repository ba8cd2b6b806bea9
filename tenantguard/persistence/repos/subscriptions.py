from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.domain.models import Plan, Subscription, Tenant
from tenantguard.persistence.guards import require_tenant_id, tenant_predicate


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    require_tenant_id(tenant_id)
    return await session.get(Tenant, tenant_id)


async def get_current_subscription(
    session: AsyncSession,
    *,
    tenant_id: str,
) -> Subscription | None:
    # Superseded rows stay for history; only the current row drives the gate.
    stmt = (
        select(Subscription)
        .where(
            tenant_predicate(Subscription, tenant_id),
            Subscription.is_current.is_(True),
        )
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_plan(session: AsyncSession, plan_id: str) -> Plan | None:
    return await session.get(Plan, plan_id)


async def get_default_plan_for_tier(session: AsyncSession, tier: str) -> Plan | None:
    # Pick the oldest active plan of a tier as its default catalog entry.
    result = await session.execute(
        select(Plan)
        .where(Plan.tier == tier, Plan.is_active.is_(True))
        .order_by(Plan.created_at.asc(), Plan.id.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_subscriptions_for_expiry_sync(session: AsyncSession) -> list[Subscription]:
    # Current rows in a time-bounded state; the sync decides which have lapsed.
    result = await session.execute(
        select(Subscription)
        .where(
            Subscription.is_current.is_(True),
            Subscription.status.in_(["trialing", "active", "grace_period"]),
        )
        .order_by(Subscription.tenant_id)
    )
    return list(result.scalars().all())
