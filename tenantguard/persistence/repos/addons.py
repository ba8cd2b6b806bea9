from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.domain.models import TenantAddon
from tenantguard.persistence.guards import tenant_predicate


async def get_tenant_addon(
    session: AsyncSession,
    *,
    tenant_id: str,
    addon_code: str,
) -> TenantAddon | None:
    # Load the single install row for (tenant, add-on).
    stmt = select(TenantAddon).where(
        tenant_predicate(TenantAddon, tenant_id),
        TenantAddon.addon_code == addon_code,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_tenant_addons(
    session: AsyncSession,
    *,
    tenant_id: str,
    addon_codes: list[str] | None = None,
) -> list[TenantAddon]:
    # Return every install row for a tenant, including cancelled ones kept for history.
    stmt = select(TenantAddon).where(tenant_predicate(TenantAddon, tenant_id))
    if addon_codes is not None:
        if not addon_codes:
            return []
        stmt = stmt.where(TenantAddon.addon_code.in_(addon_codes))
    result = await session.execute(stmt.order_by(TenantAddon.addon_code))
    return list(result.scalars().all())


async def list_addons_for_expiry_sync(session: AsyncSession) -> list[TenantAddon]:
    # Only installed add-ons still in a time-bounded billing state can lapse.
    result = await session.execute(
        select(TenantAddon)
        .where(
            TenantAddon.status.in_(["active", "trial"]),
            TenantAddon.subscription_status.in_(["trialing", "trial", "active", "grace_period", "grace"]),
        )
        .order_by(TenantAddon.id)
    )
    return list(result.scalars().all())
