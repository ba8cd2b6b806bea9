from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.domain.models import TenantUser
from tenantguard.persistence.guards import tenant_predicate


async def get_tenant_user(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
) -> TenantUser | None:
    # Users are only resolvable inside their own tenant.
    stmt = select(TenantUser).where(
        tenant_predicate(TenantUser, tenant_id),
        TenantUser.id == user_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
