from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.domain.models import AuditLogEntry
from tenantguard.persistence.guards import tenant_predicate


async def list_entries(
    session: AsyncSession,
    *,
    tenant_id: str,
    action: str | None = None,
    outcome: str | None = None,
    actor_user_id: str | None = None,
    target_type: str | None = None,
    target_id: str | None = None,
    is_impersonating: bool | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditLogEntry]:
    # Scope all audit queries to a tenant to prevent cross-tenant leakage.
    stmt = select(AuditLogEntry).where(tenant_predicate(AuditLogEntry, tenant_id))
    if action:
        stmt = stmt.where(AuditLogEntry.action == action)
    if outcome:
        stmt = stmt.where(AuditLogEntry.outcome == outcome)
    if actor_user_id:
        stmt = stmt.where(AuditLogEntry.actor_user_id == actor_user_id)
    if target_type:
        stmt = stmt.where(AuditLogEntry.target_type == target_type)
    if target_id:
        stmt = stmt.where(AuditLogEntry.target_id == target_id)
    if is_impersonating is not None:
        stmt = stmt.where(AuditLogEntry.is_impersonating.is_(is_impersonating))
    if occurred_from:
        stmt = stmt.where(AuditLogEntry.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditLogEntry.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditLogEntry.occurred_at.desc(), AuditLogEntry.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_entry_by_id(
    session: AsyncSession,
    *,
    tenant_id: str,
    entry_id: int,
) -> AuditLogEntry | None:
    stmt = select(AuditLogEntry).where(
        AuditLogEntry.id == entry_id,
        tenant_predicate(AuditLogEntry, tenant_id),
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
