from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import get_db, require_role
from tenantguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantguard.apps.api.response import CamelModel
from tenantguard.core.clock import as_utc
from tenantguard.domain.context import TenantContext
from tenantguard.persistence.repos import audit as audit_repo


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEntryResponse(CamelModel):
    id: int
    occurred_at: str
    tenant_id: str
    actor_user_id: str
    action: str
    target_type: str | None
    target_id: str | None
    outcome: str
    failure_reason: str | None
    before_value: Any = None
    after_value: Any = None
    is_impersonating: bool
    real_user_id: str | None
    ip_address: str | None
    user_agent: str | None
    request_id: str | None
    metadata: dict[str, Any] | None


class AuditEntriesPage(CamelModel):
    items: list[AuditEntryResponse]
    next_offset: int | None


def _to_response(entry) -> AuditEntryResponse:
    # Serialize audit entry datetimes to ISO 8601 for API clients.
    return AuditEntryResponse(
        id=entry.id,
        occurred_at=as_utc(entry.occurred_at).isoformat(),
        tenant_id=entry.tenant_id,
        actor_user_id=entry.actor_user_id,
        action=entry.action,
        target_type=entry.target_type,
        target_id=entry.target_id,
        outcome=entry.outcome,
        failure_reason=entry.failure_reason,
        before_value=entry.before_value,
        after_value=entry.after_value,
        is_impersonating=bool(entry.is_impersonating),
        real_user_id=entry.real_user_id,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        request_id=entry.request_id,
        metadata=entry.metadata_json,
    )


def _database_error(message: str) -> HTTPException:
    return HTTPException(status_code=500, detail={"code": "DATABASE_ERROR", "message": message})


@router.get("/events", response_model=AuditEntriesPage)
async def list_audit_events(
    action: str | None = None,
    outcome: str | None = None,
    actor_user_id: str | None = Query(default=None, alias="actorUserId"),
    target_type: str | None = Query(default=None, alias="targetType"),
    target_id: str | None = Query(default=None, alias="targetId"),
    is_impersonating: bool | None = Query(default=None, alias="isImpersonating"),
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    ctx: TenantContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> AuditEntriesPage:
    # Entries are always scoped to the caller's tenant.
    try:
        entries = await audit_repo.list_entries(
            db,
            tenant_id=ctx.tenant_id,
            action=action,
            outcome=outcome,
            actor_user_id=actor_user_id,
            target_type=target_type,
            target_id=target_id,
            is_impersonating=is_impersonating,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise _database_error("Database error while fetching audit entries") from exc

    next_offset = None
    if len(entries) > limit:
        entries = entries[:limit]
        next_offset = offset + limit

    return AuditEntriesPage(items=[_to_response(entry) for entry in entries], next_offset=next_offset)


@router.get("/events/{entry_id}", response_model=AuditEntryResponse)
async def get_audit_event(
    entry_id: int,
    ctx: TenantContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> AuditEntryResponse:
    try:
        entry = await audit_repo.get_entry_by_id(db, tenant_id=ctx.tenant_id, entry_id=entry_id)
    except SQLAlchemyError as exc:
        raise _database_error("Database error while fetching audit entry") from exc
    if entry is None:
        raise HTTPException(
            status_code=404, detail={"code": "NOT_FOUND", "message": "Audit entry not found"}
        )
    return _to_response(entry)
