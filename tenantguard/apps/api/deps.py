from __future__ import annotations

import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.response import get_request_id
from tenantguard.core.config import get_settings
from tenantguard.domain.context import TenantContext
from tenantguard.persistence.db import get_session
from tenantguard.persistence.repos import subscriptions as subscriptions_repo
from tenantguard.services.audit import AuditLogger, get_request_context
from tenantguard.services.auth.roles import normalize_role, parse_permissions, role_allows
from tenantguard.services.impersonation import apply_impersonation, resolve_impersonation


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str, **context: object) -> HTTPException:
    # Use 403 for authenticated identities lacking permissions.
    detail: dict[str, object] = {"code": "AUTH_FORBIDDEN", "message": message}
    detail.update(context)
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


async def _tenant_country(db: AsyncSession, tenant_id: str) -> str | None:
    # A tenant row is optional; without one the request is not country gated.
    try:
        tenant = await subscriptions_repo.get_tenant(db, tenant_id)
    except SQLAlchemyError as exc:
        logger.warning("tenant_country_lookup_failed tenant_id=%s", tenant_id, exc_info=exc)
        return None
    if tenant is None or not tenant.country_code:
        return None
    return tenant.country_code.upper()


async def get_identity_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> TenantContext:
    """Build the caller's own context from upstream authentication headers.

    Impersonation is not applied here; routes that manage the impersonation
    session itself depend on this directly.
    """
    settings = get_settings()
    user_id = (request.headers.get(settings.auth_user_header) or "").strip()
    tenant_id = (request.headers.get(settings.auth_tenant_header) or "").strip()
    if not user_id:
        raise _auth_error("Authentication required")
    if not tenant_id:
        raise _auth_error(f"{settings.auth_tenant_header} header is required")
    try:
        role = normalize_role(request.headers.get(settings.auth_role_header) or "reader")
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc

    request_ctx = get_request_context(request)
    return TenantContext(
        user_id=user_id,
        tenant_id=tenant_id,
        role=role,
        permissions=parse_permissions(request.headers.get(settings.auth_permissions_header)),
        country_code=await _tenant_country(db, tenant_id),
        request_id=get_request_id(request),
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
    )


async def get_tenant_context(
    request: Request,
    identity: TenantContext = Depends(get_identity_context),
    db: AsyncSession = Depends(get_db),
) -> TenantContext:
    # Swap in the impersonated identity when the request carries a session token.
    raw_token = request.headers.get(get_settings().impersonation_header)
    if not raw_token:
        return identity
    resolved = await resolve_impersonation(db, raw_token=raw_token.strip(), ctx=identity)
    return apply_impersonation(identity, resolved)


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level; impersonation applies.
    async def _dependency(ctx: TenantContext = Depends(get_tenant_context)) -> TenantContext:
        if not role_allows(role=ctx.role, minimum_role=minimum_role):
            # Log RBAC denials before raising a 403 response.
            await AuditLogger(ctx).fail(
                "rbac.forbidden",
                reason="Insufficient role for this operation",
                metadata={"required_role": minimum_role},
            )
            raise _forbidden_error("Insufficient role for this operation", requiredRole=minimum_role)
        return ctx

    return _dependency


def require_permission(permission: str, *, minimum_role: str = "admin"):
    # Platform-wide operations need an explicit grant on top of the role.
    role_dependency = require_role(minimum_role)

    async def _dependency(ctx: TenantContext = Depends(role_dependency)) -> TenantContext:
        if not ctx.has_permission(permission):
            await AuditLogger(ctx).fail(
                "rbac.forbidden",
                reason="Missing permission for this operation",
                metadata={"required_permission": permission},
            )
            raise _forbidden_error(
                "Missing permission for this operation", requiredPermission=permission
            )
        return ctx

    return _dependency
