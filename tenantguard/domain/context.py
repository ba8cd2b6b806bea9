from __future__ import annotations

from pydantic import BaseModel, Field


class TenantContext(BaseModel):
    """Resolved identity for one request.

    ``user_id``, ``role`` and ``permissions`` always describe the identity that
    authorization runs against. While impersonating that is the target user;
    ``real_user_id`` keeps the acting user for provenance.
    """

    user_id: str
    tenant_id: str
    role: str
    permissions: list[str] = Field(default_factory=list)
    country_code: str | None = None
    is_impersonating: bool = False
    real_user_id: str | None = None
    impersonation_session_id: str | None = None
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @property
    def acting_user_id(self) -> str:
        # The human behind the request, regardless of impersonation.
        return self.real_user_id or self.user_id

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions
