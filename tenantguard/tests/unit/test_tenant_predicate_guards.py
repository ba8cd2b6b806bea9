from __future__ import annotations

import pytest

from tenantguard.core.config import get_settings
from tenantguard.persistence.guards import TenantPredicateError
from tenantguard.persistence.repos import addons as addons_repo
from tenantguard.persistence.repos import audit as audit_repo
from tenantguard.persistence.repos import subscriptions as subscriptions_repo
from tenantguard.persistence.repos import users as users_repo


class _UnreachableSession:
    # Any query reaching the session means the tenant guard was bypassed.
    async def execute(self, *args, **kwargs):
        raise AssertionError("query executed without a tenant predicate")

    async def get(self, *args, **kwargs):
        raise AssertionError("row loaded without a tenant predicate")


@pytest.fixture
def session() -> _UnreachableSession:
    return _UnreachableSession()


def _enable_guard(monkeypatch: pytest.MonkeyPatch) -> None:
    # Force tenant predicate enforcement for guard tests.
    monkeypatch.setenv("AUTHZ_REQUIRE_TENANT_PREDICATE", "true")
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_addon_repo_requires_tenant_predicate(monkeypatch: pytest.MonkeyPatch, session) -> None:
    _enable_guard(monkeypatch)
    with pytest.raises(TenantPredicateError):
        await addons_repo.get_tenant_addon(session, tenant_id=None, addon_code="hrms")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await addons_repo.list_tenant_addons(session, tenant_id="")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_subscription_repo_requires_tenant_predicate(monkeypatch: pytest.MonkeyPatch, session) -> None:
    _enable_guard(monkeypatch)
    with pytest.raises(TenantPredicateError):
        await subscriptions_repo.get_tenant(session, None)  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await subscriptions_repo.get_current_subscription(session, tenant_id=None)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_user_and_audit_repos_require_tenant_predicate(monkeypatch: pytest.MonkeyPatch, session) -> None:
    _enable_guard(monkeypatch)
    with pytest.raises(TenantPredicateError):
        await users_repo.get_tenant_user(session, tenant_id=None, user_id="u1")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await audit_repo.list_entries(session, tenant_id=None)  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await audit_repo.get_entry_by_id(session, tenant_id=None, entry_id=1)  # type: ignore[arg-type]
