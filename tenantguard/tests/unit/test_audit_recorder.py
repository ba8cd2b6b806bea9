from __future__ import annotations

import logging

import pytest
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import JSONResponse, Response

from tenantguard.domain.context import TenantContext
from tenantguard.persistence.db import SessionLocal
from tenantguard.services import audit as audit_service
from tenantguard.services.audit import (
    AuditLogger,
    audited,
    failure_reason,
    record_audit,
    sanitize_metadata,
)
from tenantguard.tests.utils.tenants import fetch_audit_entries


def _ctx(**overrides) -> TenantContext:
    values = {"user_id": "u-target", "tenant_id": "t-audit", "role": "admin", "request_id": "req-1"}
    values.update(overrides)
    return TenantContext(**values)


def test_sanitize_redacts_nested_secrets() -> None:
    payload = {
        "code": "123456",
        "country_code": "IN",
        "addon_code": "hrms",
        "nested": {"api_token": "abc", "items": [{"password": "x", "ok": 1}]},
        "Authorization": "Bearer abc",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["code"] == "[REDACTED]"
    assert sanitized["country_code"] == "IN"
    assert sanitized["addon_code"] == "hrms"
    assert sanitized["nested"]["api_token"] == "[REDACTED]"
    assert sanitized["nested"]["items"][0] == {"password": "[REDACTED]", "ok": 1}
    assert sanitized["Authorization"] == "[REDACTED]"


def test_failure_reason_prefers_denial_message() -> None:
    denial = HTTPException(status_code=403, detail={"code": "AUTH_FORBIDDEN", "message": "Nope"})
    assert failure_reason(denial) == "Nope"
    assert failure_reason(HTTPException(status_code=404, detail="missing")) == "missing"
    assert failure_reason(RuntimeError()) == "RuntimeError"


@pytest.mark.asyncio
async def test_entries_without_actor_are_skipped(database) -> None:
    written = await record_audit(tenant_id="t-audit", actor_user_id=None, action="noop")
    assert written is False
    assert await fetch_audit_entries(tenant_id="t-audit") == []


@pytest.mark.asyncio
async def test_impersonated_entries_keep_both_identities(database) -> None:
    ctx = _ctx(is_impersonating=True, real_user_id="u-admin")
    await AuditLogger(ctx).success("profile.viewed", target_type="user", target_id="u-target")

    [entry] = await fetch_audit_entries(tenant_id="t-audit", action="profile.viewed")
    assert entry.actor_user_id == "u-target"
    assert entry.real_user_id == "u-admin"
    assert entry.is_impersonating is True
    assert entry.request_id == "req-1"


@pytest.mark.asyncio
async def test_write_failure_is_logged_not_raised(
    database, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    class _BrokenSessionFactory:
        def __call__(self):
            raise RuntimeError("database is gone")

    monkeypatch.setattr(audit_service, "SessionLocal", _BrokenSessionFactory())
    with caplog.at_level(logging.WARNING, logger="tenantguard.services.audit"):
        written = await AuditLogger(_ctx()).success("policy.updated")
    assert written is False
    assert "audit_entry_write_failed" in caplog.text


@audited("widget.renamed", target_type="widget", target_id_param="widget_id")
async def _rename_widget(widget_id: str, ctx: TenantContext, db: AsyncSession, fail: bool = False):
    if fail:
        raise HTTPException(status_code=409, detail={"code": "CONFLICT", "message": "Name taken"})
    return {"id": widget_id}


@audited("widget.deleted", target_type="widget")
async def _delete_widget(ctx: TenantContext, db: AsyncSession) -> Response:
    return JSONResponse({"code": "NOT_FOUND"}, status_code=404)


@pytest.mark.asyncio
async def test_decorator_records_single_success(database) -> None:
    async with SessionLocal() as session:
        result = await _rename_widget(widget_id="w1", ctx=_ctx(), db=session)
    assert result == {"id": "w1"}

    entries = await fetch_audit_entries(tenant_id="t-audit", action="widget.renamed")
    assert [(e.outcome, e.target_id) for e in entries] == [("success", "w1")]


@pytest.mark.asyncio
async def test_decorator_records_failure_and_reraises(database) -> None:
    async with SessionLocal() as session:
        with pytest.raises(HTTPException):
            await _rename_widget(widget_id="w2", ctx=_ctx(), db=session, fail=True)

    [entry] = await fetch_audit_entries(tenant_id="t-audit", action="widget.renamed")
    assert entry.outcome == "fail"
    assert entry.failure_reason == "Name taken"
    assert entry.target_id == "w2"


@pytest.mark.asyncio
async def test_decorator_skips_error_responses(database) -> None:
    async with SessionLocal() as session:
        response = await _delete_widget(ctx=_ctx(), db=session)
    assert response.status_code == 404
    assert await fetch_audit_entries(tenant_id="t-audit", action="widget.deleted") == []


@pytest.mark.asyncio
async def test_decorator_keeps_handler_error_when_rollback_fails(
    database, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def _broken_rollback() -> None:
        raise RuntimeError("connection reset during rollback")

    async with SessionLocal() as session:
        monkeypatch.setattr(session, "rollback", _broken_rollback)
        with pytest.raises(HTTPException) as exc_info:
            await _rename_widget(widget_id="w3", ctx=_ctx(), db=session, fail=True)

    assert exc_info.value.status_code == 409
    [entry] = await fetch_audit_entries(tenant_id="t-audit", action="widget.renamed")
    assert entry.outcome == "fail"
    assert entry.failure_reason == "Name taken"
