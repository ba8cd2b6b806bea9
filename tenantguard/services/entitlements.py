from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
import logging
import math
from typing import Iterable, Mapping

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.clock import as_utc, utc_now
from tenantguard.core.config import get_settings
from tenantguard.domain.models import TenantAddon
from tenantguard.persistence.repos import addons as addons_repo


logger = logging.getLogger(__name__)

STATE_ACTIVE = "active"
STATE_TRIAL = "trial"
STATE_GRACE = "grace"
STATE_EXPIRED = "expired"
STATE_CANCELLED = "cancelled"
STATE_NOT_INSTALLED = "not_installed"

ADDON_ACTIVE = "ADDON_ACTIVE"
ADDON_TRIAL_ACTIVE = "ADDON_TRIAL_ACTIVE"
ADDON_GRACE_PERIOD = "ADDON_GRACE_PERIOD"
ADDON_NOT_INSTALLED = "ADDON_NOT_INSTALLED"
ADDON_TRIAL_EXPIRED = "ADDON_TRIAL_EXPIRED"
ADDON_EXPIRED = "ADDON_EXPIRED"
ADDON_CANCELLED = "ADDON_CANCELLED"
ADDON_DEPENDENCY_MISSING = "ADDON_DEPENDENCY_MISSING"
ADDON_DEPENDENCY_EXPIRED = "ADDON_DEPENDENCY_EXPIRED"

# Install states that can carry an entitlement at all.
_USABLE_INSTALL_STATUSES = {"active", "trial"}

_STATUS_ALIASES = {
    "trial": "trialing",
    "grace": "grace_period",
    "canceled": "cancelled",
}

_INSTALL_STATUS_ALIASES = {
    "canceled": "cancelled",
}

# Any one entitled dependency satisfies the add-on.
ADDON_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "payroll": ("hrms",),
    "payroll-india": ("hrms-india", "hrms"),
    "payroll-malaysia": ("hrms-malaysia", "hrms"),
    "payroll-uk": ("hrms-uk", "hrms"),
}

REGIONAL_SUFFIXES: tuple[str, ...] = ("-india", "-malaysia", "-uk", "-uae")
HRMS_VARIANTS: tuple[str, ...] = ("hrms", "hrms-india", "hrms-malaysia", "hrms-uk")
PAYROLL_VARIANTS: tuple[str, ...] = ("payroll", "payroll-india", "payroll-malaysia", "payroll-uk")

# Payroll is checked before HRMS so the directory reports payroll when both exist.
EMPLOYEE_DIRECTORY_ADDONS: tuple[str, ...] = PAYROLL_VARIANTS + HRMS_VARIANTS


@dataclass(frozen=True)
class EntitlementRecord:
    # Snapshot of a tenant add-on install; the evaluator never touches storage.
    tenant_id: str
    addon_code: str
    status: str
    subscription_status: str
    installed_at: datetime | None = None
    trial_ends_at: datetime | None = None
    paid_until: datetime | None = None
    grace_until: datetime | None = None

    @classmethod
    def from_row(cls, row: TenantAddon) -> EntitlementRecord:
        return cls(
            tenant_id=row.tenant_id,
            addon_code=row.addon_code,
            status=row.status,
            subscription_status=row.subscription_status,
            installed_at=as_utc(row.installed_at),
            trial_ends_at=as_utc(row.trial_ends_at),
            paid_until=as_utc(row.paid_until),
            grace_until=as_utc(row.grace_until),
        )


@dataclass(frozen=True)
class EntitlementDecision:
    entitled: bool
    state: str
    reason_code: str
    addon_code: str | None = None
    valid_until: datetime | None = None
    days_remaining: int | None = None
    message: str = ""

    def to_payload(self) -> dict[str, object]:
        return {
            "addon": self.addon_code,
            "entitled": self.entitled,
            "state": self.state,
            "reasonCode": self.reason_code,
            "validUntil": self.valid_until.isoformat() if self.valid_until else None,
            "daysRemaining": self.days_remaining,
            "message": self.message,
        }


@dataclass(frozen=True)
class DependencyDecision:
    satisfied: bool
    reason_code: str | None = None
    dependency: str | None = None
    satisfied_by: str | None = None


def normalize_status(value: str | None) -> str:
    # Compare statuses case-insensitively and fold legacy spellings.
    normalized = (value or "").strip().lower()
    return _STATUS_ALIASES.get(normalized, normalized)


def normalize_install_status(value: str | None) -> str:
    # Install status keeps "trial"; only billing status folds it to "trialing".
    normalized = (value or "").strip().lower()
    return _INSTALL_STATUS_ALIASES.get(normalized, normalized)


def _days_remaining(end: datetime, now: datetime) -> int:
    return max(0, math.ceil((end - now).total_seconds() / 86400))


def _grace_end(record: EntitlementRecord) -> datetime | None:
    # Grace extends the paid window and never shortens it.
    candidates = [value for value in (record.grace_until, record.paid_until) if value is not None]
    if not candidates:
        return None
    return max(candidates)


def evaluate_entitlement(record: EntitlementRecord | None, now: datetime) -> EntitlementDecision:
    """Evaluate one add-on install at ``now``.

    Validity ends are inclusive: the instant equal to ``trial_ends_at``,
    ``paid_until`` or the grace end is still entitled.
    """
    if record is None:
        return EntitlementDecision(
            entitled=False,
            state=STATE_NOT_INSTALLED,
            reason_code=ADDON_NOT_INSTALLED,
            message="Add-on is not installed",
        )

    now = as_utc(now)
    code = record.addon_code
    if normalize_install_status(record.status) not in _USABLE_INSTALL_STATUSES:
        return EntitlementDecision(
            entitled=False,
            state=STATE_CANCELLED,
            reason_code=ADDON_CANCELLED,
            addon_code=code,
            message="Add-on has been cancelled or disabled",
        )

    subscription_status = normalize_status(record.subscription_status)

    if subscription_status == "trialing":
        trial_end = as_utc(record.trial_ends_at)
        # A trial without an end date is a data-integrity problem, never an open trial.
        if trial_end is not None and now <= trial_end:
            days = _days_remaining(trial_end, now)
            return EntitlementDecision(
                entitled=True,
                state=STATE_TRIAL,
                reason_code=ADDON_TRIAL_ACTIVE,
                addon_code=code,
                valid_until=trial_end,
                days_remaining=days,
                message=f"Trial active, {days} days remaining",
            )
        return EntitlementDecision(
            entitled=False,
            state=STATE_EXPIRED,
            reason_code=ADDON_TRIAL_EXPIRED,
            addon_code=code,
            valid_until=trial_end,
            message="Your trial has ended. Renew to continue.",
        )

    if subscription_status == "active":
        paid_until = as_utc(record.paid_until)
        if paid_until is None:
            return EntitlementDecision(
                entitled=True,
                state=STATE_ACTIVE,
                reason_code=ADDON_ACTIVE,
                addon_code=code,
                message="Subscription active",
            )
        if now <= paid_until:
            return EntitlementDecision(
                entitled=True,
                state=STATE_ACTIVE,
                reason_code=ADDON_ACTIVE,
                addon_code=code,
                valid_until=paid_until,
                days_remaining=_days_remaining(paid_until, now),
                message="Subscription active",
            )
        return EntitlementDecision(
            entitled=False,
            state=STATE_EXPIRED,
            reason_code=ADDON_EXPIRED,
            addon_code=code,
            valid_until=paid_until,
            message="Subscription has expired. Renew to continue.",
        )

    if subscription_status == "grace_period":
        grace_end = as_utc(_grace_end(record))
        if grace_end is not None and now <= grace_end:
            return EntitlementDecision(
                entitled=True,
                state=STATE_GRACE,
                reason_code=ADDON_GRACE_PERIOD,
                addon_code=code,
                valid_until=grace_end,
                days_remaining=_days_remaining(grace_end, now),
                message=f"You're in grace period until {grace_end.date().isoformat()}.",
            )
        return EntitlementDecision(
            entitled=False,
            state=STATE_EXPIRED,
            reason_code=ADDON_EXPIRED,
            addon_code=code,
            valid_until=grace_end,
            message="Subscription has expired. Renew to continue.",
        )

    if subscription_status == "cancelled":
        return EntitlementDecision(
            entitled=False,
            state=STATE_CANCELLED,
            reason_code=ADDON_CANCELLED,
            addon_code=code,
            message="Add-on subscription has been cancelled",
        )

    # past_due outside grace, suspended, expired and unknown states.
    return EntitlementDecision(
        entitled=False,
        state=STATE_EXPIRED,
        reason_code=ADDON_EXPIRED,
        addon_code=code,
        valid_until=as_utc(record.paid_until),
        message="Add-on subscription has expired",
    )


def is_entitled(record: EntitlementRecord | None, now: datetime) -> bool:
    return evaluate_entitlement(record, now).entitled


def evaluate_dependencies(
    records: Mapping[str, EntitlementRecord | None],
    dependencies: Iterable[str],
    now: datetime,
) -> DependencyDecision:
    # Logical OR: one entitled dependency satisfies the whole set.
    dependency_codes = list(dependencies)
    if not dependency_codes:
        return DependencyDecision(satisfied=True)

    previously_installed: str | None = None
    for code in dependency_codes:
        record = records.get(code)
        if is_entitled(record, now):
            return DependencyDecision(satisfied=True, satisfied_by=code)
        if record is not None and previously_installed is None:
            previously_installed = code

    if previously_installed is not None:
        return DependencyDecision(
            satisfied=False,
            reason_code=ADDON_DEPENDENCY_EXPIRED,
            dependency=previously_installed,
        )
    return DependencyDecision(
        satisfied=False,
        reason_code=ADDON_DEPENDENCY_MISSING,
        dependency=dependency_codes[0],
    )


def base_addon_code(addon_code: str) -> str:
    # hrms-india -> hrms; codes without a regional suffix are returned unchanged.
    for suffix in REGIONAL_SUFFIXES:
        if addon_code.endswith(suffix):
            return addon_code[: -len(suffix)]
    return addon_code


def _entitlement_unavailable() -> HTTPException:
    # Storage failures deny access; paid entitlements never fail open.
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "code": "ENTITLEMENT_UNAVAILABLE",
            "message": "Unable to verify add-on access, please retry",
        },
    )


def _addon_denied(
    *,
    code: str,
    addon_code: str,
    message: str,
    valid_until: datetime | None = None,
    dependency: str | None = None,
) -> HTTPException:
    settings = get_settings()
    detail: dict[str, object] = {
        "code": code,
        "error": "ADDON_ACCESS_DENIED",
        "message": message,
        "addon": addon_code,
        "upgradeUrl": settings.marketplace_url,
    }
    if valid_until is not None:
        detail["validUntil"] = valid_until.isoformat()
    if dependency is not None:
        detail["dependency"] = dependency
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


async def get_addon_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    addon_code: str,
) -> EntitlementRecord | None:
    # Regional variants fall back to the base add-on when not installed directly.
    row = await addons_repo.get_tenant_addon(session, tenant_id=tenant_id, addon_code=addon_code)
    if row is None:
        base_code = base_addon_code(addon_code)
        if base_code != addon_code:
            row = await addons_repo.get_tenant_addon(session, tenant_id=tenant_id, addon_code=base_code)
    if row is None:
        return None
    return EntitlementRecord.from_row(row)


async def _load_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    addon_code: str,
) -> EntitlementRecord | None:
    try:
        return await get_addon_record(session, tenant_id=tenant_id, addon_code=addon_code)
    except SQLAlchemyError as exc:
        logger.error(
            "entitlement_lookup_failed tenant_id=%s addon=%s",
            tenant_id,
            addon_code,
            exc_info=exc,
        )
        raise _entitlement_unavailable() from exc


async def get_addon_entitlement(
    session: AsyncSession,
    *,
    tenant_id: str,
    addon_code: str,
    now: datetime | None = None,
) -> EntitlementDecision:
    record = await _load_record(session, tenant_id=tenant_id, addon_code=addon_code)
    decision = evaluate_entitlement(record, now or utc_now())
    if decision.addon_code is None:
        decision = replace(decision, addon_code=addon_code)
    return decision


async def check_addon_dependencies(
    session: AsyncSession,
    *,
    tenant_id: str,
    addon_code: str,
    dependencies: Iterable[str] | None = None,
    now: datetime | None = None,
) -> DependencyDecision:
    # Merge built-in dependencies with caller-supplied ones, preserving order.
    codes = list(ADDON_DEPENDENCIES.get(addon_code, ()))
    for code in dependencies or ():
        if code not in codes:
            codes.append(code)
    records = {
        code: await _load_record(session, tenant_id=tenant_id, addon_code=code) for code in codes
    }
    return evaluate_dependencies(records, codes, now or utc_now())


async def list_tenant_entitlements(
    session: AsyncSession,
    *,
    tenant_id: str,
    now: datetime | None = None,
) -> dict[str, EntitlementDecision]:
    resolved_now = now or utc_now()
    try:
        rows = await addons_repo.list_tenant_addons(session, tenant_id=tenant_id)
    except SQLAlchemyError as exc:
        logger.error("entitlement_list_failed tenant_id=%s", tenant_id, exc_info=exc)
        raise _entitlement_unavailable() from exc

    entitlements = {
        row.addon_code: evaluate_entitlement(EntitlementRecord.from_row(row), resolved_now)
        for row in rows
    }
    # Regional HRMS installs also unlock features keyed on plain "hrms".
    if "hrms" not in entitlements:
        for code in HRMS_VARIANTS:
            decision = entitlements.get(code)
            if decision is not None and decision.entitled:
                entitlements["hrms"] = replace(decision, addon_code="hrms")
                break
    return entitlements


async def require_addon(
    session: AsyncSession,
    *,
    tenant_id: str,
    addon_code: str,
    allow_grace: bool = True,
    allow_grace_for_reads: bool = False,
    is_read: bool = False,
    dependencies: Iterable[str] | None = None,
    now: datetime | None = None,
) -> EntitlementDecision:
    """Raise a 403 unless the tenant may use ``addon_code`` right now.

    With ``allow_grace_for_reads`` the grace window is honoured for reads
    only; writes during grace are refused as expired.
    """
    resolved_now = now or utc_now()
    decision = await get_addon_entitlement(
        session, tenant_id=tenant_id, addon_code=addon_code, now=resolved_now
    )
    effective_allow_grace = is_read if allow_grace_for_reads else allow_grace

    if decision.entitled and decision.state == STATE_GRACE and not effective_allow_grace:
        logger.info("addon_denied tenant_id=%s addon=%s reason=grace_not_allowed", tenant_id, addon_code)
        raise _addon_denied(
            code=ADDON_EXPIRED,
            addon_code=addon_code,
            message="Add-on subscription has expired",
            valid_until=decision.valid_until,
        )

    if not decision.entitled:
        logger.info(
            "addon_denied tenant_id=%s addon=%s reason=%s", tenant_id, addon_code, decision.reason_code
        )
        raise _addon_denied(
            code=decision.reason_code,
            addon_code=addon_code,
            message=decision.message or "Add-on access denied",
            valid_until=decision.valid_until,
        )

    dependency_decision = await check_addon_dependencies(
        session,
        tenant_id=tenant_id,
        addon_code=addon_code,
        dependencies=dependencies,
        now=resolved_now,
    )
    if not dependency_decision.satisfied:
        dependency = dependency_decision.dependency or "unknown"
        if dependency_decision.reason_code == ADDON_DEPENDENCY_EXPIRED:
            message = (
                f"Required add-on '{dependency}' has expired. "
                f"Please renew it to continue using {addon_code}."
            )
        else:
            message = f"This feature requires '{dependency}' add-on to be installed first."
        logger.info(
            "addon_dependency_denied tenant_id=%s addon=%s dependency=%s",
            tenant_id,
            addon_code,
            dependency,
        )
        raise _addon_denied(
            code=dependency_decision.reason_code or ADDON_DEPENDENCY_MISSING,
            addon_code=addon_code,
            message=message,
            dependency=dependency,
        )
    return decision


async def require_employee_directory(
    session: AsyncSession,
    *,
    tenant_id: str,
    now: datetime | None = None,
) -> EntitlementDecision:
    # Employee directory is reachable through any regional Payroll or HRMS install.
    resolved_now = now or utc_now()
    try:
        rows = await addons_repo.list_tenant_addons(
            session, tenant_id=tenant_id, addon_codes=list(EMPLOYEE_DIRECTORY_ADDONS)
        )
    except SQLAlchemyError as exc:
        logger.error("employee_directory_lookup_failed tenant_id=%s", tenant_id, exc_info=exc)
        raise _entitlement_unavailable() from exc
    records: dict[str, EntitlementRecord | None] = {
        row.addon_code: EntitlementRecord.from_row(row) for row in rows
    }
    decision = evaluate_dependencies(records, EMPLOYEE_DIRECTORY_ADDONS, resolved_now)
    if decision.satisfied:
        return evaluate_entitlement(records[decision.satisfied_by], resolved_now)
    raise _addon_denied(
        code=decision.reason_code or ADDON_DEPENDENCY_MISSING,
        addon_code="employee-directory",
        message="Employee directory requires Payroll or HRMS add-on",
        dependency=decision.dependency,
    )


def next_subscription_status(
    record: EntitlementRecord,
    now: datetime,
    *,
    grace_days: int,
) -> tuple[str | None, datetime | None]:
    """Return the billing status a lapsed install should move to.

    The first element is ``None`` when nothing changes. The second carries a
    newly stamped grace end when a paid install enters its grace window.
    """
    now = as_utc(now)
    subscription_status = normalize_status(record.subscription_status)
    if subscription_status == "trialing" and record.trial_ends_at is not None:
        if record.trial_ends_at < now:
            return "expired", None
        return None, None
    if subscription_status == "active" and record.paid_until is not None:
        if record.paid_until >= now:
            return None, None
        grace_until = record.grace_until or record.paid_until + timedelta(days=grace_days)
        if grace_until >= now:
            stamped = grace_until if record.grace_until is None else None
            return "grace_period", stamped
        return "expired", None
    if subscription_status == "grace_period":
        grace_end = _grace_end(record)
        if grace_end is not None and grace_end < now:
            return "expired", None
    return None, None


async def sync_expired_addons(
    session: AsyncSession,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    # Move lapsed installs forward; rows are updated in place, never deleted.
    settings = get_settings()
    resolved_now = now or utc_now()
    processed = 0
    rows = await addons_repo.list_addons_for_expiry_sync(session)
    for row in rows:
        new_status, grace_until = next_subscription_status(
            EntitlementRecord.from_row(row),
            resolved_now,
            grace_days=settings.addon_grace_period_days,
        )
        if new_status is None:
            continue
        row.subscription_status = new_status
        if grace_until is not None:
            row.grace_until = grace_until
        row.updated_at = resolved_now
        processed += 1
        logger.info(
            "addon_expiry_sync_updated tenant_id=%s addon=%s status=%s",
            row.tenant_id,
            row.addon_code,
            new_status,
        )
    await session.commit()
    return {"scanned": len(rows), "processed": processed}
