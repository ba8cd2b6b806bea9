from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import math
from typing import Any
from uuid import uuid4

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.clock import as_utc, utc_now
from tenantguard.core.config import get_settings
from tenantguard.core.errors import InvalidPlanError
from tenantguard.domain.models import Plan, Subscription
from tenantguard.persistence.repos import subscriptions as subscriptions_repo
from tenantguard.services.entitlements import list_tenant_entitlements


logger = logging.getLogger(__name__)

TIER_FREE = "free"
TIER_STARTER = "starter"
TIER_PRO = "pro"
TIER_ENTERPRISE = "enterprise"
TIERS: tuple[str, ...] = (TIER_FREE, TIER_STARTER, TIER_PRO, TIER_ENTERPRISE)

ACCESS_INCLUDED = "included"
ACCESS_ADDON = "addon"
ACCESS_UNAVAILABLE = "unavailable"

_ALL = {tier: ACCESS_INCLUDED for tier in TIERS}
_STARTER_ADDON = {
    TIER_FREE: ACCESS_UNAVAILABLE,
    TIER_STARTER: ACCESS_ADDON,
    TIER_PRO: ACCESS_INCLUDED,
    TIER_ENTERPRISE: ACCESS_INCLUDED,
}
_PAID_ONLY = {
    TIER_FREE: ACCESS_UNAVAILABLE,
    TIER_STARTER: ACCESS_INCLUDED,
    TIER_PRO: ACCESS_INCLUDED,
    TIER_ENTERPRISE: ACCESS_INCLUDED,
}
_PRO_ADDON = {
    TIER_FREE: ACCESS_UNAVAILABLE,
    TIER_STARTER: ACCESS_UNAVAILABLE,
    TIER_PRO: ACCESS_ADDON,
    TIER_ENTERPRISE: ACCESS_INCLUDED,
}

MODULE_TIER_ACCESS: dict[str, dict[str, str]] = {
    "furniture": _STARTER_ADDON,
    "furniture_manufacturing": _STARTER_ADDON,
    "hrms": _PAID_ONLY,
    "legal": _STARTER_ADDON,
    "education": _STARTER_ADDON,
    "tourism": _STARTER_ADDON,
    "logistics": _STARTER_ADDON,
    "real_estate": _STARTER_ADDON,
    "pg_hostel": _ALL,
    "coworking": _ALL,
    "clinic": _PRO_ADDON,
    "salon": _ALL,
    "gym": _ALL,
    "general_service": _ALL,
    "service": _ALL,
    "marketplace": _PAID_ONLY,
    "analytics": _PAID_ONLY,
    "bookings": _ALL,
    "invoices": _ALL,
    "customers": _ALL,
    "services": _ALL,
    "settings": _ALL,
    "onboarding": _ALL,
    "reseller": _PRO_ADDON,
    "portal": _ALL,
}

# Add-on codes that unlock a module sold as an add-on for the tenant's tier.
MODULE_ADDON_CODES: dict[str, tuple[str, ...]] = {
    "furniture": ("furniture_manufacturing", "furniture", "manufacturing"),
    "furniture_manufacturing": ("furniture_manufacturing", "furniture", "manufacturing"),
    "legal": ("legal_services", "legal", "case_management"),
    "education": ("education", "coaching", "lms"),
    "tourism": ("tourism", "travel", "tour_management"),
    "logistics": ("logistics", "delivery", "fleet_management"),
    "real_estate": ("real_estate", "property_management"),
    "clinic": ("clinic", "healthcare", "medical"),
    "analytics": ("analytics", "advanced_analytics", "reporting"),
    "marketplace": ("marketplace", "addon_marketplace"),
}

# -1 means unlimited.
TIER_LIMITS: dict[str, dict[str, int]] = {
    TIER_FREE: {"max_users": 1, "max_customers": 25, "api_rate_limit": 100},
    TIER_STARTER: {"max_users": 5, "max_customers": 100, "api_rate_limit": 1000},
    TIER_PRO: {"max_users": 25, "max_customers": 500, "api_rate_limit": 10000},
    TIER_ENTERPRISE: {"max_users": -1, "max_customers": -1, "api_rate_limit": -1},
}

FEATURE_MULTI_CURRENCY = "multi_currency"
FEATURE_AI_INSIGHTS = "ai_insights"
FEATURE_WHITE_LABEL = "white_label"

TIER_FEATURES: dict[str, frozenset[str]] = {
    FEATURE_MULTI_CURRENCY: frozenset({TIER_PRO, TIER_ENTERPRISE}),
    FEATURE_AI_INSIGHTS: frozenset({TIER_ENTERPRISE}),
    FEATURE_WHITE_LABEL: frozenset({TIER_ENTERPRISE}),
}

_PLAN_FEATURES_RESERVED_KEYS = {"addons"}
BILLING_PERIOD_DAYS = 30


@dataclass(frozen=True)
class SubscriptionRequirement:
    # Empty/None fields are not checked.
    allowed_tiers: tuple[str, ...] | None = None
    module: str | None = None
    feature: str | None = None
    allow_trial: bool = False


@dataclass(frozen=True)
class ResolvedSubscription:
    tenant_id: str
    tier: str
    status: str
    subscription: Subscription | None
    plan: Plan | None
    is_free_fallback: bool = False

    def to_payload(self, *, now: datetime | None = None) -> dict[str, Any]:
        subscription = self.subscription
        trial_ends_at = as_utc(subscription.trial_ends_at) if subscription else None
        period_end = as_utc(subscription.current_period_end) if subscription else None
        expires_at = trial_ends_at if self.status == "trialing" else period_end
        days_until_expiry = None
        if expires_at is not None:
            remaining = (expires_at - (now or utc_now())).total_seconds() / 86400
            days_until_expiry = max(0, math.ceil(remaining))
        return {
            "tenantId": self.tenant_id,
            "tier": self.tier,
            "status": self.status,
            "planId": self.plan.id if self.plan else None,
            "planName": self.plan.name if self.plan else None,
            "isFreeFallback": self.is_free_fallback,
            "trialEndsAt": trial_ends_at.isoformat() if trial_ends_at else None,
            "currentPeriodEnd": period_end.isoformat() if period_end else None,
            "cancelAtPeriodEnd": bool(subscription.cancel_at_period_end) if subscription else False,
            "daysUntilExpiry": days_until_expiry,
            "features": tier_features(self.tier, self.plan),
            "limits": dict(TIER_LIMITS.get(self.tier, TIER_LIMITS[TIER_FREE])),
        }


def normalize_tier(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if normalized == "plan_free":
        return TIER_FREE
    return normalized


def module_access(tier: str, module_id: str) -> str:
    # Unknown modules and tiers are unavailable.
    tiers = MODULE_TIER_ACCESS.get(module_id.strip().lower())
    if tiers is None:
        return ACCESS_UNAVAILABLE
    return tiers.get(normalize_tier(tier), ACCESS_UNAVAILABLE)


def plan_feature_enabled(plan: Plan | None, tier: str, feature: str) -> bool:
    # Explicit plan flags override the tier defaults.
    features = (plan.features_json or {}) if plan is not None else {}
    override = features.get(feature)
    if isinstance(override, bool):
        return override
    return normalize_tier(tier) in TIER_FEATURES.get(feature, frozenset())


def tier_features(tier: str, plan: Plan | None = None) -> dict[str, bool]:
    features = {name: plan_feature_enabled(plan, tier, name) for name in TIER_FEATURES}
    if plan is not None:
        for key, value in (plan.features_json or {}).items():
            if key not in _PLAN_FEATURES_RESERVED_KEYS and isinstance(value, bool):
                features.setdefault(key, value)
    return features


def plan_bundles_module(plan: Plan | None, module_id: str) -> bool:
    if plan is None:
        return False
    bundled = (plan.features_json or {}).get("addons") or []
    return module_id in bundled


def _billing_denied(code: str, message: str, **context: Any) -> HTTPException:
    settings = get_settings()
    detail: dict[str, Any] = {"code": code, "message": message, "billingUrl": settings.billing_url}
    detail.update({key: value for key, value in context.items() if value is not None})
    return HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=detail)


def _policy_denied(code: str, message: str, **context: Any) -> HTTPException:
    settings = get_settings()
    detail: dict[str, Any] = {"code": code, "message": message, "upgradeUrl": settings.upgrade_url}
    detail.update({key: value for key, value in context.items() if value is not None})
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def _invalid_plan(plan_id: str | None) -> HTTPException:
    # Referential corruption, not a user-facing denial.
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "code": "INVALID_PLAN",
            "message": "Subscription plan could not be resolved",
            "planId": plan_id,
        },
    )


def _subscription_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "code": "SUBSCRIPTION_UNAVAILABLE",
            "message": "Unable to verify subscription, please retry",
        },
    )


async def _free_fallback(session: AsyncSession, tenant_id: str) -> ResolvedSubscription | None:
    # Free tenants may operate without a subscription row.
    settings = get_settings()
    if not settings.subscription_free_fallback_enabled:
        return None
    tenant = await subscriptions_repo.get_tenant(session, tenant_id)
    if tenant is None or normalize_tier(tenant.subscription_tier) != TIER_FREE:
        return None
    plan = await subscriptions_repo.get_default_plan_for_tier(session, TIER_FREE)
    return ResolvedSubscription(
        tenant_id=tenant_id,
        tier=TIER_FREE,
        status="free_tier",
        subscription=None,
        plan=plan,
        is_free_fallback=True,
    )


async def _load_plan(session: AsyncSession, subscription: Subscription) -> Plan:
    plan = await subscriptions_repo.get_plan(session, subscription.plan_id)
    if plan is None:
        raise InvalidPlanError(subscription.plan_id)
    return plan


async def _module_addon_entitled(
    session: AsyncSession,
    *,
    tenant_id: str,
    module_id: str,
    now: datetime,
) -> bool:
    codes = MODULE_ADDON_CODES.get(module_id, (module_id,))
    entitlements = await list_tenant_entitlements(session, tenant_id=tenant_id, now=now)
    return any(entitlements[code].entitled for code in codes if code in entitlements)


async def enforce_subscription(
    session: AsyncSession,
    *,
    tenant_id: str,
    requirement: SubscriptionRequirement | None = None,
    now: datetime | None = None,
) -> ResolvedSubscription:
    """Apply the billing and capability checks for one request.

    Checks run in a fixed order so the first failing condition decides the
    denial code: existence, trial expiry, payment state, lifecycle state,
    plan integrity, tier allow-list, module capability, named feature.
    """
    requirement = requirement or SubscriptionRequirement()
    resolved_now = as_utc(now) or utc_now()

    try:
        subscription = await subscriptions_repo.get_current_subscription(session, tenant_id=tenant_id)
        resolved = None
        if subscription is None:
            resolved = await _free_fallback(session, tenant_id)
    except SQLAlchemyError as exc:
        logger.error("subscription_lookup_failed tenant_id=%s", tenant_id, exc_info=exc)
        raise _subscription_unavailable() from exc

    if subscription is None and resolved is None:
        raise _billing_denied(
            "NO_SUBSCRIPTION",
            "No active subscription found. Please subscribe to continue.",
        )

    if subscription is not None:
        subscription_status = (subscription.status or "").strip().lower()
        trial_end = as_utc(subscription.trial_ends_at)
        if (
            subscription_status == "trialing"
            and not requirement.allow_trial
            and trial_end is not None
            and trial_end < resolved_now
        ):
            raise _billing_denied(
                "TRIAL_EXPIRED",
                "Your trial has expired. Please subscribe to continue.",
                trialEndsAt=trial_end.isoformat(),
            )
        if subscription_status == "past_due":
            raise _billing_denied(
                "PAYMENT_PAST_DUE",
                "Your payment is past due. Please update your payment method.",
            )
        if subscription_status not in {"trialing", "active", "grace_period"}:
            raise _billing_denied(
                "SUBSCRIPTION_INACTIVE",
                "Your subscription is not active. Please renew to continue.",
                status=subscription_status,
            )
        period_end = as_utc(subscription.current_period_end)
        if subscription_status == "active" and period_end is not None and period_end < resolved_now:
            raise _billing_denied(
                "SUBSCRIPTION_EXPIRED",
                "Your subscription has expired. Please renew to continue.",
                currentPeriodEnd=period_end.isoformat(),
            )

        try:
            plan = await _load_plan(session, subscription)
        except InvalidPlanError as exc:
            logger.error(
                "subscription_invalid_plan tenant_id=%s subscription_id=%s plan_id=%s",
                tenant_id,
                subscription.id,
                exc.plan_id,
            )
            raise _invalid_plan(exc.plan_id) from exc
        except SQLAlchemyError as exc:
            logger.error("plan_lookup_failed tenant_id=%s", tenant_id, exc_info=exc)
            raise _subscription_unavailable() from exc
        resolved = ResolvedSubscription(
            tenant_id=tenant_id,
            tier=normalize_tier(plan.tier),
            status=subscription_status,
            subscription=subscription,
            plan=plan,
        )

    tier = resolved.tier
    if requirement.allowed_tiers and tier not in {normalize_tier(t) for t in requirement.allowed_tiers}:
        raise _policy_denied(
            "TIER_UPGRADE_REQUIRED",
            "Your current plan does not include this capability. Please upgrade.",
            currentTier=tier,
            requiredTiers=list(requirement.allowed_tiers),
        )

    if requirement.module:
        module_id = requirement.module.strip().lower()
        access = module_access(tier, module_id)
        allowed = access == ACCESS_INCLUDED
        if access == ACCESS_ADDON:
            allowed = plan_bundles_module(resolved.plan, module_id) or await _module_addon_entitled(
                session, tenant_id=tenant_id, module_id=module_id, now=resolved_now
            )
        if not allowed:
            message = (
                f"Module '{module_id}' requires add-on purchase"
                if access == ACCESS_ADDON
                else f"Module '{module_id}' not available in {tier} tier"
            )
            raise _policy_denied(
                "MODULE_NOT_AVAILABLE",
                message,
                currentTier=tier,
                module=module_id,
                access=access,
            )

    if requirement.feature and not plan_feature_enabled(resolved.plan, tier, requirement.feature):
        raise _policy_denied(
            "FEATURE_NOT_AVAILABLE",
            f"Feature '{requirement.feature}' is not available in {tier} tier",
            currentTier=tier,
            feature=requirement.feature,
        )

    return resolved


async def resolve_subscription_soft(
    session: AsyncSession,
    *,
    tenant_id: str,
) -> ResolvedSubscription | None:
    # Never denies; used to personalize responses with whatever can be resolved.
    try:
        subscription = await subscriptions_repo.get_current_subscription(session, tenant_id=tenant_id)
        if subscription is None:
            return await _free_fallback(session, tenant_id)
        plan = await subscriptions_repo.get_plan(session, subscription.plan_id)
    except SQLAlchemyError as exc:
        logger.warning("subscription_soft_lookup_failed tenant_id=%s", tenant_id, exc_info=exc)
        return None
    tier = normalize_tier(plan.tier if plan is not None else subscription.tier)
    return ResolvedSubscription(
        tenant_id=tenant_id,
        tier=tier,
        status=(subscription.status or "").strip().lower(),
        subscription=subscription,
        plan=plan,
    )


async def change_plan(
    session: AsyncSession,
    *,
    tenant_id: str,
    plan_id: str,
    trial_days: int | None = None,
    now: datetime | None = None,
) -> tuple[Subscription | None, Subscription]:
    """Supersede the current subscription with one on ``plan_id``.

    Returns ``(previous, current)``; ``previous`` is ``None`` for a first
    subscription. The caller owns the commit.
    """
    resolved_now = now or utc_now()
    plan = await subscriptions_repo.get_plan(session, plan_id)
    if plan is None or not plan.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "PLAN_NOT_FOUND", "message": "Plan not found", "planId": plan_id},
        )

    previous = await subscriptions_repo.get_current_subscription(session, tenant_id=tenant_id)
    if previous is not None:
        previous.is_current = False
        previous.superseded_at = resolved_now

    trial_ends_at = resolved_now + timedelta(days=trial_days) if trial_days else None
    current = Subscription(
        id=uuid4().hex,
        tenant_id=tenant_id,
        plan_id=plan.id,
        tier=normalize_tier(plan.tier),
        status="trialing" if trial_ends_at else "active",
        trial_ends_at=trial_ends_at,
        current_period_end=resolved_now + timedelta(days=BILLING_PERIOD_DAYS),
        cancel_at_period_end=False,
        is_current=True,
    )
    session.add(current)
    tenant = await subscriptions_repo.get_tenant(session, tenant_id)
    if tenant is not None:
        tenant.subscription_tier = current.tier
    await session.flush()
    return previous, current


async def expire_lapsed_subscriptions(
    session: AsyncSession,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    # Cancel current subscriptions whose trial or paid period has ended and drop the tenant to free.
    resolved_now = now or utc_now()
    rows = await subscriptions_repo.list_subscriptions_for_expiry_sync(session)
    processed = 0
    for row in rows:
        row_status = (row.status or "").strip().lower()
        trial_end = as_utc(row.trial_ends_at)
        period_end = as_utc(row.current_period_end)
        trial_lapsed = row_status == "trialing" and trial_end is not None and trial_end < resolved_now
        period_lapsed = row_status == "active" and period_end is not None and period_end < resolved_now
        if not (trial_lapsed or period_lapsed):
            continue
        row.status = "cancelled"
        tenant = await subscriptions_repo.get_tenant(session, row.tenant_id)
        if tenant is not None:
            tenant.subscription_tier = TIER_FREE
        processed += 1
        logger.info(
            "subscription_expired tenant_id=%s subscription_id=%s reason=%s",
            row.tenant_id,
            row.id,
            "trial" if trial_lapsed else "period",
        )
    await session.commit()
    return {"scanned": len(rows), "processed": processed}
