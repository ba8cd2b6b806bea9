from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import time
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.clock import utc_now
from tenantguard.core.config import get_settings
from tenantguard.core.errors import PolicyLookupError
from tenantguard.domain.models import CountryRolloutPolicy
from tenantguard.persistence.repos import rollouts as rollouts_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RolloutPolicy:
    # Immutable snapshot of a country policy row, safe to share through the cache.
    country_code: str
    is_active: bool
    enabled_modules: frozenset[str] = field(default_factory=frozenset)
    enabled_features: dict[str, bool] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: CountryRolloutPolicy) -> RolloutPolicy:
        return cls(
            country_code=row.country_code.upper(),
            is_active=bool(row.is_active),
            enabled_modules=frozenset(row.enabled_modules or []),
            enabled_features={str(k): v is True for k, v in (row.enabled_features or {}).items()},
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "countryCode": self.country_code,
            "isActive": self.is_active,
            "enabledModules": sorted(self.enabled_modules),
            "enabledFeatures": dict(self.enabled_features),
        }


@dataclass(frozen=True)
class RolloutDecision:
    allowed: bool
    code: str | None = None
    message: str | None = None


ALLOW = RolloutDecision(allowed=True)

# Cached value None means "no policy row"; absence is cached like any other answer.
_policy_cache: dict[str, tuple[float, RolloutPolicy | None]] = {}
_policy_cache_lock = asyncio.Lock()


def normalize_country_code(country_code: str | None) -> str | None:
    if not country_code:
        return None
    normalized = country_code.strip().upper()
    return normalized or None


def check_country_active(policy: RolloutPolicy | None, country_code: str) -> RolloutDecision:
    # Missing and inactive policies both block the country.
    if policy is None or not policy.is_active:
        return RolloutDecision(
            allowed=False,
            code="COUNTRY_NOT_ACTIVE",
            message=f"Service is not yet available in {country_code}",
        )
    return ALLOW


def check_module(policy: RolloutPolicy | None, country_code: str, module_id: str) -> RolloutDecision:
    decision = check_country_active(policy, country_code)
    if not decision.allowed:
        return decision
    # An empty allow-list leaves every module open.
    if policy.enabled_modules and module_id not in policy.enabled_modules:
        return RolloutDecision(
            allowed=False,
            code="MODULE_NOT_AVAILABLE",
            message=f"Module '{module_id}' is not available in {country_code}",
        )
    return ALLOW


def check_feature(policy: RolloutPolicy | None, country_code: str, feature_key: str) -> RolloutDecision:
    decision = check_country_active(policy, country_code)
    if not decision.allowed:
        return decision
    if policy.enabled_features.get(feature_key) is not True:
        return RolloutDecision(
            allowed=False,
            code="FEATURE_NOT_AVAILABLE",
            message=f"Feature '{feature_key}' is not available in {country_code}",
        )
    return ALLOW


async def load_country_policy(session: AsyncSession, country_code: str) -> RolloutPolicy | None:
    """Return the cached policy for ``country_code``, loading it on a miss.

    Raises ``PolicyLookupError`` when the store cannot be read; callers in the
    request path treat that as fail-open.
    """
    settings = get_settings()
    ttl_s = settings.rollout_policy_cache_ttl_s
    now = time.monotonic()
    cached = _policy_cache.get(country_code)
    if cached and cached[0] > now:
        return cached[1]

    try:
        # Read inside a savepoint so a failed lookup leaves the request transaction usable.
        async with session.begin_nested():
            row = await rollouts_repo.get_policy(session, country_code)
    except Exception as exc:  # noqa: BLE001 - any store failure is reported as a lookup error
        raise PolicyLookupError(f"Rollout policy lookup failed for {country_code}") from exc
    policy = RolloutPolicy.from_row(row) if row is not None else None
    if ttl_s > 0:
        async with _policy_cache_lock:
            _policy_cache[country_code] = (now + ttl_s, policy)
    return policy


def invalidate_country_policy(country_code: str) -> None:
    # Drop a cached policy after admin updates.
    _policy_cache.pop(country_code.upper(), None)


def reset_rollout_cache() -> None:
    # Clear cached policies for deterministic tests.
    _policy_cache.clear()


def _rollout_denied(decision: RolloutDecision, **context: Any) -> HTTPException:
    detail: dict[str, Any] = {"code": decision.code, "message": decision.message}
    detail.update({key: value for key, value in context.items() if value is not None})
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


async def _evaluate(
    session: AsyncSession,
    *,
    country_code: str | None,
    gate: str,
    subject: str | None,
) -> None:
    country = normalize_country_code(country_code)
    # Callers without a country are outside rollout gating.
    if country is None:
        return
    try:
        policy = await load_country_policy(session, country)
    except PolicyLookupError as exc:
        logger.warning(
            "rollout_policy_lookup_failed country=%s gate=%s subject=%s",
            country,
            gate,
            subject,
            exc_info=exc,
        )
        return

    if gate == "module":
        decision = check_module(policy, country, subject or "")
    elif gate == "feature":
        decision = check_feature(policy, country, subject or "")
    else:
        decision = check_country_active(policy, country)
    if decision.allowed:
        return
    logger.info(
        "rollout_denied country=%s gate=%s subject=%s code=%s", country, gate, subject, decision.code
    )
    raise _rollout_denied(
        decision,
        countryCode=country,
        module=subject if gate == "module" else None,
        feature=subject if gate == "feature" else None,
    )


async def enforce_country_active(session: AsyncSession, *, country_code: str | None) -> None:
    await _evaluate(session, country_code=country_code, gate="country", subject=None)


async def enforce_country_module(
    session: AsyncSession,
    *,
    country_code: str | None,
    module_id: str,
) -> None:
    await _evaluate(session, country_code=country_code, gate="module", subject=module_id)


async def enforce_country_feature(
    session: AsyncSession,
    *,
    country_code: str | None,
    feature_key: str,
) -> None:
    await _evaluate(session, country_code=country_code, gate="feature", subject=feature_key)


async def upsert_rollout_policy(
    session: AsyncSession,
    *,
    country_code: str,
    is_active: bool,
    enabled_modules: list[str] | None,
    enabled_features: dict[str, bool] | None,
    notes: str | None,
    updated_by: str | None,
) -> tuple[RolloutPolicy | None, RolloutPolicy]:
    """Create or replace a country policy and drop its cache entry.

    Returns ``(before, after)`` snapshots for the audit trail. The caller owns
    the commit.
    """
    country = normalize_country_code(country_code)
    if country is None or len(country) != 2:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_COUNTRY_CODE", "message": "Country code must be ISO 3166-1 alpha-2"},
        )
    row = await rollouts_repo.get_policy(session, country)
    before = RolloutPolicy.from_row(row) if row is not None else None
    if row is None:
        row = CountryRolloutPolicy(country_code=country)
        session.add(row)
    row.is_active = is_active
    row.enabled_modules = sorted(set(enabled_modules or []))
    row.enabled_features = {str(k): bool(v) for k, v in (enabled_features or {}).items()}
    row.notes = notes
    row.updated_by = updated_by
    row.updated_at = utc_now()
    await session.flush()
    invalidate_country_policy(country)
    return before, RolloutPolicy.from_row(row)
