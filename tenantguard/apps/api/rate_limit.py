from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math

from fastapi import HTTPException, Response, status
from redis.asyncio import Redis

from tenantguard.core.config import get_settings
from tenantguard.domain.context import TenantContext
from tenantguard.services.audit import AuditLogger


logger = logging.getLogger(__name__)

ROUTE_CLASS_STEP_UP_ISSUE = "step_up_issue"
ROUTE_CLASS_STEP_UP_VERIFY = "step_up_verify"


@dataclass(frozen=True)
class AttemptWindow:
    max_attempts: int
    window_s: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    route_class: str
    attempts: int
    retry_after_ms: int


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def _get_redis() -> Redis:
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


def _window_for_route(route_class: str) -> AttemptWindow:
    settings = get_settings()
    if route_class == ROUTE_CLASS_STEP_UP_ISSUE:
        return AttemptWindow(settings.rl_step_up_issue_max_attempts, settings.rl_step_up_window_s)
    return AttemptWindow(settings.rl_step_up_verify_max_attempts, settings.rl_step_up_window_s)


def _attempt_key(*, route_class: str, tenant_id: str, user_id: str) -> str:
    prefix = get_settings().rl_redis_prefix
    return f"{prefix}:{route_class}:{tenant_id}:{user_id}"


def decide(
    *,
    route_class: str,
    attempts: int,
    ttl_ms: int,
    window: AttemptWindow,
) -> RateLimitDecision:
    """Turn a window counter into a decision.

    ``ttl_ms`` is the remaining window lifetime as reported by Redis; a
    missing or negative TTL falls back to a full window.
    """
    if attempts <= window.max_attempts:
        return RateLimitDecision(allowed=True, route_class=route_class, attempts=attempts, retry_after_ms=0)
    retry_after_ms = ttl_ms if ttl_ms > 0 else window.window_s * 1000
    return RateLimitDecision(
        allowed=False,
        route_class=route_class,
        attempts=attempts,
        retry_after_ms=retry_after_ms,
    )


class StepUpAttemptCounter:
    """Fixed-window attempt counter per (route class, tenant, user)."""

    async def hit(self, *, user_id: str, tenant_id: str, route_class: str) -> RateLimitDecision:
        window = _window_for_route(route_class)
        key = _attempt_key(route_class=route_class, tenant_id=tenant_id, user_id=user_id)
        redis = await _get_redis()
        async with redis.pipeline(transaction=True) as pipe:
            # SET NX opens the window once; INCR keeps its TTL.
            pipe.set(key, 0, ex=window.window_s, nx=True)
            pipe.incr(key)
            pipe.pttl(key)
            _, attempts, ttl_ms = await pipe.execute()
        return decide(route_class=route_class, attempts=int(attempts), ttl_ms=int(ttl_ms), window=window)


_attempt_counter: StepUpAttemptCounter | None = None


def _get_attempt_counter() -> StepUpAttemptCounter:
    global _attempt_counter
    if _attempt_counter is None:
        _attempt_counter = StepUpAttemptCounter()
    return _attempt_counter


def reset_rate_limiter_state() -> None:
    # Reset cached Redis connections for deterministic test setup.
    global _attempt_counter, _redis_pool, _redis_loop
    _attempt_counter = None
    _redis_pool = None
    _redis_loop = None


def _throttle_exception(*, decision: RateLimitDecision) -> HTTPException:
    retry_after_s = max(1, int(math.ceil(decision.retry_after_ms / 1000.0)))
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Too many attempts. Please wait and try again.",
            "routeClass": decision.route_class,
            "retryAfterMs": decision.retry_after_ms,
        },
        headers={
            "Retry-After": str(retry_after_s),
            "X-RateLimit-Route-Class": decision.route_class,
        },
    )


def _unavailable_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
    )


async def enforce_step_up_rate_limit(
    *,
    response: Response,
    ctx: TenantContext,
    route_class: str,
) -> None:
    """Throttle step-up issuance or verification for the acting user.

    Redis outages follow ``RL_FAIL_MODE``: open marks the response degraded and
    lets the attempt through, closed refuses it with 503.
    """
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return

    try:
        decision = await _get_attempt_counter().hit(
            user_id=ctx.acting_user_id,
            tenant_id=ctx.tenant_id,
            route_class=route_class,
        )
    except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
        if settings.rl_fail_mode.lower() == "closed":
            raise _unavailable_exception() from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        logger.warning("rate_limit_degraded route_class=%s tenant_id=%s", route_class, ctx.tenant_id)
        return

    if decision.allowed:
        return

    logger.info(
        "step_up_rate_limited tenant_id=%s user_id=%s route_class=%s attempts=%s",
        ctx.tenant_id,
        ctx.acting_user_id,
        route_class,
        decision.attempts,
    )
    await AuditLogger(ctx).fail(
        "security.rate_limited",
        reason="Rate limit exceeded",
        target_type="step_up",
        metadata={
            "route_class": decision.route_class,
            "attempts": decision.attempts,
            "retry_after_ms": decision.retry_after_ms,
        },
    )
    raise _throttle_exception(decision=decision)
