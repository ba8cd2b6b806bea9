from __future__ import annotations

import os

# Settings and the engine are built at import time; point them at an in-memory database first.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest

from tenantguard.apps.api.rate_limit import reset_rate_limiter_state
from tenantguard.core.config import get_settings
from tenantguard.domain.models import Base
from tenantguard.persistence.db import engine
from tenantguard.services.rollouts import reset_rollout_cache


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Settings, policy cache and limiter are process-wide; isolate them per test.
    get_settings.cache_clear()
    reset_rollout_cache()
    reset_rate_limiter_state()
    yield
    get_settings.cache_clear()
    reset_rollout_cache()
    reset_rate_limiter_state()


@pytest.fixture
async def database() -> None:
    # Fresh schema per test; disposing the engine also drops the in-memory database.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
