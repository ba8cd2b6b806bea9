from __future__ import annotations

from datetime import datetime
import logging
from typing import Literal

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.clock import utc_now
from tenantguard.domain.models import StepUpChallenge
from tenantguard.services.entitlements import sync_expired_addons
from tenantguard.services.step_up import STATUS_EXPIRED, STATUS_ISSUED
from tenantguard.services.subscription_gate import expire_lapsed_subscriptions


logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    "expire_step_up_challenges",
    "sync_addon_expiry",
    "sync_subscription_expiry",
]


async def expire_step_up_challenges(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Close issued challenges whose code lifetime has passed; verification also does this lazily.
    resolved_now = now or utc_now()
    result = await session.execute(
        update(StepUpChallenge)
        .where(
            StepUpChallenge.status == STATUS_ISSUED,
            StepUpChallenge.expires_at < resolved_now,
        )
        .values(status=STATUS_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def run_maintenance_task(session: AsyncSession, task: MaintenanceTask) -> int:
    """Run one maintenance task and return the number of rows it touched.

    The sync tasks commit on their own; challenge expiry is committed here.
    """
    if task == "expire_step_up_challenges":
        count = await expire_step_up_challenges(session)
        await session.commit()
    elif task == "sync_addon_expiry":
        count = (await sync_expired_addons(session))["processed"]
    elif task == "sync_subscription_expiry":
        count = (await expire_lapsed_subscriptions(session))["processed"]
    else:
        raise ValueError(f"Unknown maintenance task: {task}")
    logger.info("maintenance_task_completed task=%s count=%s", task, count)
    return count
