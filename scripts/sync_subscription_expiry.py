from __future__ import annotations

import asyncio
import sys

from tenantguard.core.logging import configure_logging
from tenantguard.persistence.db import SessionLocal
from tenantguard.services.maintenance import run_maintenance_task


async def sync() -> int:
    async with SessionLocal() as session:
        cancelled = await run_maintenance_task(session, "sync_subscription_expiry")
        expired = await run_maintenance_task(session, "expire_step_up_challenges")
    print(f"subscriptions_cancelled={cancelled} step_up_challenges_expired={expired}")
    return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(sync())
    except Exception as exc:  # noqa: BLE001 - surface DB errors to cron with a non-zero exit
        print(f"sync_subscription_expiry failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
