from __future__ import annotations

import asyncio
import sys

from tenantguard.core.logging import configure_logging
from tenantguard.persistence.db import SessionLocal
from tenantguard.services.entitlements import sync_expired_addons


async def sync() -> int:
    # Moves lapsed add-on installs into grace or expired; rows are never deleted.
    async with SessionLocal() as session:
        summary = await sync_expired_addons(session)
    print(f"addon_expiry_sync scanned={summary['scanned']} processed={summary['processed']}")
    return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(sync())
    except Exception as exc:  # noqa: BLE001 - surface DB errors to cron with a non-zero exit
        print(f"sync_addon_expiry failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
