from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.domain.models import CountryRolloutPolicy


async def get_policy(session: AsyncSession, country_code: str) -> CountryRolloutPolicy | None:
    return await session.get(CountryRolloutPolicy, country_code.upper())


async def list_policies(session: AsyncSession) -> list[CountryRolloutPolicy]:
    result = await session.execute(
        select(CountryRolloutPolicy).order_by(CountryRolloutPolicy.country_code)
    )
    return list(result.scalars().all())
