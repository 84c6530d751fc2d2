from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from app.data.providers import sportmonks
from app.jobs.base import JobContext, JobOutcome
from app.jobs.common import upsert_fixtures_and_settle

JOB_KEY = "upsert-live-fixtures"


async def run(session: AsyncSession, ctx: JobContext) -> JobOutcome:
    fixtures = await sportmonks.fetch_live_fixtures(filters=ctx.params.get("filters"))
    return await upsert_fixtures_and_settle(session, ctx, fixtures)
