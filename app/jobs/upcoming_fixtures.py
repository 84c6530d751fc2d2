from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.timeutils import date_window
from app.data.providers import sportmonks
from app.jobs.base import JobContext, JobOutcome
from app.jobs.common import upsert_fixtures_and_settle

JOB_KEY = "upsert-upcoming-fixtures"


async def run(session: AsyncSession, ctx: JobContext) -> JobOutcome:
    days_ahead = ctx.int_param("days_ahead", 3, 1, 30)
    date_from, date_to = date_window(days_ahead)
    fixtures = await sportmonks.fetch_fixtures_between(date_from, date_to, filters=ctx.params.get("filters"))
    return await upsert_fixtures_and_settle(session, ctx, fixtures, window=[date_from, date_to])
