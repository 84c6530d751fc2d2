from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.timeutils import date_window
from app.data.providers import sportmonks
from app.jobs.base import JobContext, JobOutcome
from app.jobs.common import pipeline_options
from app.services import upsert_pipeline

JOB_KEY = "update-prematch-odds"


def odds_filters(bookmaker_ids, market_ids) -> dict:
    filters = {}
    if bookmaker_ids:
        filters["bookmakers"] = list(bookmaker_ids)
    if market_ids:
        filters["markets"] = list(market_ids)
    return filters


async def run(session: AsyncSession, ctx: JobContext) -> JobOutcome:
    days_ahead = ctx.int_param("days_ahead", 7, 1, 30)
    date_from, date_to = date_window(days_ahead)
    filters = odds_filters(ctx.params.get("bookmaker_external_ids"), ctx.params.get("market_external_ids"))
    odds = await sportmonks.fetch_odds_between(date_from, date_to, filters=filters or None)
    result = await upsert_pipeline.run(session, "odds", odds, pipeline_options(ctx, window=[date_from, date_to]))
    return JobOutcome(rows_affected=result.rows_affected, meta={"odds": result.as_dict()})
