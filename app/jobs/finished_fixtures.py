"""Re-fetch fixtures stuck in a live state and settle the ones that have finished.

Live polling only sees what the provider currently lists as in-play; a
match that ends between polls would otherwise stay live in storage.
"""

from __future__ import annotations

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logger import get_logger
from app.core.timeutils import to_epoch_seconds, utcnow
from app.data.mappers import LIVE_STATES
from app.data.providers import sportmonks
from app.jobs.base import JobContext, JobOutcome
from app.jobs.common import upsert_fixtures_and_settle

log = get_logger("jobs.finished_fixtures")

JOB_KEY = "finished-fixtures"


async def _select_stale_live_fixture_external_ids(session: AsyncSession, started_before: int) -> list[str]:
    stmt = text(
        """
        SELECT external_id
        FROM fixtures
        WHERE state IN :live_states
          AND start_ts < :started_before
        ORDER BY start_ts
        """
    ).bindparams(bindparam("live_states", expanding=True))
    res = await session.execute(stmt, {"live_states": sorted(LIVE_STATES), "started_before": started_before})
    return [str(r[0]) for r in res.fetchall() if r[0] is not None]


async def run(session: AsyncSession, ctx: JobContext) -> JobOutcome:
    max_age_hours = ctx.int_param("max_live_age_hours", 2, 1, 168)
    started_before = to_epoch_seconds(utcnow()) - max_age_hours * 3600
    external_ids = await _select_stale_live_fixture_external_ids(session, started_before)
    if not external_ids:
        log.info("finished_fixtures_none max_live_age_hours=%s", max_age_hours)
        return JobOutcome(meta={"candidates": 0})
    fixtures = await sportmonks.fetch_fixtures_by_ids(external_ids)
    outcome = await upsert_fixtures_and_settle(session, ctx, fixtures, candidates=len(external_ids))
    outcome.meta["candidates"] = len(external_ids)
    return outcome
