from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logger import get_logger
from app.jobs.base import JobContext, JobOutcome
from app.services import settlement

log = get_logger("jobs.settle_predictions")

JOB_KEY = "settle-pending-predictions"


async def run(session: AsyncSession, ctx: JobContext) -> JobOutcome:
    fixture_ids = await settlement.pending_fixture_ids(session, limit=ctx.int_param("limit", 500, 1, 5000))
    if ctx.dry_run:
        return JobOutcome(meta={"pendingFixtures": len(fixture_ids)})
    if not fixture_ids:
        return JobOutcome(meta={"pendingFixtures": 0})
    out = await settlement.settle_fixtures(session, fixture_ids)
    return JobOutcome(rows_affected=out["settled"], meta={"pendingFixtures": len(fixture_ids), **out})
