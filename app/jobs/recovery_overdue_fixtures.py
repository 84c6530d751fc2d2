from __future__ import annotations

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logger import get_logger
from app.core.timeutils import to_epoch_seconds, utcnow
from app.data.mappers import NOT_STARTED_STATES
from app.data.providers import sportmonks
from app.jobs.base import JobContext, JobOutcome
from app.jobs.common import upsert_fixtures_and_settle

log = get_logger("jobs.recovery_overdue_fixtures")

JOB_KEY = "recovery-overdue-fixtures"


async def _select_overdue_fixture_external_ids(session: AsyncSession, started_before: int, started_after: int) -> list[str]:
    stmt = text(
        """
        SELECT external_id
        FROM fixtures
        WHERE state IN :not_started_states
          AND start_ts < :started_before
          AND start_ts >= :started_after
        ORDER BY start_ts
        """
    ).bindparams(bindparam("not_started_states", expanding=True))
    res = await session.execute(
        stmt,
        {
            "not_started_states": sorted(NOT_STARTED_STATES),
            "started_before": started_before,
            "started_after": started_after,
        },
    )
    return [str(r[0]) for r in res.fetchall() if r[0] is not None]


async def run(session: AsyncSession, ctx: JobContext) -> JobOutcome:
    grace_minutes = ctx.int_param("grace_minutes", 30, 0, 1440)
    max_overdue_hours = ctx.int_param("max_overdue_hours", 48, 1, 720)
    now_ts = to_epoch_seconds(utcnow())
    external_ids = await _select_overdue_fixture_external_ids(
        session,
        started_before=now_ts - grace_minutes * 60,
        started_after=now_ts - max_overdue_hours * 3600,
    )
    if not external_ids:
        log.info("overdue_fixtures_none grace_minutes=%s max_overdue_hours=%s", grace_minutes, max_overdue_hours)
        return JobOutcome(meta={"candidates": 0})
    log.warning("overdue_fixtures_found count=%s", len(external_ids))
    fixtures = await sportmonks.fetch_fixtures_by_ids(external_ids)
    outcome = await upsert_fixtures_and_settle(session, ctx, fixtures, candidates=len(external_ids))
    outcome.meta["candidates"] = len(external_ids)
    return outcome
