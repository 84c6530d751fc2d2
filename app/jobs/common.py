from __future__ import annotations

from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logger import get_logger
from app.jobs.base import JobContext, JobOutcome
from app.services import settlement, upsert_pipeline
from app.services.upsert_pipeline import PipelineOptions, PipelineResult

log = get_logger("jobs.common")


def pipeline_options(ctx: JobContext, **meta) -> PipelineOptions:
    return PipelineOptions(
        trigger=ctx.options.trigger,
        triggered_by=ctx.options.triggered_by,
        triggered_by_id=ctx.options.triggered_by_id,
        dry_run=ctx.dry_run,
        job_run_id=ctx.job_run_id,
        meta={"jobKey": ctx.job_key, **meta},
    )


async def upsert_fixtures_and_settle(
    session: AsyncSession,
    ctx: JobContext,
    fixtures: Sequence,
    **meta,
) -> JobOutcome:
    """Push fixtures through the pipeline and settle the ones that just finished."""
    result: PipelineResult = await upsert_pipeline.run(session, "fixture", fixtures, pipeline_options(ctx, **meta))
    out_meta = {"fixtures": result.as_dict()}
    if result.newly_finished and not ctx.dry_run:
        out_meta["settlement"] = await settlement.settle_fixtures(session, result.newly_finished)
    log.info(
        "fixtures_synced job=%s total=%s inserted=%s updated=%s newly_finished=%s",
        ctx.job_key,
        result.total,
        result.inserted,
        result.updated,
        len(result.newly_finished),
    )
    return JobOutcome(rows_affected=result.rows_affected, meta=out_meta)
