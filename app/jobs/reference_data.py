"""Daily sync of reference data: countries, leagues, seasons, teams, bookmakers, markets.

Kinds run parent-first so that leagues find their countries and seasons
find their leagues. Each kind gets its own batch.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ValidationError
from app.core.logger import get_logger
from app.jobs.base import JobContext, JobOutcome
from app.jobs.common import pipeline_options
from app.services import reconciliation, upsert_pipeline

log = get_logger("jobs.reference_data")

JOB_KEY = "sync-reference-data"
REFERENCE_KINDS = ("country", "league", "season", "team", "bookmaker", "market")


async def run(session: AsyncSession, ctx: JobContext) -> JobOutcome:
    kinds = ctx.params.get("kinds") or REFERENCE_KINDS
    rows = 0
    per_kind: dict[str, dict] = {}
    for kind in kinds:
        if kind not in REFERENCE_KINDS:
            log.warning("reference_kind_unknown kind=%s", kind)
            continue
        records = await reconciliation.PROVIDER_FETCHERS[kind]()
        result = await upsert_pipeline.run(session, kind, records, pipeline_options(ctx))
        per_kind[kind] = result.as_dict()
        rows += result.rows_affected
    return JobOutcome(rows_affected=rows, meta={"kinds": per_kind})


async def sync_kind(
    session: AsyncSession,
    entity_kind: str,
    *,
    scope: str,
    options: Optional[upsert_pipeline.PipelineOptions] = None,
) -> dict:
    """Reconcile one kind and run the pipeline over the records selected by `scope`."""
    fetcher = reconciliation.PROVIDER_FETCHERS.get(entity_kind)
    if fetcher is None:
        raise ValidationError(f"Sync is not supported for {entity_kind!r}")
    if scope not in reconciliation.SCOPES:
        raise ValidationError(f"Unknown scope {scope!r}; expected one of {', '.join(reconciliation.SCOPES)}")
    records = await fetcher()
    report = await reconciliation.diff(session, entity_kind, provider_records=records)
    selected = reconciliation.select_records(report, records, scope)
    opts = options or upsert_pipeline.PipelineOptions()
    opts.meta = {**opts.meta, "scope": scope}
    result = await upsert_pipeline.run(session, entity_kind, selected, opts)
    return {"report": report.as_dict(), "result": result.as_dict()}
