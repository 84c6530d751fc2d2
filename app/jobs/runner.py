"""Persisted, single-flight execution of registered jobs.

Every invocation that gets past the lock leaves exactly one job_runs row in
a terminal status. A run that finds the lock held is a no-op and writes
nothing.
"""

from __future__ import annotations

import time
import traceback
from typing import Iterable, Optional

from app.core.config import settings
from app.core.db import SessionLocal
from app.core.logger import get_logger
from app.data.providers import sportmonks
from app.jobs import registry
from app.jobs.base import (
    SKIP_DISABLED,
    SKIP_MISSING_CONFIG,
    TRIGGER_AUTOMATIC,
    JobContext,
    JobDefinition,
    JobOutcome,
    JobRunOptions,
    JobRunResult,
)
from app.services import batches, job_runs
from app.services.job_locks import JobLock, get_job_lock

log = get_logger("jobs.runner")

_missing_config_logged: set[str] = set()

PARAM_CLAMPS: dict[str, tuple[int, int]] = {
    "days_ahead": (1, 30),
    "max_live_age_hours": (1, 168),
    "grace_minutes": (0, 1440),
    "max_overdue_hours": (1, 720),
}


def _provider_ready() -> bool:
    return settings.provider_configured


def _clamp_params(params: dict, defaults: dict) -> dict:
    for name, (lo, hi) in PARAM_CLAMPS.items():
        if name not in params:
            continue
        try:
            value = int(params[name])
        except (TypeError, ValueError):
            log.warning("job_param_invalid name=%s value=%r", name, params[name])
            if name not in defaults:
                params.pop(name)
                continue
            value = int(defaults[name])
        params[name] = max(lo, min(hi, value))
    return params


def _merge_params(definition: JobDefinition, stored_meta: dict, opts: JobRunOptions) -> dict:
    params = dict(definition.default_params)
    stored_params = stored_meta.get("params") if isinstance(stored_meta, dict) else None
    if isinstance(stored_params, dict):
        params.update(stored_params)
    params.update(opts.params or {})
    return _clamp_params(params, definition.default_params)


def _elapsed_ms(t0: float) -> int:
    return int((time.perf_counter() - t0) * 1000)


async def _record_skip(session, definition: JobDefinition, opts: JobRunOptions, reason: str, run_id: Optional[int], t0: float, meta: dict) -> int:
    if run_id is None:
        run_id = await job_runs.start_job_run(
            session,
            definition.key,
            trigger=opts.trigger,
            triggered_by=opts.triggered_by,
            triggered_by_id=opts.triggered_by_id,
            meta=meta,
        )
    await batches.record_skipped_batch(
        session,
        f"job-{definition.key}",
        reason,
        trigger=opts.trigger,
        triggered_by=opts.triggered_by,
        triggered_by_id=opts.triggered_by_id,
        job_run_id=run_id,
    )
    await session.commit()
    await job_runs.finish_job_run(session, run_id, "skipped", duration_ms=_elapsed_ms(t0), meta={"reason": reason})
    return run_id


async def run_job(
    definition: JobDefinition,
    opts: Optional[JobRunOptions] = None,
    *,
    session_factory=None,
    lock: Optional[JobLock] = None,
) -> JobRunResult:
    opts = opts or JobRunOptions()
    session_factory = session_factory or SessionLocal
    lock = lock or get_job_lock()
    key = definition.key
    t0 = time.perf_counter()

    async with session_factory() as session:
        job_row = await job_runs.ensure_job_row(
            session,
            key,
            description=definition.description,
            enabled=definition.enabled,
            interval_minutes=definition.interval_minutes,
            meta={"params": dict(definition.default_params)},
        )
        params = _merge_params(definition, job_row.get("meta") or {}, opts)
        base_meta = {"params": params, "dryRun": bool(opts.dry_run)}

        if not job_row.get("enabled", True) and opts.trigger == TRIGGER_AUTOMATIC:
            run_id = await _record_skip(session, definition, opts, SKIP_DISABLED, None, t0, base_meta)
            log.info("job_skipped job=%s reason=%s", key, SKIP_DISABLED)
            return JobRunResult(job_key=key, status="skipped", job_run_id=run_id, reason=SKIP_DISABLED)

        if not await lock.try_acquire(key):
            log.warning("job_skip_already_running job=%s trigger=%s", key, opts.trigger)
            return JobRunResult(job_key=key, status="already_running")

        try:
            run_id = await job_runs.start_job_run(
                session,
                key,
                trigger=opts.trigger,
                triggered_by=opts.triggered_by,
                triggered_by_id=opts.triggered_by_id,
                meta=base_meta,
            )

            if definition.requires_provider and not _provider_ready():
                if key not in _missing_config_logged:
                    _missing_config_logged.add(key)
                    log.warning("job_skipped job=%s reason=%s", key, SKIP_MISSING_CONFIG)
                await _record_skip(session, definition, opts, SKIP_MISSING_CONFIG, run_id, t0, base_meta)
                return JobRunResult(job_key=key, status="skipped", job_run_id=run_id, reason=SKIP_MISSING_CONFIG)

            ctx = JobContext(job_key=key, job_run_id=run_id, options=opts, params=params)
            sportmonks.reset_api_metrics()
            try:
                outcome = await definition.handler(session, ctx)
            except Exception as exc:
                logger_meta = {"provider": sportmonks.get_api_metrics()}
                log.exception("job_failed job=%s run_id=%s", key, run_id)
                tb = traceback.format_exc(limit=50)
                await session.rollback()
                await job_runs.finish_job_run(
                    session,
                    run_id,
                    "failed",
                    duration_ms=_elapsed_ms(t0),
                    error_message=str(exc) or exc.__class__.__name__,
                    error_stack=tb,
                    meta=logger_meta,
                )
                raise

            outcome = outcome or JobOutcome()
            rows = 0 if opts.dry_run else int(outcome.rows_affected or 0)
            meta = {**outcome.meta, "provider": sportmonks.get_api_metrics()}
            await job_runs.finish_job_run(session, run_id, "success", duration_ms=_elapsed_ms(t0), rows_affected=rows, meta=meta)
            log.info("job_done job=%s run_id=%s rows_affected=%s duration_ms=%s", key, run_id, rows, _elapsed_ms(t0))
            return JobRunResult(job_key=key, status="success", job_run_id=run_id, rows_affected=rows, meta=outcome.meta)
        finally:
            await lock.release(key)


async def run_all_jobs(
    opts: Optional[JobRunOptions] = None,
    *,
    definitions: Optional[Iterable[JobDefinition]] = None,
    **kwargs,
) -> list[JobRunResult]:
    """Run jobs one after another; a failing job is reported and the rest still run."""
    results: list[JobRunResult] = []
    for definition in definitions if definitions is not None else registry.JOB_DEFINITIONS:
        try:
            results.append(await run_job(definition, opts, **kwargs))
        except Exception as exc:
            results.append(JobRunResult(job_key=definition.key, status="failed", error=str(exc) or exc.__class__.__name__))
    return results


async def run_job_by_key(job_key: str, opts: Optional[JobRunOptions] = None, **kwargs) -> JobRunResult:
    return await run_job(registry.get_job_definition(job_key), opts, **kwargs)
