import asyncio
from datetime import timedelta

from app import scheduler_runner
from app.core.config import settings
from app.jobs.base import JobRunResult
from app.jobs.registry import JOB_DEFINITIONS, get_job_definition


def test_every_job_is_scheduled_once():
    scheduler = scheduler_runner.build_scheduler()

    jobs = {job.id: job for job in scheduler.get_jobs()}

    assert set(jobs) == {d.key for d in JOB_DEFINITIONS}
    assert jobs["upsert-live-fixtures"].trigger.interval == timedelta(minutes=5)
    assert jobs["sync-reference-data"].trigger.interval == timedelta(days=1)
    assert all(job.max_instances == 1 and job.coalesce for job in jobs.values())


def test_interval_override(monkeypatch):
    monkeypatch.setattr(settings, "job_interval_overrides_raw", "upsert-live-fixtures:2, bogus, update-prematch-odds:x")

    assert scheduler_runner.interval_minutes(get_job_definition("upsert-live-fixtures")) == 2
    assert scheduler_runner.interval_minutes(get_job_definition("update-prematch-odds")) == 60


def test_scheduled_tick_swallows_job_failure(monkeypatch):
    seen = []

    async def _boom(definition, opts):
        seen.append((definition.key, opts.trigger, opts.triggered_by))
        raise RuntimeError("boom")

    monkeypatch.setattr(scheduler_runner, "run_job", _boom)
    tick = scheduler_runner._scheduled(get_job_definition("upsert-live-fixtures"))

    asyncio.run(tick())

    assert seen == [("upsert-live-fixtures", "automatic", "scheduler")]


def test_scheduled_tick_tolerates_overlap(monkeypatch):
    async def _busy(definition, opts):
        return JobRunResult(job_key=definition.key, status="already_running")

    monkeypatch.setattr(scheduler_runner, "run_job", _busy)

    asyncio.run(scheduler_runner._scheduled(get_job_definition("finished-fixtures"))())


def test_upcoming_fixtures_also_watch_called_off_states():
    filters = get_job_definition("upsert-upcoming-fixtures").default_params["filters"]

    assert filters == "fixtureStates:1,6,7,8,9,10,11,14"
