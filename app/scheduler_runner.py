import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.core.db import init_db
from app.core.http import init_http_clients, close_http_clients
from app.jobs.base import JobDefinition, JobRunOptions
from app.jobs.registry import JOB_DEFINITIONS
from app.jobs.runner import run_job

logger = logging.getLogger(__name__)


def _scheduled(definition: JobDefinition):
    async def _tick():
        try:
            result = await run_job(definition, JobRunOptions.scheduled())
        except Exception:
            # Already recorded on the job run; the scheduler keeps going.
            logger.exception("scheduled_job_failed job=%s", definition.key)
            return
        if result.status == "already_running":
            logger.info("scheduled_job_noop job=%s reason=already_running", definition.key)

    _tick.__name__ = f"scheduled_{definition.key.replace('-', '_')}"
    return _tick


def interval_minutes(definition: JobDefinition) -> int:
    override = settings.job_interval_overrides.get(definition.key)
    return max(1, int(override if override is not None else definition.interval_minutes))


def build_scheduler(definitions=JOB_DEFINITIONS) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    for definition in definitions:
        minutes = interval_minutes(definition)
        scheduler.add_job(
            _scheduled(definition),
            IntervalTrigger(minutes=minutes),
            id=definition.key,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=int(settings.scheduler_misfire_grace_seconds),
        )
        logger.info("scheduler_job_added job=%s interval_minutes=%s", definition.key, minutes)
    return scheduler


async def main() -> None:
    await init_db()
    await init_http_clients()

    if not settings.scheduler_enabled:
        logger.warning("SCHEDULER_ENABLED=false; scheduler runner exiting")
        return

    scheduler = build_scheduler()
    scheduler.start()
    logger.info("scheduler_runner_started")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        try:
            await close_http_clients()
        except Exception:
            logger.exception("http_client_close_failed")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
