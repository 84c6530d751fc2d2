from __future__ import annotations

from app.core.errors import NotFoundError
from app.jobs import (
    finished_fixtures,
    live_fixtures,
    prematch_odds,
    recovery_overdue_fixtures,
    reference_data,
    settle_predictions,
    upcoming_fixtures,
)
from app.jobs.base import JobDefinition

# Not started plus the called-off states (cancelled, interrupted, abandoned,
# suspended, awarded, walkover, postponed) so late state changes are seen.
UPCOMING_FILTERS = "fixtureStates:1,6,7,8,9,10,11,14"

JOB_DEFINITIONS: tuple[JobDefinition, ...] = (
    JobDefinition(
        key=reference_data.JOB_KEY,
        description="Sync countries, leagues, seasons, teams, bookmakers and markets",
        handler=reference_data.run,
        interval_minutes=24 * 60,
    ),
    JobDefinition(
        key=upcoming_fixtures.JOB_KEY,
        description="Upsert fixtures starting in the next days",
        handler=upcoming_fixtures.run,
        interval_minutes=6 * 60,
        default_params={"days_ahead": 3, "filters": UPCOMING_FILTERS},
    ),
    JobDefinition(
        key=live_fixtures.JOB_KEY,
        description="Upsert in-play fixtures",
        handler=live_fixtures.run,
        interval_minutes=5,
    ),
    JobDefinition(
        key=finished_fixtures.JOB_KEY,
        description="Re-fetch stale live fixtures and settle finished ones",
        handler=finished_fixtures.run,
        interval_minutes=60,
        default_params={"max_live_age_hours": 2},
    ),
    JobDefinition(
        key=recovery_overdue_fixtures.JOB_KEY,
        description="Re-fetch not-started fixtures past their kickoff",
        handler=recovery_overdue_fixtures.run,
        interval_minutes=60,
        default_params={"grace_minutes": 30, "max_overdue_hours": 48},
    ),
    JobDefinition(
        key=prematch_odds.JOB_KEY,
        description="Update pre-match odds for upcoming fixtures",
        handler=prematch_odds.run,
        interval_minutes=60,
        default_params={"days_ahead": 7, "bookmaker_external_ids": [2], "market_external_ids": [1, 57]},
    ),
    JobDefinition(
        key=settle_predictions.JOB_KEY,
        description="Settle predictions on finished fixtures",
        handler=settle_predictions.run,
        interval_minutes=15,
        requires_provider=False,
    ),
)

_BY_KEY = {d.key: d for d in JOB_DEFINITIONS}


def get_job_definition(job_key: str) -> JobDefinition:
    try:
        return _BY_KEY[job_key]
    except KeyError:
        raise NotFoundError(f"Unknown job {job_key!r}", details={"jobKey": job_key}) from None
