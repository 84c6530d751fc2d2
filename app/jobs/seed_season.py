"""On-demand seeding of one season: the season row, its teams and its fixtures.

Not scheduled. An operator runs it to backfill a season, finished ones
included. The season's league (and that league's country) is fetched and
stored first when it is not mapped yet, so the season always finds its
parent.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError
from app.core.logger import get_logger
from app.data.providers import sportmonks
from app.services import external_mappings, settlement, upsert_pipeline
from app.services.upsert_pipeline import PipelineOptions

log = get_logger("jobs.seed_season")

SCOPE = "seed-season"


async def _ensure_league(session: AsyncSession, league_external_id: Optional[str], opts: PipelineOptions) -> dict:
    out: dict = {}
    if not league_external_id:
        return out
    if await external_mappings.resolve(session, "league", league_external_id) is not None:
        return out
    league = await sportmonks.fetch_league_by_id(league_external_id)
    if league is None:
        raise NotFoundError(f"League {league_external_id} not found at the provider")
    country_ext = league.country_external_id
    if country_ext and await external_mappings.resolve(session, "country", country_ext) is None:
        country = await sportmonks.fetch_country_by_id(country_ext)
        if country is not None:
            out["country"] = (await upsert_pipeline.run(session, "country", [country], opts)).as_dict()
    out["league"] = (await upsert_pipeline.run(session, "league", [league], opts)).as_dict()
    log.info("seed_season_league_created league=%s dry_run=%s", league_external_id, opts.dry_run)
    return out


async def seed_season(
    session: AsyncSession,
    season_external_id: str,
    *,
    include_teams: bool = True,
    include_fixtures: bool = True,
    options: Optional[PipelineOptions] = None,
) -> dict:
    base = options or PipelineOptions()
    opts = replace(base, meta={**base.meta, "scope": SCOPE, "seasonExternalId": str(season_external_id)})

    season = await sportmonks.fetch_season_by_id(season_external_id)
    if season is None:
        raise NotFoundError(f"Season {season_external_id} not found at the provider")

    out: dict = {"seasonExternalId": str(season_external_id), "dryRun": opts.dry_run}
    out.update(await _ensure_league(session, season.league_external_id, opts))
    out["season"] = (await upsert_pipeline.run(session, "season", [season], opts)).as_dict()

    if include_teams:
        teams = await sportmonks.fetch_teams_by_season(season_external_id)
        out["teams"] = (await upsert_pipeline.run(session, "team", teams, opts)).as_dict()

    if include_fixtures:
        fixtures = await sportmonks.fetch_fixtures_by_season(season_external_id)
        result = await upsert_pipeline.run(session, "fixture", fixtures, opts)
        out["fixtures"] = result.as_dict()
        if result.newly_finished and not opts.dry_run:
            out["settlement"] = await settlement.settle_fixtures(session, result.newly_finished)

    log.info(
        "seed_season_done season=%s teams=%s fixtures=%s dry_run=%s",
        season_external_id,
        (out.get("teams") or {}).get("total"),
        (out.get("fixtures") or {}).get("total"),
        opts.dry_run,
    )
    return out
