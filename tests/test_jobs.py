import asyncio

import pytest

from app.core.errors import NotFoundError
from app.data.dto import CountryDTO, FixtureDTO, LeagueDTO, SeasonDTO, TeamDTO
from app.data.providers import sportmonks
from app.jobs import (
    finished_fixtures,
    prematch_odds,
    reference_data,
    seed_season,
    settle_predictions,
    upcoming_fixtures,
)
from app.jobs.base import JobContext, JobRunOptions
from app.services import reconciliation, settlement, upsert_pipeline


def _ctx(key, *, dry_run=False, **params):
    return JobContext(job_key=key, job_run_id=None, options=JobRunOptions(dry_run=dry_run), params=params)


def _fixture(state, home=None, away=None):
    return FixtureDTO(
        external_id="900",
        name="Arsenal vs Chelsea",
        home_team_external_id="10",
        away_team_external_id="20",
        start_ts=1_760_000_000,
        state=state,
        result=f"{home}-{away}" if home is not None else None,
        home_score_90=home,
        away_score_90=away,
    )


def _seed_open_fixture(session, db):
    teams = [TeamDTO(external_id="10", name="Arsenal"), TeamDTO(external_id="20", name="Chelsea")]
    asyncio.run(upsert_pipeline.run(session, "team", teams))
    asyncio.run(upsert_pipeline.run(session, "fixture", [_fixture("NS")]))
    fid = db.mapped_id("fixture", "900")
    gf = db.add_group_fixture(db.add_group("Friday league"), fid)
    pid = db.add_prediction(gf, "2:1")
    return fid, pid


def _async_return(value, calls=None):
    async def _fake(*args, **kwargs):
        if calls is not None:
            calls.append((args, kwargs))
        return value

    return _fake


def test_upcoming_fixtures_settles_newly_finished(fake_session, fake_db, monkeypatch):
    _, pid = _seed_open_fixture(fake_session, fake_db)
    calls = []
    monkeypatch.setattr(sportmonks, "fetch_fixtures_between", _async_return([_fixture("FT", 2, 1)], calls))

    outcome = asyncio.run(upcoming_fixtures.run(fake_session, _ctx(upcoming_fixtures.JOB_KEY, filters="fixtureStates:1")))

    assert calls[0][1] == {"filters": "fixtureStates:1"}
    assert outcome.meta["fixtures"]["updated"] == 1
    assert outcome.meta["settlement"] == {"settled": 1, "skipped": 0, "groupsEnded": 1}
    assert fake_db.predictions[pid]["points"] == 3


def test_dry_run_fixture_sync_does_not_settle(fake_session, fake_db, monkeypatch):
    _, pid = _seed_open_fixture(fake_session, fake_db)
    monkeypatch.setattr(sportmonks, "fetch_fixtures_between", _async_return([_fixture("FT", 2, 1)]))

    outcome = asyncio.run(upcoming_fixtures.run(fake_session, _ctx(upcoming_fixtures.JOB_KEY, dry_run=True)))

    assert "settlement" not in outcome.meta
    assert outcome.rows_affected == 0
    assert fake_db.predictions[pid]["points"] is None


def test_finished_fixtures_without_candidates_skips_provider(fake_session, fake_db, monkeypatch):
    calls = []
    monkeypatch.setattr(finished_fixtures, "_select_stale_live_fixture_external_ids", _async_return([]))
    monkeypatch.setattr(sportmonks, "fetch_fixtures_by_ids", _async_return([], calls))

    outcome = asyncio.run(finished_fixtures.run(fake_session, _ctx(finished_fixtures.JOB_KEY)))

    assert outcome.meta == {"candidates": 0}
    assert calls == []


def test_finished_fixtures_refetches_stale_live_matches(fake_session, fake_db, monkeypatch):
    _, pid = _seed_open_fixture(fake_session, fake_db)
    calls = []
    monkeypatch.setattr(finished_fixtures, "_select_stale_live_fixture_external_ids", _async_return(["900"]))
    monkeypatch.setattr(sportmonks, "fetch_fixtures_by_ids", _async_return([_fixture("FT", 0, 0)], calls))

    outcome = asyncio.run(finished_fixtures.run(fake_session, _ctx(finished_fixtures.JOB_KEY)))

    assert calls[0][0] == (["900"],)
    assert outcome.meta["candidates"] == 1
    assert fake_db.predictions[pid]["points"] == 0
    assert fake_db.predictions[pid]["settled_at"] is not None


def test_prematch_odds_passes_bookmaker_and_market_filters(fake_session, fake_db, monkeypatch):
    calls = []
    monkeypatch.setattr(sportmonks, "fetch_odds_between", _async_return([], calls))

    outcome = asyncio.run(
        prematch_odds.run(
            fake_session,
            _ctx(prematch_odds.JOB_KEY, days_ahead=7, bookmaker_external_ids=[2], market_external_ids=[1, 57]),
        )
    )

    assert calls[0][1] == {"filters": {"bookmakers": [2], "markets": [1, 57]}}
    assert outcome.rows_affected == 0
    assert outcome.meta["odds"]["total"] == 0


def test_odds_filters_drop_empty_lists():
    assert prematch_odds.odds_filters(None, []) == {}
    assert prematch_odds.odds_filters((2,), None) == {"bookmakers": [2]}


def test_settle_job_dry_run_only_counts(fake_session, fake_db, monkeypatch):
    fid = fake_db.add_fixture(state="FT", home_score_90=1, away_score_90=0, result="1-0")
    pid = fake_db.add_prediction(fake_db.add_group_fixture(fake_db.add_group("Cup"), fid), "1:0")
    monkeypatch.setattr(settlement, "pending_fixture_ids", _async_return([fid]))

    dry = asyncio.run(settle_predictions.run(fake_session, _ctx(settle_predictions.JOB_KEY, dry_run=True)))
    assert dry.meta == {"pendingFixtures": 1}
    assert fake_db.predictions[pid]["points"] is None

    real = asyncio.run(settle_predictions.run(fake_session, _ctx(settle_predictions.JOB_KEY)))
    assert real.rows_affected == 1
    assert fake_db.predictions[pid]["points"] == 3


def test_reference_sync_runs_requested_kinds(fake_session, fake_db, monkeypatch):
    monkeypatch.setitem(
        reconciliation.PROVIDER_FETCHERS, "country", _async_return([CountryDTO(external_id="1", name="England")])
    )

    outcome = asyncio.run(reference_data.run(fake_session, _ctx(reference_data.JOB_KEY, kinds=["country", "planet"])))

    assert list(outcome.meta["kinds"]) == ["country"]
    assert outcome.rows_affected == 1
    assert fake_db.mapped_id("country", "1") is not None


def test_sync_kind_pushes_only_missing_records(fake_session, fake_db, monkeypatch):
    asyncio.run(upsert_pipeline.run(fake_session, "country", [CountryDTO(external_id="1", name="England")]))
    provider = [CountryDTO(external_id="1", name="England (renamed)"), CountryDTO(external_id="2", name="Spain")]
    monkeypatch.setitem(reconciliation.PROVIDER_FETCHERS, "country", _async_return(provider))

    out = asyncio.run(reference_data.sync_kind(fake_session, "country", scope="missing"))

    assert out["report"]["counts"]["missingInStore"] == 1
    assert out["result"]["inserted"] == 1
    england = fake_db.table("country")[fake_db.mapped_id("country", "1")]
    assert england["name"] == "England"


def _season_provider(monkeypatch, calls):
    season = SeasonDTO(external_id="23614", name="2024/2025", league_external_id="8", is_finished=True)
    teams = [TeamDTO(external_id="10", name="Arsenal"), TeamDTO(external_id="20", name="Chelsea")]
    monkeypatch.setattr(sportmonks, "fetch_season_by_id", _async_return(season, calls.setdefault("season", [])))
    monkeypatch.setattr(
        sportmonks,
        "fetch_league_by_id",
        _async_return(LeagueDTO(external_id="8", name="Premier League", country_external_id="462"), calls.setdefault("league", [])),
    )
    monkeypatch.setattr(sportmonks, "fetch_country_by_id", _async_return(CountryDTO(external_id="462", name="England")))
    monkeypatch.setattr(sportmonks, "fetch_teams_by_season", _async_return(teams, calls.setdefault("teams", [])))
    monkeypatch.setattr(sportmonks, "fetch_fixtures_by_season", _async_return([_fixture("FT", 2, 1)], calls.setdefault("fixtures", [])))


def test_seed_season_creates_parents_teams_and_fixtures(fake_session, fake_db, monkeypatch):
    calls = {}
    _season_provider(monkeypatch, calls)

    out = asyncio.run(seed_season.seed_season(fake_session, "23614"))

    assert (out["country"]["inserted"], out["league"]["inserted"], out["season"]["inserted"]) == (1, 1, 1)
    assert out["teams"]["inserted"] == 2
    assert out["fixtures"]["inserted"] == 1
    season_row = fake_db.table("season")[fake_db.mapped_id("season", "23614")]
    assert season_row["league_id"] == fake_db.mapped_id("league", "8")
    assert season_row["is_finished"] is True
    assert calls["teams"][0][0] == ("23614",)
    assert all(b["meta"]["scope"] == "seed-season" for b in fake_db.batches.values())
    assert {b["meta"]["seasonExternalId"] for b in fake_db.batches.values()} == {"23614"}


def test_seed_season_reuses_mapped_league_and_can_skip_teams(fake_session, fake_db, monkeypatch):
    asyncio.run(upsert_pipeline.run(fake_session, "league", [LeagueDTO(external_id="8", name="Premier League")]))
    asyncio.run(upsert_pipeline.run(fake_session, "team", [TeamDTO(external_id="10", name="Arsenal"), TeamDTO(external_id="20", name="Chelsea")]))
    calls = {}
    _season_provider(monkeypatch, calls)

    out = asyncio.run(seed_season.seed_season(fake_session, "23614", include_teams=False))

    assert calls["league"] == []
    assert calls["teams"] == []
    assert "teams" not in out and "league" not in out
    assert out["fixtures"]["inserted"] == 1


def test_seed_season_dry_run_writes_nothing(fake_session, fake_db, monkeypatch):
    _season_provider(monkeypatch, {})

    out = asyncio.run(
        seed_season.seed_season(fake_session, "23614", options=upsert_pipeline.PipelineOptions(dry_run=True))
    )

    assert out["dryRun"] is True
    assert out["season"]["total"] == 1
    assert fake_db.batches == {}
    assert fake_db.mapped_id("season", "23614") is None


def test_seed_unknown_season_is_not_found(fake_session, monkeypatch):
    monkeypatch.setattr(sportmonks, "fetch_season_by_id", _async_return(None))

    with pytest.raises(NotFoundError):
        asyncio.run(seed_season.seed_season(fake_session, "1"))
