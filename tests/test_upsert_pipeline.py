import asyncio
from decimal import Decimal

import pytest

from app.data.dto import CountryDTO, FixtureDTO, LeagueDTO, OddsDTO, SeasonDTO, TeamDTO
from app.services import entity_store, upsert_pipeline
from app.services.upsert_pipeline import PipelineOptions


def _countries():
    return [
        CountryDTO(external_id="1", name="England", iso2="GB", iso3="GBR"),
        CountryDTO(external_id="2", name="Spain", iso2="ES", iso3="ESP"),
        CountryDTO(external_id="3", name="", iso2="DE"),
        CountryDTO(external_id="4", name="Italy", iso2="IT", iso3="ITA"),
        CountryDTO(external_id="5", name="France", iso2="FR", iso3="FRA"),
    ]


def _run(session, kind, records, **opts):
    return asyncio.run(upsert_pipeline.run(session, kind, records, PipelineOptions(**opts)))


def test_batch_continues_past_invalid_record(fake_session, fake_db):
    result = _run(fake_session, "country", _countries())

    assert (result.total, result.ok, result.fail) == (5, 4, 1)
    batch = fake_db.batches[result.batch_id]
    assert batch["status"] == "success"
    assert batch["name"] == "seed-country"
    assert (batch["items_total"], batch["items_success"], batch["items_failed"]) == (5, 4, 1)

    items = fake_db.batch_items(result.batch_id)
    assert [i["item_key"] for i in items] == ["1", "2", "3", "4", "5"]
    failed = [i for i in items if i["status"] == "failed"]
    assert len(failed) == 1
    assert failed[0]["item_key"] == "3"
    assert "No name specified for country (external_id: 3)" in failed[0]["error_message"]

    assert fake_db.mapped_id("country", "3") is None
    assert len(fake_db.table("country")) == 4


def test_rerun_with_same_input_writes_nothing(fake_session, fake_db):
    _run(fake_session, "country", _countries())
    rows_before = {k: dict(v) for k, v in fake_db.table("country").items()}

    second = _run(fake_session, "country", _countries())

    assert second.inserted == 0
    assert second.updated == 0
    assert second.unchanged == 4
    assert second.rows_affected == 0
    assert fake_db.table("country") == rows_before


def test_changed_fields_are_updated_in_place(fake_session, fake_db):
    _run(fake_session, "country", _countries()[:1])
    iid = fake_db.mapped_id("country", "1")

    result = _run(fake_session, "country", [CountryDTO(external_id="1", name="England", iso2="EN", iso3="ENG")])

    assert result.updated == 1
    assert fake_db.mapped_id("country", "1") == iid
    assert fake_db.table("country")[iid]["iso2"] == "EN"
    item = fake_db.batch_items(result.batch_id)[0]
    assert item["meta"]["changes"]["iso2"] == {"old": "GB", "new": "EN"}


def test_duplicate_external_id_in_one_input_is_idempotent(fake_session, fake_db):
    records = [CountryDTO(external_id="1", name="England"), CountryDTO(external_id="1", name="England")]

    result = _run(fake_session, "country", records)

    assert result.total == 2
    assert (result.inserted, result.unchanged) == (1, 1)
    assert len(fake_db.table("country")) == 1
    assert fake_db.batches[result.batch_id]["items_total"] == 2


def test_empty_input_finishes_batch(fake_session, fake_db):
    result = _run(fake_session, "team", [])

    batch = fake_db.batches[result.batch_id]
    assert batch["status"] == "success"
    assert batch["items_total"] == 0
    assert batch["meta"]["reason"] == "no-input"


def test_dry_run_validates_without_writing(fake_session, fake_db):
    result = _run(fake_session, "country", _countries(), dry_run=True)

    assert result.dry_run is True
    assert result.batch_id is None
    assert (result.ok, result.fail) == (4, 1)
    assert fake_db.batches == {}
    assert fake_db.mappings == {}


def test_required_parent_missing_fails_item(fake_session, fake_db):
    result = _run(fake_session, "season", [SeasonDTO(external_id="77", name="2025/2026", league_external_id="404")])

    assert result.fail == 1
    item = fake_db.batch_items(result.batch_id)[0]
    assert item["status"] == "failed"
    assert "league '404' not found" in item["error_message"]


def test_optional_parent_missing_is_recorded(fake_session, fake_db):
    result = _run(fake_session, "league", [LeagueDTO(external_id="8", name="Premier League", country_external_id="462")])

    assert result.ok == 1
    iid = fake_db.mapped_id("league", "8")
    assert fake_db.table("league")[iid]["country_id"] is None
    item = fake_db.batch_items(result.batch_id)[0]
    assert item["meta"]["unresolvedParents"] == ["country:462"]


def test_parent_mapping_resolves_to_internal_id(fake_session, fake_db):
    _run(fake_session, "country", _countries()[:1])
    _run(fake_session, "league", [LeagueDTO(external_id="8", name="Premier League", country_external_id="1")])

    league = fake_db.table("league")[fake_db.mapped_id("league", "8")]
    assert league["country_id"] == fake_db.mapped_id("country", "1")


def _seed_teams(session):
    _run(session, "team", [TeamDTO(external_id="10", name="Arsenal"), TeamDTO(external_id="20", name="Chelsea")])


def _fixture(state, result=None, home=None, away=None):
    return FixtureDTO(
        external_id="900",
        name="Arsenal vs Chelsea",
        home_team_external_id="10",
        away_team_external_id="20",
        start_ts=1_760_000_000,
        state=state,
        result=result,
        home_score_90=home,
        away_score_90=away,
    )


def test_fixture_finishing_is_reported_once(fake_session, fake_db):
    _seed_teams(fake_session)
    _run(fake_session, "fixture", [_fixture("INPLAY_2ND_HALF", "1-0", 1, 0)])

    finished = _run(fake_session, "fixture", [_fixture("FT", "2:1", 2, 1)])
    again = _run(fake_session, "fixture", [_fixture("FT", "2:1", 2, 1)])

    fid = fake_db.mapped_id("fixture", "900")
    assert finished.newly_finished == [fid]
    assert again.newly_finished == []
    row = fake_db.table("fixture")[fid]
    assert (row["state"], row["result"], row["home_score_90"], row["away_score_90"]) == ("FT", "2-1", 2, 1)


def test_fixture_cannot_leave_finished_state(fake_session, fake_db):
    _seed_teams(fake_session)
    _run(fake_session, "fixture", [_fixture("FT", "2-1", 2, 1)])

    result = _run(fake_session, "fixture", [_fixture("NS")])

    fid = fake_db.mapped_id("fixture", "900")
    assert result.unchanged == 1
    assert fake_db.table("fixture")[fid]["state"] == "FT"
    item = fake_db.batch_items(result.batch_id)[0]
    assert item["meta"]["reason"] == "invalid-state-transition"


def test_interrupted_fixture_is_terminal(fake_session, fake_db):
    _seed_teams(fake_session)
    _run(fake_session, "fixture", [_fixture("INTERRUPTED", "1-0", 1, 0)])

    result = _run(fake_session, "fixture", [_fixture("FT", "2-1", 2, 1)])

    fid = fake_db.mapped_id("fixture", "900")
    assert result.newly_finished == []
    assert fake_db.table("fixture")[fid]["state"] == "INTERRUPTED"
    assert fake_db.batch_items(result.batch_id)[0]["meta"]["reason"] == "invalid-state-transition"



def test_fixture_without_known_teams_fails(fake_session, fake_db):
    result = _run(fake_session, "fixture", [_fixture("NS")])

    assert result.fail == 1
    assert fake_db.mapped_id("fixture", "900") is None


def test_odds_create_missing_bookmaker_and_market(fake_session, fake_db):
    _seed_teams(fake_session)
    _run(fake_session, "fixture", [_fixture("NS")])
    odds = OddsDTO(
        external_id="555",
        fixture_external_id="900",
        bookmaker_external_id="2",
        market_external_id="1",
        value=Decimal("2.10"),
        label="Home",
        bookmaker_name="bet365",
        market_name="Fulltime Result",
    )

    result = _run(fake_session, "odds", [odds])

    assert result.inserted == 1
    assert fake_db.mapped_id("bookmaker", "2") is not None
    assert fake_db.mapped_id("market", "1") is not None
    row = fake_db.table("odds")[fake_db.mapped_id("odds", "555")]
    assert row["fixture_id"] == fake_db.mapped_id("fixture", "900")
    assert row["value"] == Decimal("2.10")


def test_odds_value_must_exceed_one(fake_session, fake_db):
    odds = OddsDTO(
        external_id="556",
        fixture_external_id="900",
        bookmaker_external_id="2",
        market_external_id="1",
        value=Decimal("1.00"),
    )

    result = _run(fake_session, "odds", [odds])

    assert result.fail == 1
    assert "invalid value" in fake_db.batch_items(result.batch_id)[0]["error_message"]


def test_non_finite_odds_value_fails_only_its_item(fake_session, fake_db):
    _seed_teams(fake_session)
    _run(fake_session, "fixture", [_fixture("NS")])
    records = [
        OddsDTO(
            external_id=ext,
            fixture_external_id="900",
            bookmaker_external_id="2",
            market_external_id="1",
            value=value,
            bookmaker_name="bet365",
            market_name="Fulltime Result",
        )
        for ext, value in (("601", Decimal("2.10")), ("602", Decimal("NaN")), ("603", Decimal("Infinity")), ("604", Decimal("1.80")))
    ]

    result = _run(fake_session, "odds", records)

    batch = fake_db.batches[result.batch_id]
    assert batch["status"] == "success"
    assert (batch["items_total"], batch["items_success"], batch["items_failed"]) == (4, 2, 2)
    failed = [i["item_key"] for i in fake_db.batch_items(result.batch_id) if i["status"] == "failed"]
    assert failed == ["602", "603"]
    assert fake_db.mapped_id("odds", "604") is not None


def test_unexpected_error_fails_batch_and_remaining_items(fake_session, fake_db, monkeypatch):
    real_insert = entity_store.insert_entity
    calls = {"n": 0}

    async def _flaky_insert(session, kind, values):
        calls["n"] += 1
        if calls["n"] == 2:
            raise RuntimeError("connection lost")
        return await real_insert(session, kind, values)

    monkeypatch.setattr(entity_store, "insert_entity", _flaky_insert)

    with pytest.raises(RuntimeError, match="connection lost"):
        _run(fake_session, "country", _countries())

    (batch,) = fake_db.batches.values()
    assert batch["status"] == "failed"
    assert batch["error_message"] == "connection lost"
    assert (batch["items_total"], batch["items_success"], batch["items_failed"]) == (5, 1, 4)
    items = fake_db.batch_items(batch["id"])
    assert [(i["item_key"], i["status"]) for i in items] == [("1", "success"), ("2", "failed"), ("3", "failed"), ("4", "failed"), ("5", "failed")]
    assert all(i["meta"]["reason"] == "batch-aborted" for i in items[1:])
    assert items[1]["error_message"] == "connection lost"
    assert batch["items_success"] + batch["items_failed"] == batch["items_total"]
    assert fake_db.mapped_id("country", "2") is None
