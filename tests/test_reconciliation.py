import asyncio

import pytest

from app.core.errors import ValidationError
from app.data.dto import CountryDTO, FixtureDTO, LeagueDTO, SeasonDTO, TeamDTO
from app.data.providers import sportmonks
from app.services import reconciliation, upsert_pipeline
from app.services.reconciliation import compare, select_records


def _store_countries(session, records):
    asyncio.run(upsert_pipeline.run(session, "country", records))


def test_diff_reports_missing_extra_and_matching(fake_session, fake_db):
    _store_countries(
        fake_session,
        [
            CountryDTO(external_id="B", name="Belgium"),
            CountryDTO(external_id="C", name="Croatia"),
            CountryDTO(external_id="D", name="Denmark"),
        ],
    )
    provider = [
        CountryDTO(external_id="A", name="Austria"),
        CountryDTO(external_id="B", name="Belgium"),
        CountryDTO(external_id="C", name="Croatia"),
    ]

    report = asyncio.run(reconciliation.diff(fake_session, "country", provider_records=provider))

    assert report.missing_in_store == ["A"]
    assert report.extra_in_store == ["D"]
    assert report.matching == ["B", "C"]
    assert report.mismatched == []


def test_mismatch_lists_changed_fields(fake_session, fake_db):
    _store_countries(fake_session, [CountryDTO(external_id="1", name="England", iso2="GB")])

    report = asyncio.run(
        reconciliation.diff(fake_session, "country", provider_records=[CountryDTO(external_id="1", name="England", iso2="EN")])
    )

    (mismatch,) = report.mismatched
    assert mismatch["externalId"] == "1"
    assert mismatch["fields"] == {"iso2": {"provider": "EN", "stored": "GB"}}
    assert report.as_dict()["counts"]["mismatched"] == 1


def test_diff_is_read_only(fake_session, fake_db):
    before = fake_db.snapshot()

    asyncio.run(reconciliation.diff(fake_session, "country", provider_records=[CountryDTO(external_id="9", name="Norway")]))

    assert fake_db.snapshot() == before


def test_parent_columns_are_not_compared():
    stored = {"10": {"internal_id": 1, "name": "Arsenal", "short_code": None, "country_id": 77, "founded": None, "type": None, "image_path": None}}
    report = compare("team", [TeamDTO(external_id="10", name="Arsenal", country_external_id="462")], stored)

    assert report.matching == ["10"]


def test_invalid_provider_record_is_reported():
    stored = {"1": {"internal_id": 1, "name": "England", "iso2": None, "iso3": None, "image_path": None}}
    report = compare("country", [CountryDTO(external_id="1", name="")], stored)

    assert report.invalid_in_provider[0]["externalId"] == "1"
    assert report.matching == []


def test_numeric_ids_sort_numerically():
    report = compare("country", [CountryDTO(external_id=x, name="n") for x in ("10", "9", "100")], {})
    assert report.missing_in_store == ["9", "10", "100"]


def test_select_records_by_scope():
    records = [CountryDTO(external_id=x, name=x) for x in ("A", "B", "C")]
    report = reconciliation.ReconciliationReport(
        entity_kind="country",
        missing_in_store=["A"],
        mismatched=[{"externalId": "B", "fields": {}}],
        matching=["C"],
    )

    assert [r.external_id for r in select_records(report, records, "missing")] == ["A"]
    assert [r.external_id for r in select_records(report, records, "mismatched")] == ["B"]
    assert [r.external_id for r in select_records(report, records, "missing+mismatched")] == ["A", "B"]
    assert len(select_records(report, records, "all")) == 3
    with pytest.raises(ValidationError):
        select_records(report, records, "everything")


def test_live_diff_unsupported_for_fixtures(fake_session):
    with pytest.raises(ValidationError):
        asyncio.run(reconciliation.diff(fake_session, "fixture"))


def _fixture(external_id, start_ts):
    return FixtureDTO(
        external_id=external_id,
        name=f"Fixture {external_id}",
        home_team_external_id="10",
        away_team_external_id="20",
        start_ts=start_ts,
        state="NS",
    )


# 2026-10-20 00:00:00 UTC
WINDOW_START = 1_792_454_400
WINDOW_END = WINDOW_START + 2 * 86_400 - 1


def test_fixture_diff_only_looks_inside_the_window(fake_session, fake_db):
    teams = [TeamDTO(external_id="10", name="Arsenal"), TeamDTO(external_id="20", name="Chelsea")]
    asyncio.run(upsert_pipeline.run(fake_session, "team", teams))
    stored = [
        _fixture("100", 1_760_000_000),
        _fixture("101", WINDOW_START + 70_000),
        _fixture("103", WINDOW_END),
        _fixture("104", WINDOW_END + 1),
    ]
    asyncio.run(upsert_pipeline.run(fake_session, "fixture", stored))
    provider = [_fixture("101", WINDOW_START + 70_000), _fixture("102", WINDOW_START)]

    report = asyncio.run(reconciliation.diff_fixtures(fake_session, "2026-10-20", "2026-10-21", provider_records=provider))

    assert report.matching == ["101"]
    assert report.missing_in_store == ["102"]
    assert report.extra_in_store == ["103"]


def test_fixture_window_fetches_between_dates(fake_session, fake_db, monkeypatch):
    calls = []

    async def _between(date_from, date_to, filters=None):
        calls.append((date_from, date_to))
        return []

    monkeypatch.setattr(sportmonks, "fetch_fixtures_between", _between)

    report = asyncio.run(reconciliation.diff_fixtures(fake_session, "2026-10-20", "2026-10-21"))

    assert calls == [("2026-10-20", "2026-10-21")]
    assert report.as_dict()["counts"]["extraInStore"] == 0


def test_fixture_window_bounds():
    assert reconciliation.fixture_window("2026-10-20", "2026-10-21") == (WINDOW_START, WINDOW_END)
    with pytest.raises(ValidationError):
        reconciliation.fixture_window("2026-10-21", "2026-10-20")
    with pytest.raises(ValidationError):
        reconciliation.fixture_window("20/10/2026", "2026-10-21")
    with pytest.raises(ValidationError):
        reconciliation.fixture_window("2026-01-01", "2026-12-31")


def test_finished_seasons_are_fetched_for_reconciliation(fake_session, fake_db, monkeypatch):
    asyncio.run(upsert_pipeline.run(fake_session, "league", [LeagueDTO(external_id="8", name="Premier League")]))
    season = SeasonDTO(
        external_id="77",
        name="2024/2025",
        league_external_id="8",
        start_date="2024-08-16",
        end_date="2025-05-25",
        is_finished=True,
    )
    asyncio.run(upsert_pipeline.run(fake_session, "season", [season]))

    async def _pages(api, path, **kwargs):
        return [
            {
                "id": 77,
                "league_id": 8,
                "name": "2024/2025",
                "starting_at": "2024-08-16",
                "ending_at": "2025-05-25",
                "is_current": False,
                "finished": True,
                "pending": False,
            }
        ]

    monkeypatch.setattr(sportmonks, "sm_get_all_pages", _pages)

    report = asyncio.run(reconciliation.diff(fake_session, "season"))

    assert report.matching == ["77"]
    assert report.extra_in_store == []
