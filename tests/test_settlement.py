import asyncio

import pytest

from app.core.errors import NotFoundError, ValidationError
from app.services import settlement


def _setup(db, *, state="FT", home=2, away=1, rules=None):
    fid = db.add_fixture(state=state, home_score_90=home, away_score_90=away, result=f"{home}-{away}" if home is not None else None)
    gid = db.add_group("Office pool", rules=rules)
    gf = db.add_group_fixture(gid, fid)
    preds = {text: db.add_prediction(gf, text) for text in ("2:1", "3:2", "3:0", "0:0")}
    return fid, gid, preds


def test_settle_finished_fixture(fake_session, fake_db):
    fid, gid, preds = _setup(fake_db)

    out = asyncio.run(settlement.settle_fixtures(fake_session, [fid]))

    assert out == {"settled": 4, "skipped": 0, "groupsEnded": 1}
    points = {text: fake_db.predictions[pid]["points"] for text, pid in preds.items()}
    assert points == {"2:1": 3, "3:2": 2, "3:0": 1, "0:0": 0}
    assert all(p["settled_at"] is not None for p in fake_db.predictions.values())
    assert fake_db.groups[gid]["status"] == "ended"


def test_resettle_rejects_not_started_fixture_without_writes(fake_session, fake_db):
    fid, _, _ = _setup(fake_db, state="NS", home=None, away=None)

    with pytest.raises(ValidationError) as err:
        asyncio.run(settlement.resettle(fake_session, fid))

    assert err.value.status_code == 400
    assert all(p["points"] is None and p["settled_at"] is None for p in fake_db.predictions.values())


def test_resettle_unknown_fixture_is_not_found(fake_session, fake_db):
    with pytest.raises(NotFoundError):
        asyncio.run(settlement.resettle(fake_session, 12345))


def test_resettle_is_reproducible(fake_session, fake_db):
    fid, _, preds = _setup(fake_db)

    first = asyncio.run(settlement.resettle(fake_session, fid))
    points_first = {pid: fake_db.predictions[pid]["points"] for pid in preds.values()}
    second = asyncio.run(settlement.resettle(fake_session, fid))
    points_second = {pid: fake_db.predictions[pid]["points"] for pid in preds.values()}

    assert first == second == {"groupsAffected": 1, "predictionsRecalculated": 4}
    assert points_first == points_second


def test_resettle_applies_corrected_score(fake_session, fake_db):
    fid, _, preds = _setup(fake_db)
    asyncio.run(settlement.settle_fixtures(fake_session, [fid]))

    fake_db.table("fixture")[fid].update(home_score_90=3, away_score_90=0, result="3-0")
    asyncio.run(settlement.resettle(fake_session, fid))

    assert fake_db.predictions[preds["3:0"]]["points"] == 3
    assert fake_db.predictions[preds["2:1"]]["points"] == 1


def test_automatic_settlement_skips_already_settled(fake_session, fake_db):
    fid, _, preds = _setup(fake_db)
    asyncio.run(settlement.settle_fixtures(fake_session, [fid]))
    fake_db.predictions[preds["2:1"]]["points"] = 99

    out = asyncio.run(settlement.settle_fixtures(fake_session, [fid]))

    assert out["settled"] == 0
    assert fake_db.predictions[preds["2:1"]]["points"] == 99


def test_fixture_without_score_is_skipped(fake_session, fake_db):
    fid, _, _ = _setup(fake_db, home=None, away=None)

    out = asyncio.run(settlement.settle_fixtures(fake_session, [fid]))

    assert out == {"settled": 0, "skipped": 1, "groupsEnded": 0}


def test_group_rules_change_points(fake_session, fake_db):
    fid, _, preds = _setup(fake_db, rules={"prediction_mode": "MatchWinner", "outcome_points": 2})

    asyncio.run(settlement.settle_fixtures(fake_session, [fid]))

    assert fake_db.predictions[preds["3:0"]]["points"] == 2
    assert fake_db.predictions[preds["0:0"]]["points"] == 0


def test_group_with_open_fixture_stays_active(fake_session, fake_db):
    fid, gid, _ = _setup(fake_db)
    other = fake_db.add_fixture(state="NS")
    fake_db.add_group_fixture(gid, other)

    out = asyncio.run(settlement.settle_fixtures(fake_session, [fid]))

    assert out["groupsEnded"] == 0
    assert fake_db.groups[gid]["status"] == "active"


def test_summary_counts(fake_session, fake_db):
    fid, gid, _ = _setup(fake_db)
    before = asyncio.run(settlement.summarize(fake_session, fid))
    asyncio.run(settlement.settle_fixtures(fake_session, [fid]))
    after = asyncio.run(settlement.summarize(fake_session, fid))

    assert before["unsettledPredictions"] == 4
    assert after["groups"] == [{"groupId": gid, "groupName": "Office pool", "predictionsSettled": 4, "predictionsTotal": 4}]
    assert (after["totalPredictions"], after["settledPredictions"], after["unsettledPredictions"]) == (4, 4, 0)
