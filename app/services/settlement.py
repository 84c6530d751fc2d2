"""Prediction settlement for finished fixtures.

All prediction writes for one fixture are committed together, so a crash
leaves that fixture's predictions either fully settled or untouched.
Only group_predictions rows (and the group status flip to "ended") are
written here; standings are derived elsewhere.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, ValidationError
from app.core.logger import get_logger
from app.core.timeutils import utcnow
from app.data.mappers import FINISHED_STATES, TERMINAL_STATES, parse_scores
from app.services.scoring import FixtureResult, ScoringRules, calculate_score

log = get_logger("services.settlement")


def fixture_result(fixture: dict) -> FixtureResult:
    """Final result of a stored fixture; raises ValidationError when it cannot be settled."""
    fixture_id = fixture.get("id")
    state = (fixture.get("state") or "").upper()
    if state not in FINISHED_STATES:
        raise ValidationError(
            f"Fixture {fixture_id} is not finished (state={state or 'unknown'})",
            details={"fixtureId": fixture_id, "state": state},
        )
    home = fixture.get("home_score_90")
    away = fixture.get("away_score_90")
    if home is None or away is None:
        parsed = parse_scores(fixture.get("result"))
        if parsed is not None:
            home, away = parsed
    if home is None or away is None:
        raise ValidationError(
            f"Fixture {fixture_id} has no final score",
            details={"fixtureId": fixture_id, "state": state},
        )
    return FixtureResult(
        home_score_90=int(home),
        away_score_90=int(away),
        state=state,
        home_score_et=fixture.get("home_score_et"),
        away_score_et=fixture.get("away_score_et"),
        pen_home=fixture.get("pen_home"),
        pen_away=fixture.get("pen_away"),
    )


async def _load_fixture(session: AsyncSession, fixture_id: int) -> Optional[dict]:
    res = await session.execute(
        text(
            """
            SELECT id, state, result, home_score_90, away_score_90,
                   home_score_et, away_score_et, pen_home, pen_away
            FROM fixtures
            WHERE id=:id
            """
        ),
        {"id": fixture_id},
    )
    row = res.first()
    return dict(row._mapping) if row else None


async def _load_group_fixtures(session: AsyncSession, fixture_id: int) -> list[dict]:
    res = await session.execute(
        text(
            """
            SELECT gf.id, gf.group_id, g.name AS group_name
            FROM group_fixtures gf
            JOIN groups g ON g.id = gf.group_id
            WHERE gf.fixture_id=:fixture_id
            ORDER BY gf.group_id
            """
        ),
        {"fixture_id": fixture_id},
    )
    return [dict(r._mapping) for r in res.fetchall()]


async def _load_rules(session: AsyncSession, group_ids: list[int]) -> dict[int, ScoringRules]:
    stmt = text(
        """
        SELECT group_id, prediction_mode, on_the_nose_points, correct_difference_points,
               outcome_points, ko_round_mode
        FROM group_rules
        WHERE group_id IN :group_ids
        """
    ).bindparams(bindparam("group_ids", expanding=True))
    res = await session.execute(stmt, {"group_ids": group_ids})
    return {int(r.group_id): ScoringRules.from_row(dict(r._mapping)) for r in res.fetchall()}


async def _load_predictions(session: AsyncSession, group_fixture_ids: list[int], *, only_unsettled: bool) -> list[dict]:
    stmt = text(
        """
        SELECT id, group_id, group_fixture_id, prediction
        FROM group_predictions
        WHERE group_fixture_id IN :gf_ids
          AND (:all_rows OR settled_at IS NULL)
        ORDER BY id
        """
    ).bindparams(bindparam("gf_ids", expanding=True))
    res = await session.execute(stmt, {"gf_ids": group_fixture_ids, "all_rows": not only_unsettled})
    return [dict(r._mapping) for r in res.fetchall()]


async def _write_settlements(session: AsyncSession, updates: list[dict], settled_at) -> None:
    if not updates:
        return
    await session.execute(
        text(
            """
            UPDATE group_predictions
            SET points=:points,
                winning_correct_score=:winning_correct_score,
                winning_match_winner=:winning_match_winner,
                settled_at=:settled_at,
                updated_at=now()
            WHERE id=:id
            """
        ),
        [{**u, "settled_at": settled_at} for u in updates],
    )


async def _transition_completed_groups(session: AsyncSession, group_ids: list[int]) -> int:
    if not group_ids:
        return 0
    stmt = text(
        """
        UPDATE groups g
        SET status='ended', updated_at=now()
        WHERE g.id IN :group_ids
          AND g.status='active'
          AND EXISTS (SELECT 1 FROM group_fixtures gf WHERE gf.group_id=g.id)
          AND NOT EXISTS (
            SELECT 1
            FROM group_fixtures gf
            JOIN fixtures f ON f.id = gf.fixture_id
            WHERE gf.group_id=g.id
              AND f.state NOT IN :terminal_states
          )
        RETURNING g.id
        """
    ).bindparams(bindparam("group_ids", expanding=True), bindparam("terminal_states", expanding=True))
    res = await session.execute(stmt, {"group_ids": group_ids, "terminal_states": sorted(TERMINAL_STATES)})
    ended = [int(r[0]) for r in res.fetchall()]
    if ended:
        log.info("groups_ended group_ids=%s", ended)
    return len(ended)


def _compute_updates(predictions: list[dict], result: FixtureResult, rules_by_group: dict[int, ScoringRules]) -> list[dict]:
    updates = []
    for pred in predictions:
        rules = rules_by_group.get(int(pred["group_id"])) or ScoringRules()
        outcome = calculate_score(pred.get("prediction") or "", result, rules)
        updates.append(
            {
                "id": int(pred["id"]),
                "points": outcome.points,
                "winning_correct_score": outcome.winning_correct_score,
                "winning_match_winner": outcome.winning_match_winner,
            }
        )
    return updates


async def _settle_fixture(session: AsyncSession, fixture: dict, *, only_unsettled: bool) -> dict[str, Any]:
    result = fixture_result(fixture)
    group_fixtures = await _load_group_fixtures(session, int(fixture["id"]))
    if not group_fixtures:
        return {"groups": [], "predictions": 0, "groupsEnded": 0}
    group_ids = sorted({int(gf["group_id"]) for gf in group_fixtures})
    rules_by_group = await _load_rules(session, group_ids)
    predictions = await _load_predictions(session, [int(gf["id"]) for gf in group_fixtures], only_unsettled=only_unsettled)
    updates = _compute_updates(predictions, result, rules_by_group)
    try:
        await _write_settlements(session, updates, utcnow())
        groups_ended = await _transition_completed_groups(session, group_ids)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return {
        "groups": sorted({int(p["group_id"]) for p in predictions}),
        "predictions": len(updates),
        "groupsEnded": groups_ended,
    }


async def resettle(session: AsyncSession, fixture_id: int) -> dict[str, int]:
    """Recompute and overwrite points for every prediction on the fixture."""
    fixture = await _load_fixture(session, fixture_id)
    if fixture is None:
        raise NotFoundError(f"Fixture {fixture_id} not found", details={"fixtureId": fixture_id})
    out = await _settle_fixture(session, fixture, only_unsettled=False)
    log.info(
        "fixture_resettled fixture_id=%s groups=%s predictions=%s",
        fixture_id,
        len(out["groups"]),
        out["predictions"],
    )
    return {"groupsAffected": len(out["groups"]), "predictionsRecalculated": out["predictions"]}


async def settle_fixtures(session: AsyncSession, fixture_ids: Iterable[int]) -> dict[str, int]:
    """Settle not-yet-settled predictions for fixtures that just finished.

    Fixtures that are not finished or lack a score are counted as skipped;
    they are picked up again by a later pass.
    """
    settled = skipped = groups_ended = 0
    for fixture_id in sorted({int(x) for x in fixture_ids}):
        fixture = await _load_fixture(session, fixture_id)
        if fixture is None:
            skipped += 1
            continue
        try:
            out = await _settle_fixture(session, fixture, only_unsettled=True)
        except ValidationError as exc:
            log.warning("settlement_skipped fixture_id=%s reason=%s", fixture_id, exc.message)
            skipped += 1
            continue
        settled += out["predictions"]
        groups_ended += out["groupsEnded"]
    if settled or skipped:
        log.info("settlement_done settled=%s skipped=%s groups_ended=%s", settled, skipped, groups_ended)
    return {"settled": settled, "skipped": skipped, "groupsEnded": groups_ended}


async def pending_fixture_ids(session: AsyncSession, *, limit: int = 500) -> list[int]:
    """Finished fixtures that still have unsettled predictions."""
    stmt = text(
        """
        SELECT DISTINCT gf.fixture_id
        FROM group_predictions gp
        JOIN group_fixtures gf ON gf.id = gp.group_fixture_id
        JOIN fixtures f ON f.id = gf.fixture_id
        WHERE gp.settled_at IS NULL
          AND f.state IN :finished_states
        ORDER BY gf.fixture_id
        LIMIT :limit
        """
    ).bindparams(bindparam("finished_states", expanding=True))
    res = await session.execute(stmt, {"finished_states": sorted(FINISHED_STATES), "limit": int(limit)})
    return [int(r[0]) for r in res.fetchall()]


async def _load_summary_rows(session: AsyncSession, fixture_id: int) -> list[dict]:
    res = await session.execute(
        text(
            """
            SELECT g.id AS group_id,
                   g.name AS group_name,
                   COUNT(gp.id) AS predictions_total,
                   COUNT(gp.id) FILTER (WHERE gp.settled_at IS NOT NULL) AS predictions_settled
            FROM group_fixtures gf
            JOIN groups g ON g.id = gf.group_id
            LEFT JOIN group_predictions gp ON gp.group_fixture_id = gf.id
            WHERE gf.fixture_id=:fixture_id
            GROUP BY g.id, g.name
            ORDER BY g.id
            """
        ),
        {"fixture_id": fixture_id},
    )
    return [dict(r._mapping) for r in res.fetchall()]


async def summarize(session: AsyncSession, fixture_id: int) -> dict[str, Any]:
    fixture = await _load_fixture(session, fixture_id)
    if fixture is None:
        raise NotFoundError(f"Fixture {fixture_id} not found", details={"fixtureId": fixture_id})
    rows = await _load_summary_rows(session, fixture_id)
    groups = [
        {
            "groupId": int(r["group_id"]),
            "groupName": r["group_name"],
            "predictionsSettled": int(r["predictions_settled"] or 0),
            "predictionsTotal": int(r["predictions_total"] or 0),
        }
        for r in rows
    ]
    total = sum(g["predictionsTotal"] for g in groups)
    settled = sum(g["predictionsSettled"] for g in groups)
    return {
        "fixtureId": fixture_id,
        "state": fixture.get("state"),
        "groups": groups,
        "totalPredictions": total,
        "settledPredictions": settled,
        "unsettledPredictions": total - settled,
    }
