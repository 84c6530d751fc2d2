from decimal import Decimal

from app.core.decimalutils import parse_odd, parse_probability
from app.data import normalizer
from app.data.mappers import is_valid_transition, normalize_result, normalize_state, state_category


def test_normalize_state_aliases_and_unknown():
    assert normalize_state("FT") == "FT"
    assert normalize_state("2H") == "INPLAY_2ND_HALF"
    assert normalize_state("pen") == "FT_PEN"
    assert normalize_state("canceled") == "CANCELLED"
    assert normalize_state(None) == "NS"
    assert normalize_state("???") == "NS"


def test_state_categories():
    assert state_category("HT") == "live"
    assert state_category("AET") == "finished"
    assert state_category("POSTPONED") == "canceled"
    assert state_category("INTERRUPTED") == "interrupted"
    assert state_category("TBA") == "not_started"


def test_transitions():
    assert is_valid_transition(None, "FT")
    assert is_valid_transition("NS", "INPLAY_1ST_HALF")
    assert not is_valid_transition("INTERRUPTED", "INPLAY_2ND_HALF")
    assert not is_valid_transition("INTERRUPTED", "FT")
    assert is_valid_transition("INTERRUPTED", "INTERRUPTED")
    assert is_valid_transition("INPLAY_1ST_HALF", "INTERRUPTED")
    assert not is_valid_transition("FT", "NS")
    assert not is_valid_transition("INPLAY_ET", "NS")
    assert not is_valid_transition("CANCELLED", "FT")


def test_normalize_result():
    assert normalize_result("2:1") == "2-1"
    assert normalize_result(" 0 - 0 ") == "0-0"
    assert normalize_result("abc") is None
    assert normalize_result(None) is None


def test_placeholder_teams():
    assert normalizer.looks_like_placeholder_team("Winner Match 49", None)
    assert normalizer.looks_like_placeholder_team("Group A", None)
    assert normalizer.looks_like_placeholder_team("Some FC", "https://cdn.test/team_placeholder.png")
    assert not normalizer.looks_like_placeholder_team("Real Madrid", "https://cdn.test/3468.png")


def test_extra_time_and_penalty_scores():
    scores = [
        {"description": "CURRENT", "score": {"goals": 1, "participant": "home"}},
        {"description": "CURRENT", "score": {"goals": 1, "participant": "away"}},
        {"description": "2ND_HALF", "score": {"goals": 1, "participant": "home"}},
        {"description": "2ND_HALF", "score": {"goals": 1, "participant": "away"}},
        {"description": "PENALTIES", "score": {"goals": 4, "participant": "home"}},
        {"description": "PENALTIES", "score": {"goals": 3, "participant": "away"}},
    ]

    out = normalizer.extract_scores(scores, "FT_PEN")

    assert out["result"] == "1-1"
    assert (out["home_score_90"], out["away_score_90"]) == (1, 1)
    assert (out["home_score_et"], out["away_score_et"]) == (1, 1)
    assert (out["pen_home"], out["pen_away"]) == (4, 3)


def test_fixture_without_scores_keeps_them_empty():
    dto = normalizer.fixture_from_raw({"id": 5, "name": "A vs B", "state": {"developer_name": "NS"}, "starting_at": "2026-10-20 19:45:00"})

    assert dto.result is None and dto.home_score_90 is None
    assert dto.start_ts == 1792525500
    assert dto.home_team_external_id is None


def test_non_finite_odds_and_probabilities_read_as_missing():
    assert parse_odd("NaN") is None
    assert parse_odd("Infinity") is None
    assert parse_odd("-inf") is None
    assert parse_odd(" 2.1 ") == Decimal("2.100")
    assert parse_probability("NaN") is None
    assert parse_probability("Infinity") is None
    assert parse_probability("45.5%") == parse_probability("45.5")


def test_odds_with_nan_probability_keep_their_value():
    (dto,) = normalizer.odds_from_fixture_raw({"id": 100, "odds": [{"id": 1, "value": "2.1", "probability": "NaN"}]})

    assert dto.probability is None
    assert dto.value == parse_odd("2.1")
    assert dto.fixture_external_id == "100"
