"""Prediction scoring policies.

Each group picks a policy by `prediction_mode` and its own point values.
Scoring is a pure function of (prediction, final result, rules).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from app.data.mappers import parse_scores

PREDICTION_MODES = ("CorrectScore", "MatchWinner")
KO_ROUND_MODES = ("FullTime", "ExtraTime", "Penalties")

HOME = "1"
DRAW = "X"
AWAY = "2"

_OUTCOME_ALIASES = {
    "1": HOME,
    "HOME": HOME,
    "HOME_WIN": HOME,
    "X": DRAW,
    "DRAW": DRAW,
    "2": AWAY,
    "AWAY": AWAY,
    "AWAY_WIN": AWAY,
}


@dataclass(frozen=True)
class ScoringRules:
    prediction_mode: str = "CorrectScore"
    on_the_nose_points: int = 3
    correct_difference_points: int = 2
    outcome_points: int = 1
    ko_round_mode: str = "FullTime"

    @classmethod
    def from_row(cls, row) -> "ScoringRules":
        if row is None:
            return cls()
        get = row.get if isinstance(row, dict) else (lambda k, d=None: getattr(row, k, d))
        defaults = cls()
        mode = get("prediction_mode") or defaults.prediction_mode
        ko_mode = get("ko_round_mode") or defaults.ko_round_mode
        return cls(
            prediction_mode=mode if mode in PREDICTION_MODES else defaults.prediction_mode,
            on_the_nose_points=_points(get("on_the_nose_points"), defaults.on_the_nose_points),
            correct_difference_points=_points(get("correct_difference_points"), defaults.correct_difference_points),
            outcome_points=_points(get("outcome_points"), defaults.outcome_points),
            ko_round_mode=ko_mode if ko_mode in KO_ROUND_MODES else defaults.ko_round_mode,
        )


def _points(value, default: int) -> int:
    if value is None:
        return default
    return max(0, int(value))


@dataclass(frozen=True)
class FixtureResult:
    home_score_90: int
    away_score_90: int
    state: str = "FT"
    home_score_et: Optional[int] = None
    away_score_et: Optional[int] = None
    pen_home: Optional[int] = None
    pen_away: Optional[int] = None


@dataclass(frozen=True)
class ScoreOutcome:
    points: int
    winning_correct_score: bool
    winning_match_winner: bool


def outcome_of(home: int, away: int) -> str:
    if home > away:
        return HOME
    if home < away:
        return AWAY
    return DRAW


def decisive_score(result: FixtureResult, ko_round_mode: str) -> tuple[int, int]:
    if ko_round_mode in ("ExtraTime", "Penalties") and result.home_score_et is not None and result.away_score_et is not None:
        return result.home_score_et, result.away_score_et
    return result.home_score_90, result.away_score_90


def decisive_outcome(result: FixtureResult, ko_round_mode: str) -> str:
    home, away = decisive_score(result, ko_round_mode)
    outcome = outcome_of(home, away)
    if (
        ko_round_mode == "Penalties"
        and outcome == DRAW
        and result.pen_home is not None
        and result.pen_away is not None
        and result.pen_home != result.pen_away
    ):
        return outcome_of(result.pen_home, result.pen_away)
    return outcome


def parse_prediction(prediction: Optional[str]) -> tuple[Optional[tuple[int, int]], Optional[str]]:
    """Stored prediction text -> (score or None, outcome or None).

    "2:1" -> ((2, 1), "1"); "X" -> (None, "X"); garbage -> (None, None).
    """
    raw = (prediction or "").strip()
    score = parse_scores(raw)
    if score is not None:
        return score, outcome_of(*score)
    return None, _OUTCOME_ALIASES.get(raw.upper())


def _score_correct_score(prediction: str, result: FixtureResult, rules: ScoringRules) -> ScoreOutcome:
    predicted, predicted_outcome = parse_prediction(prediction)
    if predicted is None:
        return ScoreOutcome(0, False, False)
    actual = decisive_score(result, rules.ko_round_mode)
    actual_outcome = decisive_outcome(result, rules.ko_round_mode)
    outcome_hit = predicted_outcome == actual_outcome
    if predicted == actual:
        return ScoreOutcome(rules.on_the_nose_points, True, outcome_hit)
    if outcome_hit and predicted[0] - predicted[1] == actual[0] - actual[1]:
        return ScoreOutcome(rules.correct_difference_points, False, True)
    if outcome_hit:
        return ScoreOutcome(rules.outcome_points, False, True)
    return ScoreOutcome(0, False, False)


def _score_match_winner(prediction: str, result: FixtureResult, rules: ScoringRules) -> ScoreOutcome:
    _, predicted_outcome = parse_prediction(prediction)
    if predicted_outcome is None:
        return ScoreOutcome(0, False, False)
    if predicted_outcome == decisive_outcome(result, rules.ko_round_mode):
        return ScoreOutcome(rules.outcome_points, False, True)
    return ScoreOutcome(0, False, False)


SCORING_POLICIES: dict[str, Callable[[str, FixtureResult, ScoringRules], ScoreOutcome]] = {
    "CorrectScore": _score_correct_score,
    "MatchWinner": _score_match_winner,
}


def calculate_score(prediction: str, result: FixtureResult, rules: ScoringRules) -> ScoreOutcome:
    policy = SCORING_POLICIES.get(rules.prediction_mode)
    if policy is None:
        raise ValueError(f"Unknown prediction mode {rules.prediction_mode!r}")
    return policy(prediction, result, rules)
