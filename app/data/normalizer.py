"""Sportmonks payload -> DTO conversion.

Nothing outside this module and the provider adapter reads Sportmonks field names.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Iterable, Optional

from app.core.decimalutils import parse_odd, parse_probability
from app.core.timeutils import coerce_epoch_seconds, to_epoch_seconds
from app.data.dto import (
    BookmakerDTO,
    CountryDTO,
    FixtureDTO,
    LeagueDTO,
    MarketDTO,
    OddsDTO,
    SeasonDTO,
    TeamDTO,
)
from app.data.mappers import normalize_result, normalize_state

CURRENT_SCORE_TYPE_ID = 1525

_SCORE_90_DESCRIPTIONS = {"2ND_HALF"}
_SCORE_ET_DESCRIPTIONS = {"EXTRA_TIME", "ET", "AFTER_EXTRA_TIME"}
_SCORE_PEN_DESCRIPTIONS = {"PENALTIES", "PENALTY_SHOOTOUT"}

_PLACEHOLDER_IMG_FRAGMENT = "/team_placeholder.png"
_PLACEHOLDER_NAME_PATTERNS = [
    re.compile(r"^(winner|loser)\b", re.I),
    re.compile(r"^runner[-\s]?up\b", re.I),
    re.compile(r"^tbc$", re.I),
    re.compile(r"^\d+(st|nd|rd|th)\s+group\b", re.I),
    re.compile(r"^group\s+[A-Z]$", re.I),
]


def _ext(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip() or None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _int(value: Any) -> Optional[int]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _name(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return _text(value.get("name"))
    return None


def country_from_raw(raw: dict) -> CountryDTO:
    return CountryDTO(
        external_id=_ext(raw.get("id")),
        name=_text(raw.get("name")) or "",
        iso2=_text(raw.get("iso2")),
        iso3=_text(raw.get("iso3")),
        image_path=_text(raw.get("image_path")),
    )


def league_from_raw(raw: dict) -> LeagueDTO:
    return LeagueDTO(
        external_id=_ext(raw.get("id")),
        name=_text(raw.get("name")) or "",
        country_external_id=_ext(raw.get("country_id")),
        short_code=_text(raw.get("short_code")),
        type=_text(raw.get("type")),
        sub_type=_text(raw.get("sub_type")),
        image_path=_text(raw.get("image_path")),
    )


def season_from_raw(raw: dict) -> SeasonDTO:
    return SeasonDTO(
        external_id=_ext(raw.get("id")),
        name=_text(raw.get("name")) or "",
        league_external_id=_ext(raw.get("league_id")),
        start_date=_text(raw.get("starting_at")),
        end_date=_text(raw.get("ending_at")),
        is_current=bool(raw.get("is_current")),
        is_finished=bool(raw.get("finished")),
        is_pending=bool(raw.get("pending")),
    )


def looks_like_placeholder_team(name: Optional[str], image_path: Optional[str]) -> bool:
    """Bracket slots such as "Winner Match 3" are published as teams by the provider."""
    if not name:
        return True
    if any(rx.search(name) for rx in _PLACEHOLDER_NAME_PATTERNS):
        return True
    return bool(image_path and _PLACEHOLDER_IMG_FRAGMENT in image_path)


def team_from_raw(raw: dict) -> TeamDTO:
    kind = raw.get("type")
    return TeamDTO(
        external_id=_ext(raw.get("id")),
        name=_text(raw.get("name")) or "",
        short_code=_text(raw.get("short_code")),
        country_external_id=_ext(raw.get("country_id")),
        founded=_int(raw.get("founded")),
        type=kind.lower() if isinstance(kind, str) else None,
        image_path=_text(raw.get("image_path")),
    )


def bookmaker_from_raw(raw: dict) -> BookmakerDTO:
    return BookmakerDTO(external_id=_ext(raw.get("id")), name=_text(raw.get("name")) or "")


def market_from_raw(raw: dict) -> MarketDTO:
    return MarketDTO(
        external_id=_ext(raw.get("id")),
        name=_text(raw.get("name")) or "",
        description=_text(raw.get("description")),
        developer_name=_text(raw.get("developer_name")),
    )


def extract_teams(participants: Optional[Iterable[dict]]) -> tuple[Optional[str], Optional[str]]:
    home_id: Optional[str] = None
    away_id: Optional[str] = None
    for p in participants or []:
        location = str(((p or {}).get("meta") or {}).get("location") or "").lower()
        if location == "home":
            home_id = _ext(p.get("id"))
        elif location == "away":
            away_id = _ext(p.get("id"))
    return home_id, away_id


def _score_pair(scores: Iterable[dict], match) -> Optional[tuple[int, int]]:
    home = away = None
    for entry in scores:
        if not match(entry):
            continue
        score = entry.get("score") or {}
        side = str(score.get("participant") or "").lower()
        goals = _int(score.get("goals"))
        if side == "home":
            home = goals
        elif side == "away":
            away = goals
    if home is None or away is None:
        return None
    return home, away


def _by_description(descriptions: set[str]):
    return lambda entry: str(entry.get("description") or "").upper() in descriptions


def extract_scores(scores: Optional[list], state: str) -> dict:
    """Score breakdown for a fixture; every field stays None until the provider reports it."""
    out = {
        "result": None,
        "home_score_90": None,
        "away_score_90": None,
        "home_score_et": None,
        "away_score_et": None,
        "pen_home": None,
        "pen_away": None,
    }
    if not isinstance(scores, list) or not scores:
        return out

    current = _score_pair(
        scores,
        lambda e: e.get("type_id") == CURRENT_SCORE_TYPE_ID or str(e.get("description") or "").upper() == "CURRENT",
    )
    if current is not None:
        out["result"] = normalize_result(f"{current[0]}:{current[1]}")

    ninety = _score_pair(scores, _by_description(_SCORE_90_DESCRIPTIONS))
    if ninety is None and state == "FT":
        ninety = current
    if ninety is not None:
        out["home_score_90"], out["away_score_90"] = ninety

    extra = _score_pair(scores, _by_description(_SCORE_ET_DESCRIPTIONS))
    if extra is None and state in {"AET", "FT_PEN"}:
        extra = current
    if extra is not None:
        out["home_score_et"], out["away_score_et"] = extra

    pens = _score_pair(scores, _by_description(_SCORE_PEN_DESCRIPTIONS))
    if pens is not None:
        out["pen_home"], out["pen_away"] = pens
    return out


def _live_minute(periods: Optional[list]) -> Optional[int]:
    for period in periods or []:
        if period.get("ticking"):
            return _int(period.get("minutes"))
    return None


def _state_code(raw: dict) -> str:
    state = raw.get("state")
    if isinstance(state, dict):
        return normalize_state(state.get("developer_name") or state.get("short_name") or state.get("state"))
    return normalize_state(None)


def _start_ts(raw: dict) -> Optional[int]:
    ts = coerce_epoch_seconds(raw.get("starting_at_timestamp"))
    if ts is not None:
        return ts
    starting_at = _text(raw.get("starting_at"))
    if not starting_at:
        return None
    try:
        return to_epoch_seconds(datetime.fromisoformat(starting_at.replace(" ", "T")))
    except ValueError:
        return None


def fixture_from_raw(raw: dict) -> FixtureDTO:
    home_id, away_id = extract_teams(raw.get("participants"))
    state = _state_code(raw)
    scores = extract_scores(raw.get("scores"), state)
    return FixtureDTO(
        external_id=_ext(raw.get("id")),
        name=_text(raw.get("name")) or "",
        home_team_external_id=home_id,
        away_team_external_id=away_id,
        start_ts=_start_ts(raw),
        state=state,
        league_external_id=_ext(raw.get("league_id")),
        season_external_id=_ext(raw.get("season_id")),
        live_minute=_live_minute(raw.get("periods")),
        stage=_name(raw.get("stage")),
        round=_name(raw.get("round")),
        has_odds=raw.get("has_odds") if isinstance(raw.get("has_odds"), bool) else None,
        **scores,
    )


def odds_from_fixture_raw(raw: dict) -> list[OddsDTO]:
    odds = raw.get("odds")
    if not isinstance(odds, list):
        return []
    fixture_ext = _ext(raw.get("id"))
    start_ts = _start_ts(raw)
    out: list[OddsDTO] = []
    for o in odds:
        out.append(
            OddsDTO(
                external_id=_ext(o.get("id")),
                fixture_external_id=_ext(o.get("fixture_id")) or fixture_ext,
                bookmaker_external_id=_ext(o.get("bookmaker_id")),
                market_external_id=_ext(o.get("market_id")),
                value=parse_odd(o.get("value")),
                label=_text(o.get("label")),
                name=_text(o.get("name")),
                bookmaker_name=_name(o.get("bookmaker")),
                market_name=_name(o.get("market")),
                market_description=_text(o.get("market_description")),
                total=_text(o.get("total")),
                handicap=_text(o.get("handicap")),
                probability=parse_probability(o.get("probability")),
                winning=o.get("winning") if isinstance(o.get("winning"), bool) else None,
                sort_order=_int(o.get("sort_order")),
                starting_at_ts=start_ts,
            )
        )
    return out
