"""Provider-independent records handed from the provider adapter to the upsert pipeline.

External ids are kept as strings: they are opaque to everything past the
adapter and only ever used as mapping keys.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class CountryDTO:
    external_id: str
    name: str
    iso2: Optional[str] = None
    iso3: Optional[str] = None
    image_path: Optional[str] = None


@dataclass(frozen=True)
class LeagueDTO:
    external_id: str
    name: str
    country_external_id: Optional[str] = None
    short_code: Optional[str] = None
    type: Optional[str] = None
    sub_type: Optional[str] = None
    image_path: Optional[str] = None


@dataclass(frozen=True)
class SeasonDTO:
    external_id: str
    name: str
    league_external_id: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    is_current: bool = False
    is_finished: bool = False
    is_pending: bool = False


@dataclass(frozen=True)
class TeamDTO:
    external_id: str
    name: str
    short_code: Optional[str] = None
    country_external_id: Optional[str] = None
    founded: Optional[int] = None
    type: Optional[str] = None
    image_path: Optional[str] = None


@dataclass(frozen=True)
class BookmakerDTO:
    external_id: str
    name: str


@dataclass(frozen=True)
class MarketDTO:
    external_id: str
    name: str
    description: Optional[str] = None
    developer_name: Optional[str] = None


@dataclass(frozen=True)
class FixtureDTO:
    external_id: str
    name: str
    home_team_external_id: Optional[str]
    away_team_external_id: Optional[str]
    start_ts: Optional[int]
    state: str
    league_external_id: Optional[str] = None
    season_external_id: Optional[str] = None
    live_minute: Optional[int] = None
    result: Optional[str] = None
    home_score_90: Optional[int] = None
    away_score_90: Optional[int] = None
    home_score_et: Optional[int] = None
    away_score_et: Optional[int] = None
    pen_home: Optional[int] = None
    pen_away: Optional[int] = None
    stage: Optional[str] = None
    round: Optional[str] = None
    has_odds: Optional[bool] = None


@dataclass(frozen=True)
class OddsDTO:
    external_id: str
    fixture_external_id: Optional[str]
    bookmaker_external_id: Optional[str]
    market_external_id: Optional[str]
    value: Optional[Decimal]
    label: Optional[str] = None
    name: Optional[str] = None
    bookmaker_name: Optional[str] = None
    market_name: Optional[str] = None
    market_description: Optional[str] = None
    total: Optional[str] = None
    handicap: Optional[str] = None
    probability: Optional[Decimal] = None
    winning: Optional[bool] = None
    sort_order: Optional[int] = None
    starting_at_ts: Optional[int] = None


def to_dict(record) -> dict:
    return asdict(record)
