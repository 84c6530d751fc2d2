from __future__ import annotations

from contextvars import ContextVar
from typing import Iterable, Optional, Sequence, Union

import httpx

from app.core.config import settings
from app.core.errors import ProviderError
from app.core.http import request_with_retries, sportmonks_client
from app.core.logger import get_logger
from app.data import normalizer
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

log = get_logger("providers.sportmonks")

_api_metrics: ContextVar[dict] = ContextVar("sportmonks_metrics", default={})

IncludeNode = Union[str, dict]

FIXTURE_INCLUDES: list[IncludeNode] = [
    "participants",
    {"name": "league", "include": ["country"]},
    {"name": "stage", "fields": ["name"]},
    {"name": "round", "fields": ["name"]},
    "state",
    "scores",
]
LIVE_FIXTURE_INCLUDES: list[IncludeNode] = FIXTURE_INCLUDES + ["periods"]
ODDS_INCLUDES: list[IncludeNode] = [
    "state",
    {"name": "odds", "include": ["bookmaker", "market"]},
]
# Sportmonks caps fixtures/multi at 50 ids per call.
MULTI_IDS_CHUNK = 50
MAX_PAGES = 200


def reset_api_metrics() -> None:
    _api_metrics.set({"requests": 0, "errors": 0, "status": {}, "by_endpoint": {}})


def get_api_metrics() -> dict:
    return dict(_api_metrics.get() or {})


def _inc_metric(endpoint: str, status_code: int | None = None, *, error: bool = False) -> None:
    cur = _api_metrics.get() or {}
    if not cur:
        # Not tracking for this context.
        return
    cur["requests"] = int(cur.get("requests", 0)) + (0 if error else 1)
    if error:
        cur["errors"] = int(cur.get("errors", 0)) + 1
    if status_code is not None:
        st = cur.setdefault("status", {})
        st[str(status_code)] = int(st.get(str(status_code), 0)) + 1
    by_ep = cur.setdefault("by_endpoint", {})
    by_ep[endpoint] = int(by_ep.get(endpoint, 0)) + (0 if error else 1)
    _api_metrics.set(cur)


def build_include_param(nodes: Optional[Sequence[IncludeNode]]) -> Optional[str]:
    """Include tree -> Sportmonks include string.

    ["state"] -> "state"; {"name": "odds", "include": ["market"]} -> "odds;odds.market";
    {"name": "stage", "fields": ["name"]} -> "stage:name".
    """
    if not nodes:
        return None
    parts: list[str] = []

    def walk(node: IncludeNode, parent: Optional[str] = None) -> None:
        if isinstance(node, str):
            parts.append(f"{parent}.{node}" if parent else node)
            return
        full = f"{parent}.{node['name']}" if parent else node["name"]
        fields = node.get("fields") or []
        parts.append(f"{full}:{','.join(fields)}" if fields else full)
        for child in node.get("include") or []:
            walk(child, full)

    for n in nodes:
        walk(n)
    return ";".join(parts)


def build_filters_param(filters: Union[str, dict, None]) -> Optional[str]:
    if not filters:
        return None
    if isinstance(filters, str):
        return filters.strip() or None
    parts = []
    for key, value in filters.items():
        if isinstance(value, (list, tuple, set)):
            value = ",".join(str(v) for v in value)
        parts.append(f"{key}:{value}")
    return ";".join(parts)


def _base_params(include, filters, select: Optional[Iterable[str]] = None) -> dict:
    params: dict = {"per_page": settings.sportmonks_page_size}
    if (settings.sportmonks_auth_mode or "").strip().lower() != "header":
        params["api_token"] = settings.sportmonks_api_token
    include_param = build_include_param(include)
    if include_param:
        params["include"] = include_param
    filters_param = build_filters_param(filters)
    if filters_param:
        params["filters"] = filters_param
    if select:
        params["select"] = ",".join(select)
    return params


async def sm_get_all_pages(
    api: str,
    path: str,
    *,
    include: Optional[Sequence[IncludeNode]] = None,
    filters: Union[str, dict, None] = None,
    select: Optional[Iterable[str]] = None,
    max_pages: int = MAX_PAGES,
) -> list[dict]:
    """GET every page of a Sportmonks collection and return the merged `data` rows."""
    client = sportmonks_client(api)
    params = _base_params(include, filters, select)
    endpoint = f"{api}:{path.split('/')[0]}"
    rows: list[dict] = []
    page = 1
    while True:
        page_params = dict(params)
        page_params["page"] = page
        try:
            r = await request_with_retries(client, "GET", path, params=page_params, retries=settings.sportmonks_max_retries)
            _inc_metric(endpoint, r.status_code)
            r.raise_for_status()
            payload = r.json()
        except httpx.HTTPStatusError as exc:
            _inc_metric(endpoint, error=True)
            raise ProviderError(
                f"Sportmonks {path} failed with HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
                url=path,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            _inc_metric(endpoint, error=True)
            raise ProviderError(f"Sportmonks {path} request failed: {exc}", url=path) from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        if isinstance(data, list):
            rows.extend(data)
        elif isinstance(data, dict):
            rows.append(data)

        pagination = (payload or {}).get("pagination") or {}
        if not pagination.get("has_more"):
            break
        page += 1
        if page > max_pages:
            log.warning("sportmonks_max_pages_reached path=%s pages=%s", path, max_pages)
            break
    return rows


async def fetch_countries() -> list[CountryDTO]:
    rows = await sm_get_all_pages("core", "countries", select=["id", "name", "image_path", "iso2", "iso3"])
    out = [normalizer.country_from_raw(r) for r in rows]
    log.info("fetch_countries count=%s", len(out))
    return out


async def fetch_leagues() -> list[LeagueDTO]:
    rows = await sm_get_all_pages(
        "football",
        "leagues",
        select=["id", "name", "image_path", "country_id", "short_code", "type", "sub_type"],
    )
    out = [normalizer.league_from_raw(r) for r in rows]
    log.info("fetch_leagues count=%s", len(out))
    return out


async def fetch_seasons(*, include_finished: bool = False) -> list[SeasonDTO]:
    rows = await sm_get_all_pages(
        "football",
        "seasons",
        select=["id", "league_id", "name", "starting_at", "ending_at", "is_current", "finished", "pending"],
    )
    out = [normalizer.season_from_raw(r) for r in rows]
    if not include_finished:
        out = [s for s in out if not s.is_finished]
    log.info("fetch_seasons count=%s", len(out))
    return out


async def fetch_teams() -> list[TeamDTO]:
    rows = await sm_get_all_pages(
        "football",
        "teams",
        select=["id", "name", "short_code", "image_path", "country_id", "founded", "type"],
    )
    out = [
        normalizer.team_from_raw(r)
        for r in rows
        if not normalizer.looks_like_placeholder_team(r.get("name"), r.get("image_path"))
    ]
    log.info("fetch_teams count=%s skipped_placeholders=%s", len(out), len(rows) - len(out))
    return out


async def fetch_bookmakers() -> list[BookmakerDTO]:
    rows = await sm_get_all_pages("odds", "bookmakers")
    out = [normalizer.bookmaker_from_raw(r) for r in rows]
    log.info("fetch_bookmakers count=%s", len(out))
    return out


async def fetch_markets() -> list[MarketDTO]:
    rows = await sm_get_all_pages("odds", "markets")
    out = [normalizer.market_from_raw(r) for r in rows]
    log.info("fetch_markets count=%s", len(out))
    return out


def _fixtures(rows: list[dict]) -> list[FixtureDTO]:
    return [normalizer.fixture_from_raw(r) for r in rows]


async def _fetch_one(api: str, path: str, **kwargs) -> Optional[dict]:
    """Single-entity GET; an unknown id reads as None."""
    try:
        rows = await sm_get_all_pages(api, path, max_pages=1, **kwargs)
    except ProviderError as exc:
        if exc.status_code == 404:
            return None
        raise
    return rows[0] if rows else None


async def fetch_country_by_id(external_id: str) -> Optional[CountryDTO]:
    row = await _fetch_one("core", f"countries/{external_id}", select=["id", "name", "image_path", "iso2", "iso3"])
    return normalizer.country_from_raw(row) if row else None


async def fetch_league_by_id(external_id: str) -> Optional[LeagueDTO]:
    row = await _fetch_one(
        "football",
        f"leagues/{external_id}",
        select=["id", "name", "image_path", "country_id", "short_code", "type", "sub_type"],
    )
    return normalizer.league_from_raw(row) if row else None


async def fetch_season_by_id(external_id: str) -> Optional[SeasonDTO]:
    """Works for finished seasons too, which the seasons listing leaves out."""
    row = await _fetch_one(
        "football",
        f"seasons/{external_id}",
        select=["id", "league_id", "name", "starting_at", "ending_at", "is_current", "finished", "pending"],
    )
    return normalizer.season_from_raw(row) if row else None


async def fetch_teams_by_season(season_external_id: str) -> list[TeamDTO]:
    rows = await sm_get_all_pages(
        "football",
        f"teams/seasons/{season_external_id}",
        select=["id", "name", "short_code", "image_path", "country_id", "founded", "type"],
    )
    out = [
        normalizer.team_from_raw(r)
        for r in rows
        if not normalizer.looks_like_placeholder_team(r.get("name"), r.get("image_path"))
    ]
    log.info("fetch_teams_by_season season=%s count=%s", season_external_id, len(out))
    return out


async def fetch_fixtures_by_season(season_external_id: str, filters: Union[str, dict, None] = None) -> list[FixtureDTO]:
    # The season endpoint nests its fixtures; there is no flat per-season listing.
    rows = await sm_get_all_pages(
        "football",
        f"seasons/{season_external_id}",
        include=[{"name": "fixtures", "include": FIXTURE_INCLUDES}],
        filters=filters,
    )
    out: list[FixtureDTO] = []
    for season in rows:
        out.extend(_fixtures(season.get("fixtures") or []))
    log.info("fetch_fixtures_by_season season=%s count=%s", season_external_id, len(out))
    return out



async def fetch_fixtures_between(date_from: str, date_to: str, filters: Union[str, dict, None] = None) -> list[FixtureDTO]:
    rows = await sm_get_all_pages(
        "football",
        f"fixtures/between/{date_from}/{date_to}",
        include=FIXTURE_INCLUDES,
        filters=filters,
    )
    out = _fixtures(rows)
    log.info("fetch_fixtures_between from=%s to=%s count=%s", date_from, date_to, len(out))
    return out


async def fetch_live_fixtures(filters: Union[str, dict, None] = None) -> list[FixtureDTO]:
    rows = await sm_get_all_pages("football", "livescores/inplay", include=LIVE_FIXTURE_INCLUDES, filters=filters)
    out = _fixtures(rows)
    log.info("fetch_live_fixtures count=%s", len(out))
    return out


async def fetch_fixtures_by_ids(external_ids: Sequence[str], filters: Union[str, dict, None] = None) -> list[FixtureDTO]:
    ids = [str(x) for x in external_ids if str(x).strip()]
    out: list[FixtureDTO] = []
    for start in range(0, len(ids), MULTI_IDS_CHUNK):
        chunk = ids[start:start + MULTI_IDS_CHUNK]
        rows = await sm_get_all_pages(
            "football",
            f"fixtures/multi/{','.join(chunk)}",
            include=FIXTURE_INCLUDES,
            filters=filters,
        )
        out.extend(_fixtures(rows))
    log.info("fetch_fixtures_by_ids requested=%s count=%s", len(ids), len(out))
    return out


async def fetch_odds_between(date_from: str, date_to: str, filters: Union[str, dict, None] = None) -> list[OddsDTO]:
    rows = await sm_get_all_pages(
        "football",
        f"fixtures/between/{date_from}/{date_to}",
        include=ODDS_INCLUDES,
        filters=filters,
    )
    out: list[OddsDTO] = []
    for r in rows:
        out.extend(normalizer.odds_from_fixture_raw(r))
    log.info("fetch_odds_between from=%s to=%s fixtures=%s odds=%s", date_from, date_to, len(rows), len(out))
    return out
