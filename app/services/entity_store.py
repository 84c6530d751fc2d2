"""Row writes for the mapped entity tables.

Table and column names come from the static ENTITY_TABLES registry, never
from caller input, so they are safe to format into SQL text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class EntityTable:
    table: str
    columns: tuple[str, ...]
    # Columns holding internal ids of parent entities.
    parent_columns: tuple[str, ...] = ()


ENTITY_TABLES: dict[str, EntityTable] = {
    "country": EntityTable("countries", ("name", "iso2", "iso3", "image_path")),
    "league": EntityTable(
        "leagues",
        ("name", "country_id", "short_code", "type", "sub_type", "image_path"),
        parent_columns=("country_id",),
    ),
    "season": EntityTable(
        "seasons",
        ("name", "league_id", "start_date", "end_date", "is_current", "is_finished", "is_pending"),
        parent_columns=("league_id",),
    ),
    "team": EntityTable(
        "teams",
        ("name", "short_code", "country_id", "founded", "type", "image_path"),
        parent_columns=("country_id",),
    ),
    "bookmaker": EntityTable("bookmakers", ("name",)),
    "market": EntityTable("markets", ("name", "description", "developer_name")),
    "fixture": EntityTable(
        "fixtures",
        (
            "external_id",
            "name",
            "league_id",
            "season_id",
            "home_team_id",
            "away_team_id",
            "start_ts",
            "state",
            "live_minute",
            "result",
            "home_score_90",
            "away_score_90",
            "home_score_et",
            "away_score_et",
            "pen_home",
            "pen_away",
            "stage",
            "round",
            "has_odds",
        ),
        parent_columns=("league_id", "season_id", "home_team_id", "away_team_id"),
    ),
    "odds": EntityTable(
        "odds",
        (
            "fixture_id",
            "bookmaker_id",
            "market_id",
            "label",
            "name",
            "value",
            "probability",
            "total",
            "handicap",
            "winning",
            "sort_order",
            "starting_at_ts",
        ),
        parent_columns=("fixture_id", "bookmaker_id", "market_id"),
    ),
}


def entity_table(entity_kind: str) -> EntityTable:
    try:
        return ENTITY_TABLES[entity_kind]
    except KeyError:
        raise ValueError(f"Unknown entity kind {entity_kind!r}") from None


def _checked_values(tbl: EntityTable, values: dict[str, Any]) -> dict[str, Any]:
    unknown = set(values) - set(tbl.columns)
    if unknown:
        raise ValueError(f"Unknown columns for {tbl.table}: {sorted(unknown)}")
    return values


async def insert_entity(session: AsyncSession, entity_kind: str, values: dict[str, Any]) -> int:
    tbl = entity_table(entity_kind)
    vals = _checked_values(tbl, values)
    cols = list(vals)
    col_sql = ", ".join(cols + ["created_at", "updated_at"])
    val_sql = ", ".join([f":{c}" for c in cols] + ["now()", "now()"])
    res = await session.execute(
        text(f"INSERT INTO {tbl.table}({col_sql}) VALUES({val_sql}) RETURNING id"),
        vals,
    )
    return int(res.scalar_one())


async def update_entity(session: AsyncSession, entity_kind: str, internal_id: int, values: dict[str, Any]) -> None:
    tbl = entity_table(entity_kind)
    vals = _checked_values(tbl, values)
    if not vals:
        return
    set_sql = ", ".join([f"{c}=:{c}" for c in vals] + ["updated_at=now()"])
    await session.execute(
        text(f"UPDATE {tbl.table} SET {set_sql} WHERE id=:_id"),
        {**vals, "_id": internal_id},
    )


async def load_entity(session: AsyncSession, entity_kind: str, internal_id: int) -> Optional[dict[str, Any]]:
    tbl = entity_table(entity_kind)
    res = await session.execute(
        text(f"SELECT id, {', '.join(tbl.columns)} FROM {tbl.table} WHERE id=:id"),
        {"id": internal_id},
    )
    row = res.first()
    return dict(row._mapping) if row else None


async def load_mapped_entities(
    session: AsyncSession,
    entity_kind: str,
    *,
    start_ts_from: Optional[int] = None,
    start_ts_to: Optional[int] = None,
) -> dict[str, dict[str, Any]]:
    """Stored rows that have a mapping, keyed by external id.

    `start_ts_from` / `start_ts_to` bound fixtures by kickoff, both inclusive.
    """
    tbl = entity_table(entity_kind)
    cols = ", ".join(f"t.{c}" for c in tbl.columns if c != "external_id")
    where = ["m.entity_kind=:kind"]
    params: dict[str, Any] = {"kind": entity_kind}
    if start_ts_from is not None or start_ts_to is not None:
        if "start_ts" not in tbl.columns:
            raise ValueError(f"{entity_kind} rows have no start_ts to filter on")
        if start_ts_from is not None:
            where.append("t.start_ts >= :start_ts_from")
            params["start_ts_from"] = int(start_ts_from)
        if start_ts_to is not None:
            where.append("t.start_ts <= :start_ts_to")
            params["start_ts_to"] = int(start_ts_to)
    res = await session.execute(
        text(
            f"""
            SELECT m.external_id AS mapped_external_id, t.id AS internal_id, {cols}
            FROM external_mappings m
            JOIN {tbl.table} t ON t.id = m.internal_id
            WHERE {' AND '.join(where)}
            """
        ),
        params,
    )
    out: dict[str, dict[str, Any]] = {}
    for r in res.fetchall():
        row = dict(r._mapping)
        out[str(row.pop("mapped_external_id"))] = row
    return out
