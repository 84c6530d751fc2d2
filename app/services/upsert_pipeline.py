"""Idempotent batch upsert of normalized provider records.

Records of one entity kind are processed strictly in input order, one at a
time. Every record produces exactly one batch item; a record that fails
validation or hits a constraint is recorded as failed and the batch moves on.
The batch itself only fails when processing cannot continue at all.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, Sequence

from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logger import get_logger
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
from app.data.mappers import is_finished, is_valid_transition, normalize_result, normalize_state
from app.services import batches, entity_store, external_mappings

log = get_logger("services.upsert_pipeline")

# Per-record failures; anything else aborts the batch.
RECORD_ERRORS = (ValueError, LookupError, InvalidOperation, IntegrityError, DataError)

MIN_FOUNDED_YEAR = 1800


@dataclass
class PipelineOptions:
    trigger: str = "manual"
    triggered_by: Optional[str] = None
    triggered_by_id: Optional[str] = None
    dry_run: bool = False
    job_run_id: Optional[int] = None
    version: str = batches.DEFAULT_VERSION
    meta: dict = field(default_factory=dict)


@dataclass
class PipelineResult:
    entity_kind: str
    batch_id: Optional[int]
    ok: int = 0
    fail: int = 0
    total: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    dry_run: bool = False
    newly_finished: list[int] = field(default_factory=list)

    @property
    def rows_affected(self) -> int:
        return 0 if self.dry_run else self.inserted + self.updated

    def as_dict(self) -> dict:
        return {
            "entityKind": self.entity_kind,
            "batchId": self.batch_id,
            "ok": self.ok,
            "fail": self.fail,
            "total": self.total,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "dryRun": self.dry_run,
        }


@dataclass(frozen=True)
class ParentRef:
    column: str
    entity_kind: str
    external_id: Optional[str]
    required: bool = False
    # When set, an unmapped parent is created from these values.
    create_values: Optional[dict] = None


@dataclass(frozen=True)
class EntityHandler:
    dto_type: type
    values: Callable[[Any], dict]
    parents: Callable[[Any], list]


def _require_name(kind: str, record) -> str:
    name = (getattr(record, "name", None) or "").strip()
    if not name:
        raise ValueError(f"No name specified for {kind} (external_id: {record.external_id})")
    return name


def _norm_iso(value: Optional[str], length: int, label: str) -> Optional[str]:
    if value is None or not str(value).strip():
        return None
    code = str(value).strip().upper()
    if len(code) != length or not code.isalpha():
        raise ValueError(f"Invalid {label} {value!r}: expected {length} letters")
    return code


def _validate_founded(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    year = int(value)
    current_year = date.today().year
    if year < MIN_FOUNDED_YEAR or year > current_year:
        raise ValueError(f"Invalid founded year {year}: expected {MIN_FOUNDED_YEAR}..{current_year}")
    return year


def _parse_date(value: Optional[str], label: str) -> Optional[date]:
    if value is None or not str(value).strip():
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValueError(f"Invalid {label} {value!r}") from None


def _non_negative(value: Optional[int], label: str) -> Optional[int]:
    if value is None:
        return None
    if int(value) < 0:
        raise ValueError(f"Invalid {label} {value}")
    return int(value)


def _country_values(r: CountryDTO) -> dict:
    return {
        "name": _require_name("country", r),
        "iso2": _norm_iso(r.iso2, 2, "iso2"),
        "iso3": _norm_iso(r.iso3, 3, "iso3"),
        "image_path": r.image_path,
    }


def _league_values(r: LeagueDTO) -> dict:
    return {
        "name": _require_name("league", r),
        "short_code": r.short_code,
        "type": r.type,
        "sub_type": r.sub_type,
        "image_path": r.image_path,
    }


def _season_values(r: SeasonDTO) -> dict:
    start = _parse_date(r.start_date, "start_date")
    end = _parse_date(r.end_date, "end_date")
    if start and end and end < start:
        raise ValueError(f"Season {r.external_id} ends before it starts ({start} > {end})")
    return {
        "name": _require_name("season", r),
        "start_date": start,
        "end_date": end,
        "is_current": bool(r.is_current),
        "is_finished": bool(r.is_finished),
        "is_pending": bool(r.is_pending),
    }


def _team_values(r: TeamDTO) -> dict:
    return {
        "name": _require_name("team", r),
        "short_code": r.short_code,
        "founded": _validate_founded(r.founded),
        "type": r.type,
        "image_path": r.image_path,
    }


def _bookmaker_values(r: BookmakerDTO) -> dict:
    return {"name": _require_name("bookmaker", r)}


def _market_values(r: MarketDTO) -> dict:
    return {
        "name": _require_name("market", r),
        "description": r.description,
        "developer_name": r.developer_name,
    }


def _fixture_values(r: FixtureDTO) -> dict:
    if not r.home_team_external_id or not r.away_team_external_id:
        raise ValueError(f"Fixture {r.external_id} is missing home/away participants")
    if r.home_team_external_id == r.away_team_external_id:
        raise ValueError(f"Fixture {r.external_id} has the same team on both sides")
    if r.start_ts is None:
        raise ValueError(f"Fixture {r.external_id} has no start time")
    return {
        "external_id": str(r.external_id),
        "name": (r.name or "").strip() or None,
        "start_ts": int(r.start_ts),
        "state": normalize_state(r.state),
        "live_minute": _non_negative(r.live_minute, "live_minute"),
        "result": normalize_result(r.result),
        "home_score_90": _non_negative(r.home_score_90, "home_score_90"),
        "away_score_90": _non_negative(r.away_score_90, "away_score_90"),
        "home_score_et": _non_negative(r.home_score_et, "home_score_et"),
        "away_score_et": _non_negative(r.away_score_et, "away_score_et"),
        "pen_home": _non_negative(r.pen_home, "pen_home"),
        "pen_away": _non_negative(r.pen_away, "pen_away"),
        "stage": r.stage,
        "round": r.round,
        "has_odds": r.has_odds,
    }


def _odds_values(r: OddsDTO) -> dict:
    if r.value is None:
        raise ValueError(f"Odds {r.external_id} has no value")
    if not Decimal(r.value).is_finite() or Decimal(r.value) <= 1:
        raise ValueError(f"Odds {r.external_id} has invalid value {r.value}")
    return {
        "label": r.label,
        "name": r.name,
        "value": Decimal(r.value),
        "probability": r.probability,
        "total": r.total,
        "handicap": r.handicap,
        "winning": r.winning,
        "sort_order": r.sort_order,
        "starting_at_ts": r.starting_at_ts,
    }


def _no_parents(_record) -> list[ParentRef]:
    return []


HANDLERS: dict[str, EntityHandler] = {
    "country": EntityHandler(CountryDTO, _country_values, _no_parents),
    "league": EntityHandler(
        LeagueDTO,
        _league_values,
        lambda r: [ParentRef("country_id", "country", r.country_external_id)],
    ),
    "season": EntityHandler(
        SeasonDTO,
        _season_values,
        lambda r: [ParentRef("league_id", "league", r.league_external_id, required=True)],
    ),
    "team": EntityHandler(
        TeamDTO,
        _team_values,
        lambda r: [ParentRef("country_id", "country", r.country_external_id)],
    ),
    "bookmaker": EntityHandler(BookmakerDTO, _bookmaker_values, _no_parents),
    "market": EntityHandler(MarketDTO, _market_values, _no_parents),
    "fixture": EntityHandler(
        FixtureDTO,
        _fixture_values,
        lambda r: [
            ParentRef("league_id", "league", r.league_external_id),
            ParentRef("season_id", "season", r.season_external_id),
            ParentRef("home_team_id", "team", r.home_team_external_id, required=True),
            ParentRef("away_team_id", "team", r.away_team_external_id, required=True),
        ],
    ),
    "odds": EntityHandler(
        OddsDTO,
        _odds_values,
        lambda r: [
            ParentRef("fixture_id", "fixture", r.fixture_external_id, required=True),
            ParentRef(
                "bookmaker_id",
                "bookmaker",
                r.bookmaker_external_id,
                required=True,
                create_values={"name": r.bookmaker_name} if r.bookmaker_name else None,
            ),
            ParentRef(
                "market_id",
                "market",
                r.market_external_id,
                required=True,
                create_values=(
                    {"name": r.market_name, "description": r.market_description, "developer_name": None}
                    if r.market_name
                    else None
                ),
            ),
        ],
    ),
}


def get_handler(entity_kind: str) -> EntityHandler:
    try:
        return HANDLERS[entity_kind]
    except KeyError:
        raise ValueError(f"Unknown entity kind {entity_kind!r}") from None


def normalized_values(entity_kind: str, record) -> dict:
    """Column values the pipeline would write for `record`, parents excluded."""
    return get_handler(entity_kind).values(record)


def _same(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, bool) or isinstance(b, bool):
        return bool(a) == bool(b)
    if isinstance(a, (int, float, Decimal)) and isinstance(b, (int, float, Decimal)):
        return Decimal(str(a)) == Decimal(str(b))
    if isinstance(a, datetime) or isinstance(b, datetime):
        return a == b
    if isinstance(a, date) and isinstance(b, str) or isinstance(b, date) and isinstance(a, str):
        return str(a) == str(b)
    return a == b


def compute_changes(current: dict, values: dict) -> dict[str, dict]:
    changes: dict[str, dict] = {}
    for key, new in values.items():
        old = current.get(key)
        if not _same(old, new):
            changes[key] = {"old": _jsonable(old), "new": _jsonable(new)}
    return changes


def _jsonable(value: Any) -> Any:
    if isinstance(value, (Decimal, date, datetime)):
        return str(value)
    return value


def _external_id(record) -> str:
    ext = getattr(record, "external_id", None)
    if ext is None or not str(ext).strip():
        raise ValueError("Record has no external_id")
    return str(ext).strip()


def _item_key(record, index: int) -> str:
    ext = getattr(record, "external_id", None)
    return str(ext).strip() if ext is not None and str(ext).strip() else f"#{index + 1}"


async def _resolve_parent(session: AsyncSession, ref: ParentRef) -> Optional[int]:
    if ref.external_id is None or not str(ref.external_id).strip():
        return None
    if ref.create_values:
        internal_id, created = await external_mappings.ensure(
            session,
            ref.entity_kind,
            ref.external_id,
            lambda: entity_store.insert_entity(session, ref.entity_kind, dict(ref.create_values)),
        )
        if created:
            log.info("parent_created kind=%s external_id=%s internal_id=%s", ref.entity_kind, ref.external_id, internal_id)
        return internal_id
    return await external_mappings.resolve(session, ref.entity_kind, ref.external_id)


async def _upsert_one(session: AsyncSession, entity_kind: str, handler: EntityHandler, record) -> dict:
    if not isinstance(record, handler.dto_type):
        raise ValueError(f"Expected {handler.dto_type.__name__} for {entity_kind}, got {type(record).__name__}")
    ext = _external_id(record)
    values = handler.values(record)
    unresolved: list[str] = []
    for ref in handler.parents(record):
        internal_id = await _resolve_parent(session, ref)
        if internal_id is None and ref.required:
            raise LookupError(f"{ref.entity_kind} {ref.external_id!r} not found for {entity_kind} {ext}")
        if internal_id is None and ref.external_id is not None:
            unresolved.append(f"{ref.entity_kind}:{ref.external_id}")
        values[ref.column] = internal_id

    outcome: dict = {"externalId": ext}
    if unresolved:
        outcome["unresolvedParents"] = unresolved

    internal_id, created = await external_mappings.ensure(
        session,
        entity_kind,
        ext,
        lambda: entity_store.insert_entity(session, entity_kind, values),
    )
    outcome["internalId"] = internal_id
    if created:
        outcome["action"] = "inserted"
        return outcome

    current = await entity_store.load_entity(session, entity_kind, internal_id)
    if current is None:
        raise LookupError(f"Mapping {entity_kind}:{ext} points at missing row {internal_id}")

    if entity_kind == "fixture" and not is_valid_transition(current.get("state"), values.get("state")):
        log.warning(
            "fixture_state_transition_rejected external_id=%s from=%s to=%s",
            ext,
            current.get("state"),
            values.get("state"),
        )
        outcome.update(action="unchanged", reason="invalid-state-transition", stateFrom=current.get("state"), stateTo=values.get("state"))
        return outcome

    changes = compute_changes(current, values)
    if not changes:
        outcome["action"] = "unchanged"
        return outcome

    await entity_store.update_entity(session, entity_kind, internal_id, {k: values[k] for k in changes})
    outcome.update(action="updated", changes=changes)
    if entity_kind == "fixture" and "state" in changes and is_finished(values.get("state")):
        outcome["becameFinished"] = True
    return outcome


def _dry_run(entity_kind: str, handler: EntityHandler, records: Sequence) -> PipelineResult:
    result = PipelineResult(entity_kind=entity_kind, batch_id=None, total=len(records), dry_run=True)
    for record in records:
        try:
            _external_id(record)
            handler.values(record)
        except RECORD_ERRORS:
            result.fail += 1
        else:
            result.ok += 1
    log.info("pipeline_dry_run kind=%s total=%s ok=%s fail=%s", entity_kind, result.total, result.ok, result.fail)
    return result


async def run(
    session: AsyncSession,
    entity_kind: str,
    records: Sequence,
    options: Optional[PipelineOptions] = None,
) -> PipelineResult:
    opts = options or PipelineOptions()
    handler = get_handler(entity_kind)
    records = list(records)
    if opts.dry_run:
        return _dry_run(entity_kind, handler, records)

    total = len(records)
    batch_id = await batches.start_batch(
        session,
        batches.batch_name(entity_kind),
        version=opts.version,
        trigger=opts.trigger,
        triggered_by=opts.triggered_by,
        triggered_by_id=opts.triggered_by_id,
        job_run_id=opts.job_run_id,
        items_total=total,
        meta={"entityKind": entity_kind, "dryRun": False, **opts.meta},
    )
    await session.commit()
    result = PipelineResult(entity_kind=entity_kind, batch_id=batch_id, total=total)
    if not records:
        await batches.finish_batch(session, batch_id, "success", items_total=0, items_success=0, items_failed=0, meta={"reason": "no-input"})
        await session.commit()
        return result

    processed = 0
    try:
        for index, record in enumerate(records):
            key = _item_key(record, index)
            try:
                async with session.begin_nested():
                    outcome = await _upsert_one(session, entity_kind, handler, record)
            except RECORD_ERRORS as exc:
                result.fail += 1
                message = str(exc) or exc.__class__.__name__
                log.warning("pipeline_item_failed kind=%s item=%s error=%s", entity_kind, key, message)
                await batches.track_item(session, batch_id, key, "failed", error_message=message, meta={"index": index})
            else:
                result.ok += 1
                action = outcome.get("action")
                if action == "inserted":
                    result.inserted += 1
                elif action == "updated":
                    result.updated += 1
                else:
                    result.unchanged += 1
                if outcome.pop("becameFinished", False):
                    result.newly_finished.append(int(outcome["internalId"]))
                await batches.track_item(session, batch_id, key, "success", meta={"index": index, **outcome})
            processed += 1
            await session.commit()
    except Exception as exc:
        log.exception("pipeline_failed kind=%s batch_id=%s processed=%s total=%s", entity_kind, batch_id, processed, total)
        await session.rollback()
        await _close_failed_batch(session, batch_id, result, records[processed:], processed, exc)
        raise

    await batches.finish_batch(
        session,
        batch_id,
        "success",
        items_total=total,
        items_success=result.ok,
        items_failed=result.fail,
        meta={"inserted": result.inserted, "updated": result.updated, "unchanged": result.unchanged},
    )
    await session.commit()
    log.info(
        "pipeline_done kind=%s batch_id=%s total=%s ok=%s fail=%s inserted=%s updated=%s",
        entity_kind,
        batch_id,
        total,
        result.ok,
        result.fail,
        result.inserted,
        result.updated,
    )
    return result


async def _close_failed_batch(
    session: AsyncSession,
    batch_id: int,
    result: PipelineResult,
    remaining: Sequence,
    offset: int,
    exc: BaseException,
) -> None:
    """Fail every unprocessed record, then the batch, best effort."""
    message = str(exc) or exc.__class__.__name__
    try:
        for i, record in enumerate(remaining):
            await batches.track_item(
                session,
                batch_id,
                _item_key(record, offset + i),
                "failed",
                error_message=message,
                meta={"index": offset + i, "reason": "batch-aborted"},
            )
        await batches.finish_batch(
            session,
            batch_id,
            "failed",
            items_total=result.total,
            items_success=result.ok,
            items_failed=result.fail + len(remaining),
            error_message=message,
            error_stack=traceback.format_exc(limit=50),
        )
        await session.commit()
    except Exception:
        log.exception("pipeline_failed_batch_not_recorded batch_id=%s", batch_id)
        await session.rollback()
