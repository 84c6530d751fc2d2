"""Read-only diff between a live provider fetch and stored, mapped rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ValidationError
from app.core.logger import get_logger
from app.core.timeutils import to_epoch_seconds
from app.data.providers import sportmonks
from app.services import entity_store, upsert_pipeline
from app.services.upsert_pipeline import RECORD_ERRORS, compute_changes

log = get_logger("services.reconciliation")

SCOPES = ("missing", "mismatched", "missing+mismatched", "all")
# Widest window the provider's fixtures/between endpoint accepts.
FIXTURE_WINDOW_MAX_DAYS = 100


async def _fetch_all_seasons() -> list:
    # Stored seasons stay in the store after they finish.
    return await sportmonks.fetch_seasons(include_finished=True)


PROVIDER_FETCHERS: dict[str, Callable[[], Awaitable[list]]] = {
    "country": sportmonks.fetch_countries,
    "league": sportmonks.fetch_leagues,
    "season": _fetch_all_seasons,
    "team": sportmonks.fetch_teams,
    "bookmaker": sportmonks.fetch_bookmakers,
    "market": sportmonks.fetch_markets,
}


@dataclass
class ReconciliationReport:
    entity_kind: str
    missing_in_store: list[str] = field(default_factory=list)
    extra_in_store: list[str] = field(default_factory=list)
    mismatched: list[dict[str, Any]] = field(default_factory=list)
    matching: list[str] = field(default_factory=list)
    invalid_in_provider: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "entityKind": self.entity_kind,
            "missingInStore": self.missing_in_store,
            "extraInStore": self.extra_in_store,
            "mismatched": self.mismatched,
            "matching": self.matching,
            "invalidInProvider": self.invalid_in_provider,
            "counts": {
                "missingInStore": len(self.missing_in_store),
                "extraInStore": len(self.extra_in_store),
                "mismatched": len(self.mismatched),
                "matching": len(self.matching),
            },
        }


def _sort_key(external_id: str):
    return (0, int(external_id), "") if external_id.isdigit() else (1, 0, external_id)


def compare(entity_kind: str, provider_records: Sequence, stored: dict[str, dict]) -> ReconciliationReport:
    """Join provider records and stored rows by external id.

    Parent references are left out of the comparison: they are internal ids
    on the stored side and external ids on the provider side.
    """
    tbl = entity_store.entity_table(entity_kind)
    report = ReconciliationReport(entity_kind=entity_kind)
    provider_ids: set[str] = set()
    for record in provider_records:
        ext = str(record.external_id)
        provider_ids.add(ext)
        if ext not in stored:
            report.missing_in_store.append(ext)
            continue
        try:
            values = upsert_pipeline.normalized_values(entity_kind, record)
        except RECORD_ERRORS as exc:
            report.invalid_in_provider.append({"externalId": ext, "error": str(exc)})
            continue
        comparable = {k: v for k, v in values.items() if k not in tbl.parent_columns and k != "external_id"}
        changes = compute_changes(stored[ext], comparable)
        if changes:
            fields = {k: {"provider": c["new"], "stored": c["old"]} for k, c in changes.items()}
            report.mismatched.append({"externalId": ext, "internalId": stored[ext].get("internal_id"), "fields": fields})
        else:
            report.matching.append(ext)

    report.extra_in_store = [ext for ext in stored if ext not in provider_ids]
    report.missing_in_store = sorted(set(report.missing_in_store), key=_sort_key)
    report.extra_in_store.sort(key=_sort_key)
    report.matching = sorted(set(report.matching), key=_sort_key)
    report.mismatched.sort(key=lambda m: _sort_key(m["externalId"]))
    return report


def _log_report(report: ReconciliationReport, **extra) -> None:
    log.info(
        "reconciliation_done kind=%s missing=%s extra=%s mismatched=%s matching=%s%s",
        report.entity_kind,
        len(report.missing_in_store),
        len(report.extra_in_store),
        len(report.mismatched),
        len(report.matching),
        "".join(f" {k}={v}" for k, v in extra.items()),
    )


async def diff(
    session: AsyncSession,
    entity_kind: str,
    *,
    provider_records: Optional[Sequence] = None,
) -> ReconciliationReport:
    if provider_records is None:
        fetcher = PROVIDER_FETCHERS.get(entity_kind)
        if fetcher is None:
            raise ValidationError(f"Reconciliation is not supported for {entity_kind!r}")
        provider_records = await fetcher()
    stored = await entity_store.load_mapped_entities(session, entity_kind)
    report = compare(entity_kind, provider_records, stored)
    _log_report(report)
    return report


def fixture_window(date_from: str, date_to: str) -> tuple[int, int]:
    """Epoch bounds of an inclusive YYYY-MM-DD window, 00:00:00 to 23:59:59 UTC."""
    try:
        start = date.fromisoformat(str(date_from).strip())
        end = date.fromisoformat(str(date_to).strip())
    except ValueError:
        raise ValidationError("from/to must be YYYY-MM-DD dates", details={"from": date_from, "to": date_to}) from None
    if end < start:
        raise ValidationError("to must not be before from", details={"from": date_from, "to": date_to})
    if (end - start).days > FIXTURE_WINDOW_MAX_DAYS:
        raise ValidationError(f"Fixture window is limited to {FIXTURE_WINDOW_MAX_DAYS} days")
    lo = datetime.combine(start, time.min, tzinfo=timezone.utc)
    hi = datetime.combine(end, time.max, tzinfo=timezone.utc)
    return to_epoch_seconds(lo), to_epoch_seconds(hi)


async def diff_fixtures(
    session: AsyncSession,
    date_from: str,
    date_to: str,
    *,
    provider_records: Optional[Sequence] = None,
) -> ReconciliationReport:
    """Diff fixtures kicking off within [date_from, date_to].

    Only stored fixtures inside the same window are considered, so fixtures
    outside it are never reported as extra.
    """
    ts_from, ts_to = fixture_window(date_from, date_to)
    if provider_records is None:
        provider_records = await sportmonks.fetch_fixtures_between(date_from, date_to)
    stored = await entity_store.load_mapped_entities(session, "fixture", start_ts_from=ts_from, start_ts_to=ts_to)
    report = compare("fixture", provider_records, stored)
    _log_report(report, window=f"{date_from}..{date_to}")
    return report


def select_records(report: ReconciliationReport, provider_records: Sequence, scope: str) -> list:
    """Provider records an operator wants to push through the pipeline for `scope`."""
    if scope not in SCOPES:
        raise ValidationError(f"Unknown scope {scope!r}; expected one of {', '.join(SCOPES)}")
    if scope == "all":
        return list(provider_records)
    wanted: set[str] = set()
    if "missing" in scope:
        wanted.update(report.missing_in_store)
    if "mismatched" in scope:
        wanted.update(m["externalId"] for m in report.mismatched)
    return [r for r in provider_records if str(r.external_id) in wanted]
