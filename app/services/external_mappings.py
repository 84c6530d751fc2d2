"""(entity_kind, external_id) -> internal id associations.

A mapping is written once, on first sighting of an external id, and never
changed or deleted afterwards. Uniqueness is enforced by the
`uq_external_mappings_kind_ext` constraint; `ensure` relies on
`INSERT .. ON CONFLICT DO NOTHING` plus a re-read instead of any lock.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Iterable, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import MappingConflict
from app.core.logger import get_logger

log = get_logger("services.external_mappings")

ENTITY_KINDS = ("country", "league", "season", "team", "bookmaker", "market", "fixture", "odds")
ENSURE_MAX_ATTEMPTS = 3


def _check_kind(entity_kind: str) -> None:
    if entity_kind not in ENTITY_KINDS:
        raise ValueError(f"Unknown entity kind {entity_kind!r}")


async def _select_mapping(session: AsyncSession, entity_kind: str, external_id: str) -> Optional[int]:
    res = await session.execute(
        text(
            """
            SELECT internal_id
            FROM external_mappings
            WHERE entity_kind=:kind AND external_id=:ext
            """
        ),
        {"kind": entity_kind, "ext": external_id},
    )
    row = res.first()
    return int(row[0]) if row else None


async def _insert_mapping(session: AsyncSession, entity_kind: str, external_id: str, internal_id: int) -> bool:
    res = await session.execute(
        text(
            """
            INSERT INTO external_mappings(entity_kind, external_id, internal_id, created_at)
            VALUES(:kind, :ext, :iid, now())
            ON CONFLICT (entity_kind, external_id) DO NOTHING
            RETURNING id
            """
        ),
        {"kind": entity_kind, "ext": external_id, "iid": internal_id},
    )
    return res.first() is not None


async def _select_mappings(session: AsyncSession, entity_kind: str, external_ids: list[str]) -> dict[str, int]:
    stmt = text(
        """
        SELECT external_id, internal_id
        FROM external_mappings
        WHERE entity_kind=:kind AND external_id IN :ext_ids
        """
    ).bindparams(bindparam("ext_ids", expanding=True))
    res = await session.execute(stmt, {"kind": entity_kind, "ext_ids": external_ids})
    return {str(r.external_id): int(r.internal_id) for r in res.fetchall()}


async def resolve(session: AsyncSession, entity_kind: str, external_id: Optional[str]) -> Optional[int]:
    _check_kind(entity_kind)
    if external_id is None or str(external_id).strip() == "":
        return None
    return await _select_mapping(session, entity_kind, str(external_id))


async def resolve_many(session: AsyncSession, entity_kind: str, external_ids: Iterable[str]) -> dict[str, int]:
    _check_kind(entity_kind)
    ids = sorted({str(x) for x in external_ids if x is not None and str(x).strip()})
    if not ids:
        return {}
    return await _select_mappings(session, entity_kind, ids)


async def ensure(
    session: AsyncSession,
    entity_kind: str,
    external_id: str,
    create_fn: Callable[[], Awaitable[int]],
) -> tuple[int, bool]:
    """Resolve the mapping or create entity + mapping; returns (internal_id, created).

    Entity creation and mapping insertion share one savepoint: a failing
    `create_fn`, or losing the insert race to another writer, rolls both back.
    The loser re-reads and returns the winner's internal id.
    """
    _check_kind(entity_kind)
    ext = str(external_id)
    for attempt in range(ENSURE_MAX_ATTEMPTS):
        existing = await _select_mapping(session, entity_kind, ext)
        if existing is not None:
            return existing, False
        try:
            async with session.begin_nested():
                internal_id = int(await create_fn())
                if not await _insert_mapping(session, entity_kind, ext, internal_id):
                    raise MappingConflict(entity_kind, ext)
        except MappingConflict:
            log.info("mapping_conflict_retry kind=%s external_id=%s attempt=%s", entity_kind, ext, attempt + 1)
            continue
        return internal_id, True

    existing = await _select_mapping(session, entity_kind, ext)
    if existing is not None:
        return existing, False
    raise RuntimeError(f"Could not ensure mapping kind={entity_kind} external_id={ext}")
