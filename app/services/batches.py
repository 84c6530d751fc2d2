from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import truncate, truncate_tail
from app.core.logger import get_logger

log = get_logger("services.batches")

BATCH_STATUSES = ("running", "success", "failed", "skipped")
ITEM_STATUSES = ("success", "failed", "skipped")
DEFAULT_VERSION = "v1"


def batch_name(entity_kind: str) -> str:
    return f"seed-{entity_kind}"


def _json(value: Optional[dict]) -> str:
    return json.dumps(value or {}, ensure_ascii=False, default=str)


async def start_batch(
    session: AsyncSession,
    name: str,
    *,
    version: str = DEFAULT_VERSION,
    trigger: str = "manual",
    triggered_by: Optional[str] = None,
    triggered_by_id: Optional[str] = None,
    job_run_id: Optional[int] = None,
    items_total: int = 0,
    meta: Optional[dict] = None,
) -> int:
    res = await session.execute(
        text(
            """
            INSERT INTO seed_batches(
              name, version, status, trigger, triggered_by, triggered_by_id, job_run_id,
              items_total, items_success, items_failed, started_at, meta
            )
            VALUES(
              :name, :version, 'running', :trigger, :triggered_by, :triggered_by_id, :job_run_id,
              :items_total, 0, 0, now(), CAST(:meta AS jsonb)
            )
            RETURNING id
            """
        ),
        {
            "name": name,
            "version": version,
            "trigger": trigger,
            "triggered_by": triggered_by,
            "triggered_by_id": triggered_by_id,
            "job_run_id": job_run_id,
            "items_total": int(items_total),
            "meta": _json(meta),
        },
    )
    return int(res.scalar_one())


async def track_item(
    session: AsyncSession,
    batch_id: int,
    item_key: str,
    status: str,
    *,
    error_message: Optional[str] = None,
    meta: Optional[dict] = None,
) -> None:
    if status not in ITEM_STATUSES:
        raise ValueError(f"Unknown batch item status {status!r}")
    await session.execute(
        text(
            """
            INSERT INTO seed_items(batch_id, item_key, status, error_message, meta, created_at)
            VALUES(:batch_id, :item_key, :status, :error_message, CAST(:meta AS jsonb), now())
            """
        ),
        {
            "batch_id": batch_id,
            "item_key": str(item_key),
            "status": status,
            "error_message": truncate(error_message, settings.error_message_max_len),
            "meta": _json(meta),
        },
    )


async def finish_batch(
    session: AsyncSession,
    batch_id: int,
    status: str,
    *,
    items_total: int,
    items_success: int,
    items_failed: int,
    error_message: Optional[str] = None,
    error_stack: Optional[str] = None,
    meta: Optional[dict] = None,
) -> bool:
    """Move a running batch to its terminal status; a batch already finished is left untouched."""
    if status not in BATCH_STATUSES or status == "running":
        raise ValueError(f"Invalid terminal batch status {status!r}")
    if items_success + items_failed > items_total:
        raise ValueError(
            f"batch {batch_id}: items_success+items_failed ({items_success}+{items_failed}) exceeds items_total {items_total}"
        )
    res = await session.execute(
        text(
            """
            UPDATE seed_batches
            SET status=:status,
                finished_at=now(),
                duration_ms=GREATEST(0, (EXTRACT(EPOCH FROM (now() - started_at)) * 1000)::bigint),
                items_total=:items_total,
                items_success=:items_success,
                items_failed=:items_failed,
                error_message=:error_message,
                error_stack=:error_stack,
                meta=COALESCE(meta, '{}'::jsonb) || CAST(:meta AS jsonb)
            WHERE id=:id AND status='running'
            RETURNING id
            """
        ),
        {
            "id": batch_id,
            "status": status,
            "items_total": int(items_total),
            "items_success": int(items_success),
            "items_failed": int(items_failed),
            "error_message": truncate(error_message, settings.error_message_max_len),
            "error_stack": truncate_tail(error_stack, settings.error_stack_max_len),
            "meta": _json(meta),
        },
    )
    finished = res.first() is not None
    if not finished:
        log.warning("batch_finish_ignored batch_id=%s status=%s", batch_id, status)
    return finished


async def record_skipped_batch(
    session: AsyncSession,
    name: str,
    reason: str,
    *,
    trigger: str = "automatic",
    triggered_by: Optional[str] = None,
    triggered_by_id: Optional[str] = None,
    job_run_id: Optional[int] = None,
    meta: Optional[dict] = None,
) -> int:
    batch_id = await start_batch(
        session,
        name,
        trigger=trigger,
        triggered_by=triggered_by,
        triggered_by_id=triggered_by_id,
        job_run_id=job_run_id,
        meta=meta,
    )
    await finish_batch(
        session,
        batch_id,
        "skipped",
        items_total=0,
        items_success=0,
        items_failed=0,
        meta={"reason": reason},
    )
    return batch_id


async def list_batches(session: AsyncSession, *, name: Optional[str] = None, limit: int = 50) -> list[dict[str, Any]]:
    res = await session.execute(
        text(
            """
            SELECT id, name, version, status, trigger, triggered_by, triggered_by_id, job_run_id,
                   started_at, finished_at, duration_ms, items_total, items_success, items_failed,
                   error_message, meta
            FROM seed_batches
            WHERE (CAST(:name AS text) IS NULL OR name=:name)
            ORDER BY started_at DESC, id DESC
            LIMIT :limit
            """
        ),
        {"name": name, "limit": max(1, min(int(limit), 500))},
    )
    return [dict(r._mapping) for r in res.fetchall()]


async def list_batch_items(session: AsyncSession, batch_id: int) -> list[dict[str, Any]]:
    res = await session.execute(
        text(
            """
            SELECT id, item_key, status, error_message, meta, created_at
            FROM seed_items
            WHERE batch_id=:batch_id
            ORDER BY id
            """
        ),
        {"batch_id": batch_id},
    )
    return [dict(r._mapping) for r in res.fetchall()]
