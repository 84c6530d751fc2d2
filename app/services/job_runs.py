from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import truncate, truncate_tail
from app.core.logger import get_logger

log = get_logger("services.job_runs")

RUN_STATUSES = ("running", "success", "failed", "skipped")


def _json(value: Optional[dict]) -> str:
    return json.dumps(value or {}, ensure_ascii=False, default=str)


def _as_dict(payload: Any) -> dict:
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, str) and payload:
        try:
            value = json.loads(payload)
        except ValueError:
            return {}
        return value if isinstance(value, dict) else {}
    return {}


async def ensure_job_row(
    session: AsyncSession,
    key: str,
    *,
    description: str,
    enabled: bool,
    interval_minutes: int,
    meta: Optional[dict] = None,
) -> dict:
    """Create the job descriptor if missing and return the stored row.

    Existing rows are never overwritten: `enabled` and `meta` belong to operators once written.
    """
    await session.execute(
        text(
            """
            INSERT INTO jobs(key, description, enabled, interval_minutes, meta, created_at, updated_at)
            VALUES(:key, :description, :enabled, :interval_minutes, CAST(:meta AS jsonb), now(), now())
            ON CONFLICT (key) DO NOTHING
            """
        ),
        {
            "key": key,
            "description": description,
            "enabled": bool(enabled),
            "interval_minutes": int(interval_minutes),
            "meta": _json(meta),
        },
    )
    res = await session.execute(
        text("SELECT key, description, enabled, interval_minutes, meta FROM jobs WHERE key=:key"),
        {"key": key},
    )
    row = res.first()
    await session.commit()
    if row is None:
        raise RuntimeError(f"job descriptor {key} missing after insert")
    out = dict(row._mapping)
    out["meta"] = _as_dict(out.get("meta"))
    return out


async def start_job_run(
    session: AsyncSession,
    job_key: str,
    *,
    trigger: str,
    triggered_by: Optional[str] = None,
    triggered_by_id: Optional[str] = None,
    meta: Optional[dict] = None,
) -> int:
    res = await session.execute(
        text(
            """
            INSERT INTO job_runs(job_key, status, trigger, triggered_by, triggered_by_id, started_at, meta)
            VALUES(:job_key, 'running', :trigger, :triggered_by, :triggered_by_id, now(), CAST(:meta AS jsonb))
            RETURNING id
            """
        ),
        {
            "job_key": job_key,
            "trigger": trigger,
            "triggered_by": triggered_by,
            "triggered_by_id": triggered_by_id,
            "meta": _json(meta),
        },
    )
    run_id = int(res.scalar_one())
    await session.commit()
    return run_id


async def finish_job_run(
    session: AsyncSession,
    run_id: int,
    status: str,
    *,
    duration_ms: int,
    rows_affected: int = 0,
    error_message: Optional[str] = None,
    error_stack: Optional[str] = None,
    meta: Optional[dict] = None,
) -> None:
    if status not in RUN_STATUSES or status == "running":
        raise ValueError(f"Invalid terminal job run status {status!r}")
    try:
        await session.execute(
            text(
                """
                UPDATE job_runs
                SET status=:status,
                    finished_at=now(),
                    duration_ms=:duration_ms,
                    rows_affected=:rows_affected,
                    error_message=:error_message,
                    error_stack=:error_stack,
                    meta=COALESCE(meta, '{}'::jsonb) || CAST(:meta AS jsonb)
                WHERE id=:id AND status='running'
                """
            ),
            {
                "id": run_id,
                "status": status,
                "duration_ms": int(duration_ms),
                "rows_affected": int(rows_affected),
                "error_message": truncate(error_message, settings.error_message_max_len),
                "error_stack": truncate_tail(error_stack, settings.error_stack_max_len),
                "meta": _json(meta),
            },
        )
        await session.commit()
    except Exception:
        log.exception("job_runs_finish_failed id=%s status=%s", run_id, status)
        await session.rollback()


async def list_jobs(session: AsyncSession) -> list[dict[str, Any]]:
    res = await session.execute(
        text(
            """
            SELECT j.key, j.description, j.enabled, j.interval_minutes, j.meta,
                   r.id AS last_run_id, r.status AS last_status, r.started_at AS last_started_at,
                   r.finished_at AS last_finished_at
            FROM jobs j
            LEFT JOIN LATERAL (
              SELECT id, status, started_at, finished_at
              FROM job_runs
              WHERE job_key=j.key
              ORDER BY started_at DESC, id DESC
              LIMIT 1
            ) r ON TRUE
            ORDER BY j.key
            """
        )
    )
    return [dict(r._mapping) for r in res.fetchall()]


async def list_job_runs(session: AsyncSession, *, job_key: Optional[str] = None, limit: int = 50) -> list[dict[str, Any]]:
    res = await session.execute(
        text(
            """
            SELECT id, job_key, status, trigger, triggered_by, triggered_by_id, started_at, finished_at,
                   duration_ms, rows_affected, error_message, meta
            FROM job_runs
            WHERE (CAST(:job_key AS text) IS NULL OR job_key=:job_key)
            ORDER BY started_at DESC, id DESC
            LIMIT :limit
            """
        ),
        {"job_key": job_key, "limit": max(1, min(int(limit), 500))},
    )
    return [dict(r._mapping) for r in res.fetchall()]
