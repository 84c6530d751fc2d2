import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.db import engine, get_session, init_db
from app.core.errors import ProviderError, ValidationError
from app.core.http import close_http_clients, init_http_clients
from app.jobs import reference_data, seed_season
from app.jobs.base import JobRunOptions
from app.jobs.registry import get_job_definition
from app.jobs.runner import run_all_jobs, run_job
from app.scheduler_runner import build_scheduler
from app.services import batches, job_runs, reconciliation, settlement
from app.services.upsert_pipeline import PipelineOptions

logger = logging.getLogger(__name__)
_scheduler = None


def _require_admin(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")):
    token = (settings.admin_token or "").strip()
    if not token:
        raise HTTPException(status_code=403, detail="Admin token is not configured")
    if x_admin_token != token:
        raise HTTPException(status_code=403, detail="Forbidden")


def _actor(x_admin_actor: str | None = Header(default=None, alias="X-Admin-Actor")) -> str:
    return (x_admin_actor or "").strip() or "unknown"


def _manual_opts(actor: str, *, dry_run: bool) -> JobRunOptions:
    return JobRunOptions(trigger="manual", triggered_by="admin", triggered_by_id=actor, dry_run=dry_run)


def _validate_runtime_config() -> None:
    env = (settings.app_env or "dev").strip().lower()
    if env in {"prod", "production"} and not (settings.admin_token or "").strip():
        raise RuntimeError("ADMIN_TOKEN is required in prod")
    if not settings.provider_configured:
        logger.warning("SPORTMONKS_API_TOKEN is not configured; provider jobs will be skipped")


@asynccontextmanager
async def lifespan(_: FastAPI):
    global _scheduler
    await init_db()
    await init_http_clients()
    _validate_runtime_config()

    if settings.scheduler_enabled:
        _scheduler = build_scheduler()
        _scheduler.start()
        logger.info("scheduler_started_in_web_process")
    try:
        yield
    finally:
        if _scheduler is not None:
            _scheduler.shutdown(wait=False)
            _scheduler = None
        try:
            await close_http_clients()
        except Exception:
            logger.exception("http_client_close_failed")
        try:
            await engine.dispose()
        except Exception:
            logger.exception("engine_dispose_failed")


app = FastAPI(title="Fixture Sync", lifespan=lifespan)


@app.exception_handler(ValidationError)
async def _validation_error_handler(_: Request, exc: ValidationError):
    return JSONResponse(status_code=exc.status_code, content={"ok": False, **exc.to_dict()})


@app.exception_handler(ProviderError)
async def _provider_error_handler(_: Request, exc: ProviderError):
    logger.warning("provider_error status=%s url=%s error=%s", exc.status_code, exc.url, exc)
    return JSONResponse(status_code=502, content={"ok": False, "error": str(exc)})


@app.get("/health")
async def health():
    return {"ok": True}


@app.get("/api/v1/jobs")
async def api_jobs(_: None = Depends(_require_admin), session: AsyncSession = Depends(get_session)):
    return {"items": await job_runs.list_jobs(session)}


@app.get("/api/v1/job-runs")
async def api_job_runs(
    job_key: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    _: None = Depends(_require_admin),
    session: AsyncSession = Depends(get_session),
):
    return {"items": await job_runs.list_job_runs(session, job_key=job_key, limit=limit)}


@app.post("/api/v1/jobs/run-all")
async def api_run_all_jobs(
    dry_run: bool = Query(False),
    _: None = Depends(_require_admin),
    actor: str = Depends(_actor),
):
    results = await run_all_jobs(_manual_opts(actor, dry_run=dry_run))
    logger.info("run_all_triggered actor=%s dry_run=%s", actor, dry_run)
    return {
        "ok": all(r.ok for r in results),
        "results": [r.as_dict() for r in results],
    }


@app.post("/api/v1/jobs/{job_key}/run")
async def api_run_job(
    job_key: str,
    dry_run: bool = Query(False),
    _: None = Depends(_require_admin),
    actor: str = Depends(_actor),
):
    definition = get_job_definition(job_key)
    logger.info("run_now_triggered job=%s actor=%s dry_run=%s", job_key, actor, dry_run)
    try:
        result = await run_job(definition, _manual_opts(actor, dry_run=dry_run))
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        return {"ok": False, "jobKey": job_key, "status": "failed", "error": str(exc) or exc.__class__.__name__}
    return {"ok": result.ok, **result.as_dict()}


@app.get("/api/v1/batches")
async def api_batches(
    name: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    _: None = Depends(_require_admin),
    session: AsyncSession = Depends(get_session),
):
    return {"items": await batches.list_batches(session, name=name, limit=limit)}


@app.get("/api/v1/batches/{batch_id}/items")
async def api_batch_items(
    batch_id: int,
    _: None = Depends(_require_admin),
    session: AsyncSession = Depends(get_session),
):
    return {"batchId": batch_id, "items": await batches.list_batch_items(session, batch_id)}


@app.post("/api/v1/fixtures/{fixture_id}/resettle")
async def api_resettle_fixture(
    fixture_id: int,
    _: None = Depends(_require_admin),
    actor: str = Depends(_actor),
    session: AsyncSession = Depends(get_session),
):
    out = await settlement.resettle(session, fixture_id)
    logger.info("resettle_triggered fixture_id=%s actor=%s", fixture_id, actor)
    return {"ok": True, "fixtureId": fixture_id, **out}


@app.get("/api/v1/fixtures/{fixture_id}/settlement")
async def api_settlement_summary(
    fixture_id: int,
    _: None = Depends(_require_admin),
    session: AsyncSession = Depends(get_session),
):
    return await settlement.summarize(session, fixture_id)


@app.post("/api/v1/seasons/{season_external_id}/seed")
async def api_seed_season(
    season_external_id: str,
    include_teams: bool = Query(True),
    include_fixtures: bool = Query(True),
    dry_run: bool = Query(False),
    _: None = Depends(_require_admin),
    actor: str = Depends(_actor),
    session: AsyncSession = Depends(get_session),
):
    opts = PipelineOptions(trigger="manual", triggered_by="admin", triggered_by_id=actor, dry_run=dry_run)
    out = await seed_season.seed_season(
        session,
        season_external_id,
        include_teams=include_teams,
        include_fixtures=include_fixtures,
        options=opts,
    )
    logger.info("seed_season_triggered season=%s actor=%s dry_run=%s", season_external_id, actor, dry_run)
    return {"ok": True, **out}


@app.get("/api/v1/reconciliation/{entity_kind}")
async def api_reconciliation(
    entity_kind: str,
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    _: None = Depends(_require_admin),
    session: AsyncSession = Depends(get_session),
):
    if entity_kind == "fixture":
        if not date_from or not date_to:
            raise ValidationError("Fixture reconciliation needs from and to dates (YYYY-MM-DD)")
        report = await reconciliation.diff_fixtures(session, date_from, date_to)
    else:
        report = await reconciliation.diff(session, entity_kind)
    return report.as_dict()


@app.post("/api/v1/reconciliation/{entity_kind}/sync")
async def api_reconciliation_sync(
    entity_kind: str,
    scope: str = Query("missing+mismatched"),
    dry_run: bool = Query(False),
    _: None = Depends(_require_admin),
    actor: str = Depends(_actor),
    session: AsyncSession = Depends(get_session),
):
    opts = PipelineOptions(trigger="manual", triggered_by="admin", triggered_by_id=actor, dry_run=dry_run)
    out = await reference_data.sync_kind(session, entity_kind, scope=scope, options=opts)
    logger.info("reconciliation_sync kind=%s scope=%s actor=%s dry_run=%s", entity_kind, scope, actor, dry_run)
    return {"ok": True, **out}
