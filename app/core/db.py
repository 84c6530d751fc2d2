import os

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from .config import settings
from .logger import get_logger

_use_null_pool = bool(os.getenv("PYTEST_CURRENT_TEST")) or (settings.app_env or "").strip().lower() in {"test", "pytest"}
engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
    poolclass=NullPool if _use_null_pool else None,
)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
log = get_logger("db")

_REQUIRED_TABLES = ("external_mappings", "seed_batches", "seed_items", "jobs", "job_runs", "fixtures")


async def _has_table(conn, table_name: str) -> bool:
    res = await conn.execute(
        text(
            """
            SELECT 1
            FROM information_schema.tables
            WHERE table_schema='public'
              AND table_type='BASE TABLE'
              AND table_name=:name
            LIMIT 1
            """
        ),
        {"name": table_name},
    )
    return res.first() is not None


async def init_db():
    async with engine.begin() as conn:
        if not await _has_table(conn, "alembic_version"):
            msg = "db schema not initialized; run `alembic upgrade head`"
            if (settings.app_env or "").lower() == "dev":
                log.warning(msg)
                return
            raise RuntimeError(msg)

        missing = [name for name in _REQUIRED_TABLES if not await _has_table(conn, name)]
        if missing:
            msg = f"db schema is behind (missing tables: {', '.join(missing)}); run `alembic upgrade head`"
            if (settings.app_env or "").lower() == "dev":
                log.warning(msg)
                return
            raise RuntimeError(msg)


async def get_session():
    async with SessionLocal() as session:
        yield session
