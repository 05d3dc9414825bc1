# casedispatch/infra/db_async.py
"""
asyncpg pool for the case store.

One process-wide pool, opened by the API lifespan or the migration runner.
Repositories never touch the pool directly; they go through
``safe_db_conn`` in ``db_resilience_async``.
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from casedispatch.config import Settings, settings as default_settings
from casedispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool(s: Settings | None = None) -> asyncpg.Pool:
    """Open the pool once; later calls return the existing one."""
    global _pool

    if _pool is not None:
        return _pool

    s = s or default_settings
    logger.info(f"Opening case store pool: {s.pghost}:{s.pgport}/{s.pgdatabase}")

    _pool = await asyncpg.create_pool(
        dsn=s.database_dsn,
        min_size=s.pg_pool_min,
        max_size=s.pg_pool_max,
        command_timeout=s.pg_command_timeout,
        server_settings={"application_name": f"casedispatch-{s.app_env}"},
    )

    logger.info(f"Case store pool ready: min={s.pg_pool_min}, max={s.pg_pool_max}")
    return _pool


async def close_pool() -> None:
    global _pool

    if _pool is None:
        return

    pool, _pool = _pool, None
    await pool.close()
    logger.info("Case store pool closed")


def _require_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Case store pool not initialized. Call init_pool() first.")
    return _pool


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a connection from the pool.

        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM cases WHERE id = $1", case_id)

    With ``autocommit=False`` the block is one transaction: committed when
    the block exits normally, rolled back when it raises.
    """
    pool = _require_pool()

    async with pool.acquire() as conn:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn


async def ping() -> bool:
    """Round-trip ``SELECT 1`` for the readiness check."""
    pool = _require_pool()
    return await pool.fetchval("SELECT 1") == 1


def pool_stats() -> dict[str, int]:
    if _pool is None:
        return {"size": 0, "idle": 0}
    return {"size": _pool.get_size(), "idle": _pool.get_idle_size()}
