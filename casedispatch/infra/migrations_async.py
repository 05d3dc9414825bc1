# casedispatch/infra/migrations_async.py
"""
Schema migrations for the case store.

Files in ``casedispatch/infra/sql`` run once each, in filename order, all
pending ones inside a single transaction.  Several API replicas may start
at the same moment, so the run is serialized with a transaction-scoped
advisory lock.
"""
from __future__ import annotations
from pathlib import Path

from casedispatch.infra.db_async import db_conn
from casedispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

SQL_DIR = Path(__file__).resolve().parent / "sql"

# Arbitrary but fixed key for pg_advisory_xact_lock
_MIGRATION_LOCK_KEY = 715_202_501


def migration_files(sql_dir: Path = SQL_DIR) -> list[Path]:
    return sorted(p for p in sql_dir.glob("*.sql") if p.is_file())


async def apply_migrations() -> dict:
    """
    Apply pending migrations.

    Returns ``{"ok": True, "applied": [file names], "count": n}``; any SQL
    error propagates and rolls the whole run back.
    """
    pending_files = migration_files()

    async with db_conn(autocommit=False) as conn:
        await conn.execute("SELECT pg_advisory_xact_lock($1)", _MIGRATION_LOCK_KEY)
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )
        done = {r["version"] for r in await conn.fetch("SELECT version FROM schema_migrations")}

        applied: list[str] = []
        for path in pending_files:
            if path.name in done:
                continue
            logger.info(f"Applying migration {path.name}")
            await conn.execute(path.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", path.name)
            applied.append(path.name)

    if applied:
        logger.info(f"Migrations applied: {', '.join(applied)}")
    else:
        logger.info("Schema up to date")
    return {"ok": True, "applied": applied, "count": len(applied)}
