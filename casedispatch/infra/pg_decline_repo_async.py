# casedispatch/infra/pg_decline_repo_async.py
"""
Async PostgreSQL decline ledger (asyncpg).

Uniqueness of (case_id, provider_id) is enforced by the table constraint;
the insert uses ON CONFLICT DO NOTHING so a racing duplicate reports False
instead of raising.

Recording a decline and releasing the case from the declining provider
happen in one transaction that first locks the case row.  An accept that
commits before the lock is seen by the release; one that waits on the lock
sees the decline record through its own post-check in the state machine.
"""
from __future__ import annotations

from typing import Optional

from casedispatch.core.domain import Case, DeclineRecord, DeclinedCase
from casedispatch.core.ports import AsyncDeclineLedger
from casedispatch.infra.db_resilience_async import safe_db_conn
from casedispatch.infra.logging_config import get_logger
from casedispatch.infra.pg_case_repo_async import RELEASE_CASE_SQL, row_to_case, update_returning_case

logger = get_logger(__name__)


class AsyncPostgresDeclineLedger(AsyncDeclineLedger):

    async def add_and_release(self, record: DeclineRecord) -> tuple[bool, Optional[Case]]:
        released = None
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute("SELECT 1 FROM cases WHERE id = $1 FOR UPDATE", record.case_id)
            result = await conn.execute(
                """
                INSERT INTO case_declines (case_id, provider_id, reason, declined_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (case_id, provider_id) DO NOTHING
                """,
                record.case_id,
                record.provider_id,
                record.reason,
                record.declined_at,
            )
            # "INSERT 0 1" -> created, "INSERT 0 0" -> conflict
            created = bool(result) and int(result.split()[-1]) > 0
            if created:
                released = await update_returning_case(
                    conn, RELEASE_CASE_SQL, record.case_id, record.provider_id, record.declined_at
                )

        if not created:
            logger.debug(
                "Decline record already exists",
                extra={"case_id": record.case_id, "provider_id": record.provider_id},
            )
        return created, released

    async def remove(self, case_id: str, provider_id: str) -> None:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                "DELETE FROM case_declines WHERE case_id = $1 AND provider_id = $2",
                case_id,
                provider_id,
            )
        if result == "DELETE 0":
            logger.debug(
                "No decline record to remove",
                extra={"case_id": case_id, "provider_id": provider_id},
            )

    async def exists(self, case_id: str, provider_id: str) -> bool:
        async with safe_db_conn() as conn:
            return bool(await conn.fetchval(
                """
                SELECT EXISTS (
                  SELECT 1 FROM case_declines WHERE case_id = $1 AND provider_id = $2
                )
                """,
                case_id,
                provider_id,
            ))

    async def list_for_provider(self, provider_id: str) -> list[DeclinedCase]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT c.*,
                       COALESCE((SELECT array_agg(s.url ORDER BY s.id)
                                 FROM case_screenshots s WHERE s.case_id = c.id), '{}') AS screenshots,
                       d.provider_id AS declined_by,
                       d.reason AS decline_reason,
                       d.declined_at
                FROM case_declines d
                JOIN cases c ON c.id = d.case_id
                WHERE d.provider_id = $1
                ORDER BY d.declined_at DESC
                """,
                provider_id,
            )

        return [
            DeclinedCase(
                case=row_to_case(row),
                record=DeclineRecord(
                    case_id=row["id"],
                    provider_id=row["declined_by"],
                    declined_at=row["declined_at"],
                    reason=row["decline_reason"],
                ),
            )
            for row in rows
        ]

    async def count_for_provider(self, provider_id: str) -> int:
        async with safe_db_conn() as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM case_declines WHERE provider_id = $1",
                provider_id,
            )
            return int(count or 0)
