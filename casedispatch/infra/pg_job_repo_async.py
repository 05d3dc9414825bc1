# casedispatch/infra/pg_job_repo_async.py
"""
Write side of the ``jobs`` outbox (asyncpg).

Notification requests land here as ``notify_user`` rows; the worker that
claims and delivers them is a separate deployment and owns every status
after ``pending``.
"""
from __future__ import annotations

import json
from typing import Any

from casedispatch.infra.db_resilience_async import safe_db_conn
from casedispatch.infra.logging_config import get_logger
from casedispatch.infra.metrics import inc_counter

logger = get_logger(__name__)

_INSERT_JOB = """
    INSERT INTO jobs (job_type, payload, priority, max_attempts, scheduled_at)
    VALUES ($1, $2::jsonb, $3, $4, now() + make_interval(secs => $5))
    RETURNING id
"""


class AsyncPostgresJobRepository:

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: int = 5,
        delay_seconds: float = 0,
    ) -> str:
        """
        Add a pending job and return its id.

        Lower ``priority`` values are claimed first.  ``payload`` is stored
        as jsonb with non-ASCII text kept as is (Bulgarian titles).
        """
        encoded = json.dumps(payload, ensure_ascii=False)
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                _INSERT_JOB, job_type, encoded, priority, max_attempts, float(delay_seconds)
            )

        job_id = str(row["id"])
        inc_counter("jobs_enqueued", job_type=job_type)
        logger.debug(f"Outbox job {job_id[:8]} queued: type={job_type}")
        return job_id

    async def count_by_status(self) -> dict[str, int]:
        """Outbox depth per status, reported on ``/metrics``."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT status, COUNT(*) AS cnt FROM jobs GROUP BY status")
        return {r["status"]: int(r["cnt"]) for r in rows}
