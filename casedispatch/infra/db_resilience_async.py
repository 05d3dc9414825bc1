# casedispatch/infra/db_resilience_async.py
"""
Connection acquisition with retry.

Only getting a connection is retried. Statements inside the block run
exactly once: replaying a conditioned ``UPDATE ... WHERE status = ...``
after an ambiguous failure could report a lost race as a win.
"""
from __future__ import annotations
import asyncio
from contextlib import AsyncExitStack, asynccontextmanager

import asyncpg
from casedispatch.infra.db_async import db_conn
from casedispatch.infra.logging_config import get_logger
from casedispatch.infra.metrics import AppMetrics

logger = get_logger(__name__)

_TRANSIENT_MESSAGES = (
    "connection",
    "timeout",
    "closed",
    "network",
    "too many connections",
)

_BASE_DELAY = 0.1
_MAX_DELAY = 5.0


def is_transient_error(exc: Exception) -> bool:
    """True for failures that may clear up on a fresh connection."""
    if isinstance(
        exc,
        (
            asyncpg.PostgresConnectionError,
            asyncpg.TooManyConnectionsError,
            asyncpg.DeadlockDetectedError,
            asyncpg.InterfaceError,
        ),
    ):
        return True

    # Constraint violations, syntax errors and the like are permanent
    if isinstance(exc, asyncpg.PostgresError):
        return False

    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    message = str(exc).lower()
    return any(pattern in message for pattern in _TRANSIENT_MESSAGES)


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True, max_retries: int = 3):
    """
    ``db_conn`` with exponential backoff on transient acquisition errors.

        async with safe_db_conn() as conn:
            row = await conn.fetchrow("UPDATE cases SET ... RETURNING *", case_id)
    """
    delay = _BASE_DELAY
    attempt = 0

    while True:
        stack = AsyncExitStack()
        try:
            conn = await stack.enter_async_context(db_conn(autocommit=autocommit))
            break
        except Exception as exc:
            await stack.aclose()
            if not is_transient_error(exc) or attempt >= max_retries:
                if attempt:
                    logger.error(f"Giving up on case store connection after {attempt} retries: {exc}")
                raise

            attempt += 1
            AppMetrics.db_retry()
            logger.warning(
                f"Case store connection failed ({attempt}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2, _MAX_DELAY)

    async with stack:
        yield conn
