# casedispatch/infra/pg_income_repo_async.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from casedispatch.core.domain import IncomeEntry
from casedispatch.core.ports import AsyncIncomeLedger
from casedispatch.infra.db_resilience_async import safe_db_conn
from casedispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


class AsyncPostgresIncomeLedger(AsyncIncomeLedger):
    """Completion income entries in ``case_income``."""

    async def record(
        self,
        *,
        case_id: str,
        provider_id: str,
        customer_id: Optional[str],
        income: IncomeEntry,
        recorded_at: datetime,
    ) -> str:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO case_income (
                  case_id, provider_id, customer_id, amount, currency,
                  payment_method, notes, recorded_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING id
                """,
                case_id,
                provider_id,
                customer_id,
                Decimal(str(income.amount)),
                income.currency,
                income.payment_method,
                income.notes,
                recorded_at,
            )

        entry_id = str(row["id"])
        logger.info(
            f"Income recorded: {income.amount} {income.currency}",
            extra={"case_id": case_id, "provider_id": provider_id},
        )
        return entry_id
