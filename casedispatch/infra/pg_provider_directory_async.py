# casedispatch/infra/pg_provider_directory_async.py
"""
Provider directory over the ``service_providers`` read model.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional, Sequence

from casedispatch.core.domain import ProviderSnapshot
from casedispatch.core.matching import normalize_category
from casedispatch.core.ports import AsyncProviderDirectory
from casedispatch.infra.db_resilience_async import safe_db_conn
from casedispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


def _f(value) -> Optional[float]:
    if value is None:
        return None
    return float(value) if isinstance(value, Decimal) else value


def row_to_provider(row) -> ProviderSnapshot:
    return ProviderSnapshot(
        id=row["id"],
        category=row["service_category"],
        city=row["city"],
        neighborhood=row["neighborhood"],
        rating=_f(row["rating"]) or 0.0,
        total_reviews=row["total_reviews"] or 0,
        experience_years=_f(row["experience_years"]) or 0.0,
        hourly_rate=_f(row["hourly_rate"]),
        is_available=row["is_available"],
        last_active_at=row["last_active_at"],
        business_name=row["business_name"],
        avg_response_minutes=_f(row["avg_response_minutes"]),
    )


class AsyncPostgresProviderDirectory(AsyncProviderDirectory):

    async def eligible_providers(
        self,
        categories: Sequence[str],
        *,
        excluding_declined_for: Optional[str] = None,
    ) -> list[ProviderSnapshot]:
        """
        Available providers in ``categories`` (compared without a ``cat_``
        prefix, case-insensitively), minus those who declined the case.
        """
        wanted = sorted({normalize_category(c) for c in categories if c})
        if not wanted:
            return []

        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT p.*
                FROM service_providers p
                WHERE regexp_replace(lower(p.service_category), '^cat_', '') = ANY($1::text[])
                  AND p.is_available
                  AND (
                    $2::text IS NULL
                    OR NOT EXISTS (
                      SELECT 1 FROM case_declines d
                      WHERE d.case_id = $2::text AND d.provider_id = p.id
                    )
                  )
                ORDER BY p.id
                """,
                wanted,
                excluding_declined_for,
            )

        logger.debug(f"Provider directory: {len(rows)} eligible for {wanted}")
        return [row_to_provider(r) for r in rows]
