# casedispatch/infra/pg_case_repo_async.py
"""
Async PostgreSQL case repository (asyncpg).

Every state-changing statement is ``UPDATE ... WHERE id = $1 AND <status
precondition> RETURNING *``.  Zero rows back means the precondition no
longer held, reported to the caller as None.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from casedispatch.core.domain import (
    AssignmentType,
    Case,
    CaseFilters,
    CaseStatus,
    STATUS_PRIORITY,
)
from casedispatch.core.ports import AsyncCaseRepository
from casedispatch.infra.db_resilience_async import safe_db_conn
from casedispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


_SCREENSHOTS_SQL = (
    "COALESCE((SELECT array_agg(s.url ORDER BY s.id) FROM case_screenshots s "
    "WHERE s.case_id = c.id), '{}') AS screenshots"
)

# Whitelisted sort columns -> SQL expression
_SORT_SQL = {
    "created_at": "c.created_at",
    "updated_at": "c.updated_at",
    "city": "c.city",
    "category": "c.category",
    "priority": (
        "CASE c.priority WHEN 'urgent' THEN 0 WHEN 'high' THEN 1 "
        "WHEN 'low' THEN 3 ELSE 2 END"
    ),
    "status": (
        "CASE c.status "
        + " ".join(f"WHEN '{s}' THEN {rank}" for s, rank in STATUS_PRIORITY.items())
        + " ELSE 6 END"
    ),
}

_STATUS_PRIORITY_SQL = _SORT_SQL["status"]

_AVAILABLE_WHERE = """
    ((c.is_open_case AND c.status = 'pending')
      OR (c.provider_id = $1 AND c.status <> 'closed'))
    AND NOT EXISTS (
      SELECT 1 FROM case_declines d
      WHERE d.case_id = c.id AND d.provider_id = $1
    )
"""


# Owner gives the case back: open, pending, unassigned.  Matches only while
# $2 still owns it and it is not finished.
RELEASE_CASE_SQL = """
    UPDATE cases
    SET status = 'pending',
        provider_id = NULL,
        provider_name = NULL,
        is_open_case = true,
        auto_assigned = false,
        accepted_at = NULL,
        updated_at = $3
    WHERE id = $1
      AND provider_id = $2
      AND status IN ('pending', 'accepted', 'wip')
    RETURNING *
"""


def _dec(value: Optional[float]) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


def _num(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return float(value)
    return value


def row_to_case(row, screenshots: Optional[list[str]] = None) -> Case:
    """Convert an asyncpg Record from ``cases`` into a Case."""
    if screenshots is None:
        screenshots = list(row.get("screenshots") or [])
    return Case(
        id=row["id"],
        customer_id=row["customer_id"],
        service_type=row["service_type"],
        category=row["category"],
        description=row["description"],
        phone=row["phone"],
        city=row["city"],
        neighborhood=row["neighborhood"],
        address=row["address"],
        priority=row["priority"],
        preferred_date=row["preferred_date"],
        preferred_time=row["preferred_time"],
        additional_details=row["additional_details"],
        status=CaseStatus(row["status"]),
        assignment_type=AssignmentType(row["assignment_type"]),
        is_open_case=row["is_open_case"],
        provider_id=row["provider_id"],
        provider_name=row["provider_name"],
        auto_assigned=row["auto_assigned"],
        budget_min=_num(row["budget_min"]),
        budget_max=_num(row["budget_max"]),
        completion_notes=row["completion_notes"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
        accepted_at=row["accepted_at"],
        screenshots=screenshots,
    )


async def update_returning_case(conn, sql: str, *args) -> Optional[Case]:
    """Run a conditioned ``UPDATE ... RETURNING *`` on ``conn``; None when nothing matched."""
    row = await conn.fetchrow(sql, *args)
    if row is None:
        return None
    urls = await conn.fetch(
        "SELECT url FROM case_screenshots WHERE case_id = $1 ORDER BY id",
        row["id"],
    )
    return row_to_case(row, [r["url"] for r in urls])


class AsyncPostgresCaseRepository(AsyncCaseRepository):
    """Async PostgreSQL implementation of AsyncCaseRepository using asyncpg."""

    async def insert(self, case: Case) -> None:
        """Insert the case row and its screenshot rows in one transaction."""
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute(
                """
                INSERT INTO cases (
                  id, customer_id, service_type, category, description, phone,
                  city, neighborhood, address, priority, preferred_date, preferred_time,
                  additional_details, status, assignment_type, is_open_case,
                  provider_id, provider_name, auto_assigned, budget_min, budget_max,
                  created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12,
                        $13, $14, $15, $16, $17, $18, $19, $20, $21, $22, $23)
                """,
                case.id,
                case.customer_id,
                case.service_type,
                case.category,
                case.description,
                case.phone,
                case.city,
                case.neighborhood,
                case.address,
                case.priority,
                case.preferred_date,
                case.preferred_time,
                case.additional_details,
                case.status.value,
                case.assignment_type.value,
                case.is_open_case,
                case.provider_id,
                case.provider_name,
                case.auto_assigned,
                _dec(case.budget_min),
                _dec(case.budget_max),
                case.created_at,
                case.updated_at,
            )

            if case.screenshots:
                await conn.executemany(
                    "INSERT INTO case_screenshots (case_id, url) VALUES ($1, $2)",
                    [(case.id, url) for url in case.screenshots],
                )

        logger.debug(
            f"Case row inserted with {len(case.screenshots)} screenshot(s)",
            extra={"case_id": case.id},
        )

    async def get(self, case_id: str) -> Optional[Case]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"SELECT c.*, {_SCREENSHOTS_SQL} FROM cases c WHERE c.id = $1",
                case_id,
            )
            return row_to_case(row) if row else None

    # ------------------------------------------------------------------
    # Conditioned updates
    # ------------------------------------------------------------------

    async def accept_if_pending(
        self,
        case_id: str,
        provider_id: str,
        provider_name: Optional[str],
        now,
        *,
        auto_assigned: bool = False,
    ) -> Optional[Case]:
        return await self._update_returning(
            """
            UPDATE cases
            SET status = 'accepted',
                provider_name = CASE
                  WHEN $3::text IS NOT NULL THEN $3::text
                  WHEN provider_id = $2 THEN provider_name
                  ELSE NULL
                END,
                provider_id = $2,
                auto_assigned = $4,
                accepted_at = $5,
                updated_at = $5
            WHERE id = $1 AND status = 'pending'
            RETURNING *
            """,
            case_id, provider_id, provider_name, auto_assigned, now,
        )

    async def release_if_assigned(self, case_id: str, provider_id: str, now) -> Optional[Case]:
        return await self._update_returning(RELEASE_CASE_SQL, case_id, provider_id, now)

    async def start_if_accepted(self, case_id: str, provider_id: str, now) -> Optional[Case]:
        return await self._update_returning(
            """
            UPDATE cases
            SET status = 'wip', updated_at = $3
            WHERE id = $1 AND provider_id = $2 AND status = 'accepted'
            RETURNING *
            """,
            case_id, provider_id, now,
        )

    async def complete_if_active(self, case_id: str, notes: Optional[str], now) -> Optional[Case]:
        return await self._update_returning(
            """
            UPDATE cases
            SET status = 'completed',
                completion_notes = $2,
                completed_at = $3,
                updated_at = $3
            WHERE id = $1 AND status IN ('accepted', 'wip')
            RETURNING *
            """,
            case_id, notes, now,
        )

    async def close_if_pending(self, case_id: str, now) -> Optional[Case]:
        return await self._update_returning(
            """
            UPDATE cases
            SET status = 'closed',
                provider_id = NULL,
                provider_name = NULL,
                updated_at = $2
            WHERE id = $1 AND status = 'pending'
            RETURNING *
            """,
            case_id, now,
        )

    async def set_status_if(
        self,
        case_id: str,
        *,
        expected: CaseStatus,
        status: CaseStatus,
        message: Optional[str],
        clear_provider: bool,
        now,
    ) -> Optional[Case]:
        return await self._update_returning(
            """
            UPDATE cases
            SET status = $3,
                completion_notes = COALESCE($4::text, completion_notes),
                provider_id = CASE WHEN $5 THEN NULL ELSE provider_id END,
                provider_name = CASE WHEN $5 THEN NULL ELSE provider_name END,
                is_open_case = CASE WHEN $5 AND $3 = 'pending' THEN true ELSE is_open_case END,
                updated_at = $6
            WHERE id = $1 AND status = $2
            RETURNING *
            """,
            case_id, expected.value, status.value, message, clear_provider, now,
        )

    async def _update_returning(self, sql: str, *args) -> Optional[Case]:
        async with safe_db_conn() as conn:
            return await update_returning_case(conn, sql, *args)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_available(self, provider_id: str) -> list[Case]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""
                SELECT c.*, {_SCREENSHOTS_SQL}
                FROM cases c
                WHERE {_AVAILABLE_WHERE}
                ORDER BY c.created_at DESC
                """,
                provider_id,
            )
            return [row_to_case(r) for r in rows]

    async def search(self, filters: CaseFilters) -> tuple[list[Case], int]:
        where, params = build_search_where(filters)
        order_by = build_search_order(filters)

        async with safe_db_conn() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM cases c WHERE {where}", *params)

            n = len(params)
            rows = await conn.fetch(
                f"""
                SELECT c.*, {_SCREENSHOTS_SQL}
                FROM cases c
                WHERE {where}
                ORDER BY {order_by}
                LIMIT ${n + 1} OFFSET ${n + 2}
                """,
                *params, filters.limit, filters.offset,
            )
            return [row_to_case(r) for r in rows], int(total or 0)

    async def count_by_status(self, provider_id: str) -> dict[str, int]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT status, COUNT(*) AS count
                FROM cases
                WHERE provider_id = $1
                GROUP BY status
                """,
                provider_id,
            )
            return {r["status"]: int(r["count"]) for r in rows}

    async def count_open_unassigned(self, excluding_declined_by: str) -> int:
        async with safe_db_conn() as conn:
            count = await conn.fetchval(
                """
                SELECT COUNT(*)
                FROM cases c
                WHERE c.is_open_case
                  AND c.status = 'pending'
                  AND c.provider_id IS NULL
                  AND NOT EXISTS (
                    SELECT 1 FROM case_declines d
                    WHERE d.case_id = c.id AND d.provider_id = $1
                  )
                """,
                excluding_declined_by,
            )
            return int(count or 0)


def build_search_where(filters: CaseFilters) -> tuple[str, list[Any]]:
    """Dynamic WHERE clause for ``search``; values always go through parameters."""
    clauses: list[str] = []
    params: list[Any] = []

    def add(template: str, value: Any) -> None:
        params.append(value)
        clauses.append(template.format(p=f"${len(params)}"))

    if filters.status:
        add("c.status = {p}", filters.status)
    if filters.category:
        add("lower(c.category) = lower({p})", filters.category)
    if filters.city:
        add("lower(c.city) = lower({p})", filters.city)
    if filters.neighborhood:
        add("lower(c.neighborhood) = lower({p})", filters.neighborhood)
    if filters.provider_id:
        add("c.provider_id = {p}", filters.provider_id)
    if filters.customer_id:
        add("c.customer_id = {p}", filters.customer_id)
    if filters.participant_id:
        params.append(filters.participant_id)
        p = f"${len(params)}"
        clauses.append(f"(c.customer_id = {p} OR c.provider_id = {p})")
    if filters.only_unassigned:
        clauses.append("c.provider_id IS NULL")
    if filters.exclude_declined_by:
        add(
            "NOT EXISTS (SELECT 1 FROM case_declines d "
            "WHERE d.case_id = c.id AND d.provider_id = {p})",
            filters.exclude_declined_by,
        )

    return (" AND ".join(clauses) if clauses else "TRUE"), params


def build_search_order(filters: CaseFilters) -> str:
    """Status priority first unless a status filter is set, then the requested column."""
    column = _SORT_SQL.get(filters.sort_by)
    if column is None:
        raise ValueError(f"Unsupported sort column: {filters.sort_by}")
    direction = "ASC" if filters.sort_order.lower() == "asc" else "DESC"

    parts = []
    if not filters.status:
        parts.append(f"{_STATUS_PRIORITY_SQL} ASC")
    parts.append(f"{column} {direction}")
    if filters.sort_by != "created_at":
        parts.append("c.created_at DESC")
    parts.append("c.id")
    return ", ".join(parts)
