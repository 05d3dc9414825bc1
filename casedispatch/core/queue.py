# casedispatch/core/queue.py
"""
Provider work queue and case search.

A provider sees a case when it is open and pending, or when the provider
owns it and it is not closed, unless the provider has declined it.
``is_visible_to`` is the single statement of that rule; the in-memory
backend filters with it and the SQL backend mirrors it in
``pg_case_repo_async.list_available``.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from casedispatch.core.domain import (
    ALLOWED_STATUS_UPDATES,
    Case,
    CaseFilters,
    CasePage,
    CaseSort,
    CaseStatus,
    DeclinedCase,
    PRIORITY_RANK,
    ProviderStats,
    STATUS_PRIORITY,
)
from casedispatch.core.errors import InvalidInputError
from casedispatch.core.ports import AsyncCaseRepository, AsyncDeclineLedger
from casedispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

SORTABLE_COLUMNS = frozenset({"created_at", "updated_at", "priority", "status", "city", "category"})

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def is_visible_to(case: Case, provider_id: str, *, declined: bool) -> bool:
    """Queue membership for one (case, provider) pair."""
    if declined:
        return False
    if case.is_open_case and case.status == CaseStatus.PENDING:
        return True
    return case.provider_id == provider_id and case.status != CaseStatus.CLOSED


def _created(case: Case) -> datetime:
    return case.created_at or _EPOCH


def sort_cases(cases: Iterable[Case], sort: CaseSort = CaseSort.NEWEST) -> list[Case]:
    """Order a queue. Ties always fall back to newest-created first."""
    newest_first = sorted(cases, key=_created, reverse=True)
    if sort == CaseSort.NEWEST:
        return newest_first
    if sort == CaseSort.OLDEST:
        return sorted(newest_first, key=_created)
    if sort == CaseSort.PRIORITY:
        return sorted(newest_first, key=lambda c: PRIORITY_RANK.get(c.priority, PRIORITY_RANK["normal"]))
    if sort == CaseSort.STATUS:
        return sorted(newest_first, key=lambda c: STATUS_PRIORITY.get(c.status.value, 6))
    raise InvalidInputError(f"Unknown sort: {sort}")


class CaseQueue:
    """Read side of the decline ledger: what each provider can see."""

    def __init__(
        self,
        *,
        cases: AsyncCaseRepository,
        declines: AsyncDeclineLedger,
        default_sort: CaseSort = CaseSort.NEWEST,
        max_page_size: int = 100,
    ) -> None:
        self.cases = cases
        self.declines = declines
        self.default_sort = default_sort
        self.max_page_size = max_page_size

    async def available_cases(self, provider_id: str, sort: CaseSort | str | None = None) -> list[Case]:
        if not provider_id:
            raise InvalidInputError("Provider ID is required")
        order = self._parse_sort(sort)
        cases = await self.cases.list_available(provider_id)
        return sort_cases(cases, order)

    async def declined_cases(self, provider_id: str) -> list[DeclinedCase]:
        if not provider_id:
            raise InvalidInputError("Provider ID is required")
        declined = await self.declines.list_for_provider(provider_id)
        return sorted(declined, key=lambda d: d.record.declined_at, reverse=True)

    async def search(self, filters: CaseFilters) -> CasePage:
        """Filtered, paginated case listing."""
        if filters.page < 1:
            raise InvalidInputError("page must be >= 1")
        if filters.limit < 1 or filters.limit > self.max_page_size:
            raise InvalidInputError(f"limit must be between 1 and {self.max_page_size}")
        if filters.status and filters.status not in ALLOWED_STATUS_UPDATES:
            raise InvalidInputError(f"Unknown status filter: {filters.status}")
        if filters.sort_by not in SORTABLE_COLUMNS:
            raise InvalidInputError(
                f"sort_by must be one of: {', '.join(sorted(SORTABLE_COLUMNS))}"
            )
        filters.sort_order = filters.sort_order.lower()
        if filters.sort_order not in ("asc", "desc"):
            raise InvalidInputError("sort_order must be 'asc' or 'desc'")

        cases, total = await self.cases.search(filters)
        return CasePage(cases=cases, total=total, page=filters.page, limit=filters.limit)

    async def provider_stats(self, provider_id: str) -> ProviderStats:
        if not provider_id:
            raise InvalidInputError("Provider ID is required")
        by_status = await self.cases.count_by_status(provider_id)
        available = await self.cases.count_open_unassigned(excluding_declined_by=provider_id)
        declined = await self.declines.count_for_provider(provider_id)
        return ProviderStats(
            available=available,
            declined=declined,
            pending=by_status.get(CaseStatus.PENDING.value, 0),
            accepted=by_status.get(CaseStatus.ACCEPTED.value, 0),
            wip=by_status.get(CaseStatus.WIP.value, 0),
            completed=by_status.get(CaseStatus.COMPLETED.value, 0),
        )

    def _parse_sort(self, sort: CaseSort | str | None) -> CaseSort:
        if sort is None:
            return self.default_sort
        try:
            return CaseSort(sort)
        except ValueError:
            raise InvalidInputError(
                f"sort must be one of: {', '.join(s.value for s in CaseSort)}"
            ) from None
