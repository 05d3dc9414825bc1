# casedispatch/infra/memory_repos.py
"""
In-memory implementations of the persistence ports.

Same contract as the PostgreSQL adapters: conditioned updates return None
when the precondition fails, the decline ledger rejects duplicates, reads
hand out copies.  All repositories built on one ``MemoryStore`` share its
data and its lock.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence
from uuid import uuid4

from casedispatch.core.domain import (
    Case,
    CaseFilters,
    CaseStatus,
    COMPLETABLE_STATUSES,
    DeclineRecord,
    DeclinedCase,
    IncomeEntry,
    PRIORITY_RANK,
    ProviderSnapshot,
    STATUS_PRIORITY,
)
from casedispatch.core.matching import normalize_category
from casedispatch.core.queue import is_visible_to
from casedispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_RELEASABLE = (CaseStatus.PENDING, CaseStatus.ACCEPTED, CaseStatus.WIP)


@dataclass
class IncomeRecord:
    id: str
    case_id: str
    provider_id: str
    customer_id: Optional[str]
    income: IncomeEntry
    recorded_at: datetime


@dataclass
class MemoryStore:
    cases: dict[str, Case] = field(default_factory=dict)
    declines: dict[tuple[str, str], DeclineRecord] = field(default_factory=dict)
    providers: dict[str, ProviderSnapshot] = field(default_factory=dict)
    income: list[IncomeRecord] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def declined_by(self, provider_id: str) -> set[str]:
        return {case_id for (case_id, pid) in self.declines if pid == provider_id}

    def release(self, case_id: str, provider_id: str, now: datetime) -> Optional[Case]:
        """Reopen a case ``provider_id`` still owns.  Caller holds ``lock``."""
        case = self.cases.get(case_id)
        if case is None or case.provider_id != provider_id or case.status not in _RELEASABLE:
            return None
        updated = case.copy(
            status=CaseStatus.PENDING,
            provider_id=None,
            provider_name=None,
            is_open_case=True,
            auto_assigned=False,
            accepted_at=None,
            updated_at=now,
        )
        self.cases[case_id] = updated
        return updated.copy()


class InMemoryCaseRepository:

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    async def insert(self, case: Case) -> None:
        async with self.store.lock:
            if case.id in self.store.cases:
                raise ValueError(f"Duplicate case id: {case.id}")
            self.store.cases[case.id] = case.copy()

    async def get(self, case_id: str) -> Optional[Case]:
        async with self.store.lock:
            case = self.store.cases.get(case_id)
            return case.copy() if case else None

    async def _update_if(
        self,
        case_id: str,
        precondition: Callable[[Case], bool],
        **changes,
    ) -> Optional[Case]:
        async with self.store.lock:
            case = self.store.cases.get(case_id)
            if case is None or not precondition(case):
                return None
            updated = case.copy(**changes)
            self.store.cases[case_id] = updated
            return updated.copy()

    async def accept_if_pending(
        self,
        case_id: str,
        provider_id: str,
        provider_name: Optional[str],
        now: datetime,
        *,
        auto_assigned: bool = False,
    ) -> Optional[Case]:
        async with self.store.lock:
            case = self.store.cases.get(case_id)
            if case is None or case.status != CaseStatus.PENDING:
                return None
            if provider_name is None and case.provider_id == provider_id:
                provider_name = case.provider_name
            updated = case.copy(
                status=CaseStatus.ACCEPTED,
                provider_id=provider_id,
                provider_name=provider_name,
                auto_assigned=auto_assigned,
                accepted_at=now,
                updated_at=now,
            )
            self.store.cases[case_id] = updated
            return updated.copy()

    async def release_if_assigned(self, case_id: str, provider_id: str, now: datetime) -> Optional[Case]:
        async with self.store.lock:
            return self.store.release(case_id, provider_id, now)

    async def start_if_accepted(self, case_id: str, provider_id: str, now: datetime) -> Optional[Case]:
        return await self._update_if(
            case_id,
            lambda c: c.provider_id == provider_id and c.status == CaseStatus.ACCEPTED,
            status=CaseStatus.WIP,
            updated_at=now,
        )

    async def complete_if_active(self, case_id: str, notes: Optional[str], now: datetime) -> Optional[Case]:
        return await self._update_if(
            case_id,
            lambda c: c.status in COMPLETABLE_STATUSES,
            status=CaseStatus.COMPLETED,
            completion_notes=notes,
            completed_at=now,
            updated_at=now,
        )

    async def close_if_pending(self, case_id: str, now: datetime) -> Optional[Case]:
        return await self._update_if(
            case_id,
            lambda c: c.status == CaseStatus.PENDING,
            status=CaseStatus.CLOSED,
            provider_id=None,
            provider_name=None,
            updated_at=now,
        )

    async def set_status_if(
        self,
        case_id: str,
        *,
        expected: CaseStatus,
        status: CaseStatus,
        message: Optional[str],
        clear_provider: bool,
        now: datetime,
    ) -> Optional[Case]:
        async with self.store.lock:
            case = self.store.cases.get(case_id)
            if case is None or case.status != expected:
                return None
            changes = {"status": status, "updated_at": now}
            if message is not None:
                changes["completion_notes"] = message
            if clear_provider:
                changes["provider_id"] = None
                changes["provider_name"] = None
                if status == CaseStatus.PENDING:
                    changes["is_open_case"] = True
            updated = case.copy(**changes)
            self.store.cases[case_id] = updated
            return updated.copy()

    async def list_available(self, provider_id: str) -> list[Case]:
        async with self.store.lock:
            declined = self.store.declined_by(provider_id)
            return [
                c.copy()
                for c in self.store.cases.values()
                if is_visible_to(c, provider_id, declined=c.id in declined)
            ]

    async def search(self, filters: CaseFilters) -> tuple[list[Case], int]:
        async with self.store.lock:
            declined = (
                self.store.declined_by(filters.exclude_declined_by)
                if filters.exclude_declined_by
                else set()
            )
            matched = [c for c in self.store.cases.values() if _matches(c, filters, declined)]

        ordered = _order(matched, filters)
        page = ordered[filters.offset:filters.offset + filters.limit]
        return [c.copy() for c in page], len(matched)

    async def count_by_status(self, provider_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        async with self.store.lock:
            for c in self.store.cases.values():
                if c.provider_id == provider_id:
                    counts[c.status.value] = counts.get(c.status.value, 0) + 1
        return counts

    async def count_open_unassigned(self, excluding_declined_by: str) -> int:
        async with self.store.lock:
            declined = self.store.declined_by(excluding_declined_by)
            return sum(
                1
                for c in self.store.cases.values()
                if c.is_open_case
                and c.status == CaseStatus.PENDING
                and c.provider_id is None
                and c.id not in declined
            )


def _eq(a: Optional[str], b: str) -> bool:
    return a is not None and a.lower() == b.lower()


def _matches(case: Case, f: CaseFilters, declined: set[str]) -> bool:
    if f.status and case.status.value != f.status:
        return False
    if f.category and not _eq(case.category, f.category):
        return False
    if f.city and not _eq(case.city, f.city):
        return False
    if f.neighborhood and not _eq(case.neighborhood, f.neighborhood):
        return False
    if f.provider_id and case.provider_id != f.provider_id:
        return False
    if f.customer_id and case.customer_id != f.customer_id:
        return False
    if f.participant_id and f.participant_id not in (case.customer_id, case.provider_id):
        return False
    if f.only_unassigned and case.provider_id is not None:
        return False
    if case.id in declined:
        return False
    return True


def _sort_value(case: Case, column: str):
    if column == "priority":
        return PRIORITY_RANK.get(case.priority, PRIORITY_RANK["normal"])
    if column == "status":
        return STATUS_PRIORITY.get(case.status.value, 6)
    if column in ("city", "category"):
        return getattr(case, column) or ""
    return getattr(case, column) or _EPOCH


def _order(cases: list[Case], f: CaseFilters) -> list[Case]:
    """Same ordering as the SQL backend's ``build_search_order``."""
    ordered = sorted(cases, key=lambda c: c.id)
    if f.sort_by != "created_at":
        ordered = sorted(ordered, key=lambda c: c.created_at or _EPOCH, reverse=True)
    ordered = sorted(
        ordered,
        key=lambda c: _sort_value(c, f.sort_by),
        reverse=f.sort_order.lower() != "asc",
    )
    if not f.status:
        ordered = sorted(ordered, key=lambda c: STATUS_PRIORITY.get(c.status.value, 6))
    return ordered


class InMemoryDeclineLedger:

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    async def add_and_release(self, record: DeclineRecord) -> tuple[bool, Optional[Case]]:
        key = (record.case_id, record.provider_id)
        async with self.store.lock:
            if key in self.store.declines:
                return False, None
            released = self.store.release(record.case_id, record.provider_id, record.declined_at)
            self.store.declines[key] = record
            return True, released

    async def remove(self, case_id: str, provider_id: str) -> None:
        async with self.store.lock:
            self.store.declines.pop((case_id, provider_id), None)

    async def exists(self, case_id: str, provider_id: str) -> bool:
        async with self.store.lock:
            return (case_id, provider_id) in self.store.declines

    async def list_for_provider(self, provider_id: str) -> list[DeclinedCase]:
        async with self.store.lock:
            result = [
                DeclinedCase(case=self.store.cases[case_id].copy(), record=record)
                for (case_id, pid), record in self.store.declines.items()
                if pid == provider_id and case_id in self.store.cases
            ]
        result.sort(key=lambda d: d.record.declined_at, reverse=True)
        return result

    async def count_for_provider(self, provider_id: str) -> int:
        async with self.store.lock:
            return len(self.store.declined_by(provider_id))


class InMemoryIncomeLedger:

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    async def record(
        self,
        *,
        case_id: str,
        provider_id: str,
        customer_id: Optional[str],
        income: IncomeEntry,
        recorded_at: datetime,
    ) -> str:
        entry_id = str(uuid4())
        async with self.store.lock:
            self.store.income.append(
                IncomeRecord(
                    id=entry_id,
                    case_id=case_id,
                    provider_id=provider_id,
                    customer_id=customer_id,
                    income=income,
                    recorded_at=recorded_at,
                )
            )
        logger.debug(f"Income recorded in memory: case={case_id} provider={provider_id}")
        return entry_id


class InMemoryProviderDirectory:

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    async def upsert(self, provider: ProviderSnapshot) -> None:
        async with self.store.lock:
            self.store.providers[provider.id] = provider

    async def eligible_providers(
        self,
        categories: Sequence[str],
        *,
        excluding_declined_for: Optional[str] = None,
    ) -> list[ProviderSnapshot]:
        wanted = {normalize_category(c) for c in categories if c}
        async with self.store.lock:
            return [
                p
                for p in self.store.providers.values()
                if p.is_available
                and normalize_category(p.category) in wanted
                and (
                    excluding_declined_for is None
                    or (excluding_declined_for, p.id) not in self.store.declines
                )
            ]
