# casedispatch/core/ports.py
from __future__ import annotations
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from casedispatch.core.domain import (
    Case,
    CaseFilters,
    CaseStatus,
    DeclineRecord,
    DeclinedCase,
    IncomeEntry,
    ProviderSnapshot,
)


# ============================================================================
# PERSISTENCE
#
# Every write to a case is conditioned on its current status. Methods that
# perform a conditioned write return the updated Case, or None when the
# precondition no longer held (zero rows affected). They never raise for a
# lost race.
# ============================================================================

class AsyncCaseRepository(Protocol):
    async def insert(self, case: Case) -> None:
        """Insert the case and its screenshots atomically."""
        ...

    async def get(self, case_id: str) -> Optional[Case]: ...

    async def accept_if_pending(
        self,
        case_id: str,
        provider_id: str,
        provider_name: Optional[str],
        now: datetime,
        *,
        auto_assigned: bool = False,
    ) -> Optional[Case]: ...

    async def release_if_assigned(self, case_id: str, provider_id: str, now: datetime) -> Optional[Case]:
        """Return the case to the open queue if ``provider_id`` still owns it."""
        ...

    async def start_if_accepted(self, case_id: str, provider_id: str, now: datetime) -> Optional[Case]: ...

    async def complete_if_active(self, case_id: str, notes: Optional[str], now: datetime) -> Optional[Case]: ...

    async def close_if_pending(self, case_id: str, now: datetime) -> Optional[Case]: ...

    async def set_status_if(
        self,
        case_id: str,
        *,
        expected: CaseStatus,
        status: CaseStatus,
        message: Optional[str],
        clear_provider: bool,
        now: datetime,
    ) -> Optional[Case]: ...

    async def list_available(self, provider_id: str) -> list[Case]:
        """Provider's queue: open pending or owned non-closed cases, minus declined."""
        ...

    async def search(self, filters: CaseFilters) -> tuple[list[Case], int]: ...

    async def count_by_status(self, provider_id: str) -> dict[str, int]: ...

    async def count_open_unassigned(self, excluding_declined_by: str) -> int: ...


class AsyncDeclineLedger(Protocol):
    async def add_and_release(self, record: DeclineRecord) -> tuple[bool, Optional[Case]]:
        """
        Record the decline and, atomically with it, return the case to the
        open queue if ``record.provider_id`` still owns it.

        Returns ``(created, released)``: ``created`` is False when a record for
        (case_id, provider_id) already existed, and nothing else changes then.
        ``released`` is the reopened case, or None when the provider did not
        own it.
        """
        ...

    async def remove(self, case_id: str, provider_id: str) -> None:
        """Idempotent: removing a missing record is not an error."""
        ...

    async def exists(self, case_id: str, provider_id: str) -> bool: ...

    async def list_for_provider(self, provider_id: str) -> list[DeclinedCase]:
        """Declined cases joined with decline metadata, newest decline first."""
        ...

    async def count_for_provider(self, provider_id: str) -> int: ...


class AsyncIncomeLedger(Protocol):
    async def record(
        self,
        *,
        case_id: str,
        provider_id: str,
        customer_id: Optional[str],
        income: IncomeEntry,
        recorded_at: datetime,
    ) -> str: ...


# ============================================================================
# PROVIDER DIRECTORY
# ============================================================================

class AsyncProviderDirectory(Protocol):
    async def eligible_providers(
        self,
        categories: Sequence[str],
        *,
        excluding_declined_for: Optional[str] = None,
    ) -> list[ProviderSnapshot]:
        """
        Providers whose category is one of ``categories``, minus those with a
        decline record for ``excluding_declined_for``.
        """
        ...


# ============================================================================
# NOTIFICATIONS
# ============================================================================

class NotificationSink(Protocol):
    async def notify(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        body: str,
        data: dict[str, Any],
    ) -> None:
        """Fire-and-forget. May raise; callers isolate failures."""
        ...
