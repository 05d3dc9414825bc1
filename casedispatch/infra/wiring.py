# casedispatch/infra/wiring.py
"""
Builds the service graph for a storage backend.

The core never reaches for module-level singletons: everything it needs is
constructed here and passed in.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional

from casedispatch.config import Settings
from casedispatch.core.dispatch.dispatcher import CaseDispatcher
from casedispatch.core.dispatch.notifications import CaseNotifier
from casedispatch.core.domain import CaseSort
from casedispatch.core.matching import MatchingConfig, MatchingEngine
from casedispatch.core.ports import AsyncProviderDirectory, NotificationSink
from casedispatch.core.queue import CaseQueue
from casedispatch.core.state_machine import CaseStateMachine, utcnow
from casedispatch.infra.logging_config import get_logger
from casedispatch.infra.memory_repos import (
    InMemoryCaseRepository,
    InMemoryDeclineLedger,
    InMemoryIncomeLedger,
    InMemoryProviderDirectory,
    MemoryStore,
)

if TYPE_CHECKING:
    from casedispatch.infra.pg_job_repo_async import AsyncPostgresJobRepository

logger = get_logger(__name__)


@dataclass
class DispatchServices:
    state_machine: CaseStateMachine
    queue: CaseQueue
    matcher: MatchingEngine
    dispatcher: CaseDispatcher
    directory: AsyncProviderDirectory
    sink: Optional[NotificationSink]
    backend: str
    store: Optional[MemoryStore] = None
    # Outbox, postgres backend only
    jobs: Optional[AsyncPostgresJobRepository] = None


def build_services(
    s: Settings,
    *,
    backend: Optional[str] = None,
    sink: Optional[NotificationSink] = None,
    clock: Callable[[], datetime] = utcnow,
    store: Optional[MemoryStore] = None,
) -> DispatchServices:
    """
    Wire repositories, notifier, state machine, queue, matcher and dispatcher.

    ``sink`` overrides the backend's default notification sink (tests use
    this to plug in a failing or recording sink).
    """
    backend = backend or s.storage_backend
    jobs = None

    if backend == "memory":
        from casedispatch.infra.notification_sink import LoggingNotificationSink

        store = store or MemoryStore()
        cases = InMemoryCaseRepository(store)
        declines = InMemoryDeclineLedger(store)
        income = InMemoryIncomeLedger(store)
        directory = InMemoryProviderDirectory(store)
        if sink is None:
            sink = LoggingNotificationSink()

    elif backend == "postgres":
        from casedispatch.infra.notification_sink import JobQueueNotificationSink
        from casedispatch.infra.pg_case_repo_async import AsyncPostgresCaseRepository
        from casedispatch.infra.pg_decline_repo_async import AsyncPostgresDeclineLedger
        from casedispatch.infra.pg_income_repo_async import AsyncPostgresIncomeLedger
        from casedispatch.infra.pg_job_repo_async import AsyncPostgresJobRepository
        from casedispatch.infra.pg_provider_directory_async import AsyncPostgresProviderDirectory

        store = None
        jobs = AsyncPostgresJobRepository()
        cases = AsyncPostgresCaseRepository()
        declines = AsyncPostgresDeclineLedger()
        income = AsyncPostgresIncomeLedger()
        directory = AsyncPostgresProviderDirectory()
        if sink is None:
            sink = JobQueueNotificationSink(
                jobs,
                max_attempts=s.notification_max_attempts,
            )

    else:
        raise ValueError(f"Unknown storage backend: {backend}")

    notifier = CaseNotifier(sink, lang=s.notification_lang, enabled=s.notifications_enabled)
    state_machine = CaseStateMachine(
        cases=cases,
        declines=declines,
        notifier=notifier,
        income=income,
        clock=clock,
    )
    queue = CaseQueue(
        cases=cases,
        declines=declines,
        default_sort=CaseSort(s.queue_default_sort),
        max_page_size=s.search_page_size_max,
    )
    matcher = MatchingEngine(
        directory=directory,
        config=MatchingConfig.from_settings(s),
        clock=clock,
    )
    dispatcher = CaseDispatcher(
        state_machine=state_machine,
        matcher=matcher,
        max_limit=s.search_page_size_max,
    )

    logger.info(f"Dispatch services built: backend={backend}")
    return DispatchServices(
        state_machine=state_machine,
        queue=queue,
        matcher=matcher,
        dispatcher=dispatcher,
        directory=directory,
        sink=sink,
        backend=backend,
        store=store,
        jobs=jobs,
    )
