# casedispatch/core/dispatch/dispatcher.py
"""
Case dispatcher: ranking on demand and auto-assignment.

Auto-assignment goes through ``CaseStateMachine.accept``, the same
conditioned update a provider's manual accept uses, so a dispatcher and a
human racing for one case still produce exactly one winner.
"""
from __future__ import annotations

from typing import Optional

from casedispatch.core.domain import CaseStatus, ScoredProvider
from casedispatch.core.errors import AlreadyAssignedError, ForbiddenError, InvalidInputError
from casedispatch.core.matching import MatchingEngine
from casedispatch.core.state_machine import CaseStateMachine
from casedispatch.infra.logging_config import LogContext, get_logger
from casedispatch.infra.metrics import AppMetrics

logger = get_logger(__name__)


class CaseDispatcher:

    def __init__(
        self,
        *,
        state_machine: CaseStateMachine,
        matcher: MatchingEngine,
        max_limit: int = 100,
    ) -> None:
        self.state_machine = state_machine
        self.matcher = matcher
        self.max_limit = max_limit

    async def smart_matches(self, case_id: str, limit: int = 10) -> list[ScoredProvider]:
        """
        Ranked provider suggestions for a case.

        Raises:
            CaseNotFoundError: case absent
            InvalidInputError: limit out of range
        """
        if limit < 1 or limit > self.max_limit:
            raise InvalidInputError(f"limit must be between 1 and {self.max_limit}")

        case = await self.state_machine.get(case_id)
        return await self.matcher.find_best_providers(case, limit)

    async def auto_assign(self, case_id: str) -> Optional[str]:
        """
        Assign the case to its top-ranked provider.

        Returns the winning provider id, or None when no eligible provider
        exists.  A case that is no longer pending, or that another accept
        wins first, raises ``AlreadyAssignedError``.
        """
        case = await self.state_machine.get(case_id)
        ctx = LogContext(logger, case_id=case_id, customer_id=case.customer_id)

        if case.status != CaseStatus.PENDING:
            AppMetrics.auto_assign("not_pending")
            raise AlreadyAssignedError(case_id, f"Case is already {case.status.value}")

        best = await self.matcher.find_best_providers(case, 1)
        if not best:
            AppMetrics.auto_assign("no_providers")
            ctx.info("Auto-assign found no eligible providers")
            return None

        top = best[0]
        try:
            await self.state_machine.accept(
                case_id,
                top.provider.id,
                top.provider.business_name,
                auto_assigned=True,
            )
        except AlreadyAssignedError:
            AppMetrics.auto_assign("conflict")
            ctx.warning(f"Auto-assign lost race for provider={top.provider.id}")
            raise
        except ForbiddenError as exc:
            # The top provider declined between ranking and the accept
            AppMetrics.auto_assign("conflict")
            ctx.warning(f"Auto-assign target provider={top.provider.id} declined meanwhile")
            raise AlreadyAssignedError(case_id, "Top-ranked provider declined the case during assignment") from exc

        AppMetrics.auto_assign("assigned")
        ctx.info(f"Auto-assigned to provider={top.provider.id} score={top.score}")
        return top.provider.id
