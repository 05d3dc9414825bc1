# casedispatch/core/state_machine.py
"""
Case lifecycle state machine.

    pending -> accepted -> wip -> completed
    pending -> closed                        (cancellation)
    accepted/wip -> pending                  (assigned provider declines)

Every mutation is a conditioned update on the case's current status; the
repository reports a lost precondition by returning None, and this module
turns that into the matching domain error.  Persistence failures are
logged in full here and surface as ``InternalError``.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from casedispatch.core.dispatch.notifications import CaseNotifier
from casedispatch.core.domain import (
    ALLOWED_STATUS_UPDATES,
    AssignmentType,
    Case,
    CaseInput,
    CaseStatus,
    DEFAULT_PREFERRED_TIME,
    DEFAULT_PRIORITY,
    DeclineRecord,
    DeclineResult,
    IncomeEntry,
)
from casedispatch.core.errors import (
    AlreadyAssignedError,
    AlreadyDeclinedError,
    CaseNotFoundError,
    DispatchError,
    ForbiddenError,
    InternalError,
    InvalidInputError,
    InvalidStateError,
    InvalidStatusError,
)
from casedispatch.core.ports import AsyncCaseRepository, AsyncDeclineLedger, AsyncIncomeLedger
from casedispatch.infra.logging_config import LogContext, get_logger
from casedispatch.infra.metrics import AppMetrics

logger = get_logger(__name__)

_REQUIRED_FIELDS = ("service_type", "description", "phone", "city")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CaseStateMachine:
    """
    Validated case transitions.

    Collaborators are injected; the state machine holds no state of its own
    and is safe to share between concurrent requests.
    """

    def __init__(
        self,
        *,
        cases: AsyncCaseRepository,
        declines: AsyncDeclineLedger,
        notifier: CaseNotifier,
        income: AsyncIncomeLedger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cases = cases
        self.declines = declines
        self.notifier = notifier
        self.income = income
        self.clock = clock

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create(self, data: CaseInput) -> Case:
        """
        Create a pending case.

        A ``specific`` case is addressed to ``provider_id`` immediately but stays
        pending until that provider accepts; an ``open`` case has no provider and
        is visible to every matching provider.

        Raises:
            InvalidInputError: required field missing or malformed
            ForbiddenError: customer and provider are the same user
        """
        missing = [name for name in _REQUIRED_FIELDS if not _present(getattr(data, name))]
        if missing:
            raise InvalidInputError(
                "Missing required fields: serviceType, description, phone, city"
            )

        if data.customer_id and data.provider_id and data.customer_id == data.provider_id:
            logger.warning(
                "Provider attempted to create a case for themselves",
                extra={"customer_id": data.customer_id, "provider_id": data.provider_id},
            )
            raise ForbiddenError("Service providers cannot create cases for themselves")

        try:
            assignment_type = AssignmentType(data.assignment_type or AssignmentType.OPEN)
        except ValueError:
            raise InvalidInputError("assignmentType must be 'open' or 'specific'") from None
        if assignment_type == AssignmentType.SPECIFIC and not data.provider_id:
            raise InvalidInputError("providerId is required for a specific assignment")

        _validate_budget(data.budget_min, data.budget_max)

        now = self.clock()
        specific = assignment_type == AssignmentType.SPECIFIC
        case = Case(
            id=str(uuid4()),
            customer_id=data.customer_id,
            service_type=data.service_type.strip(),
            category=(data.category or data.service_type).strip(),
            description=data.description,
            phone=data.phone.strip(),
            city=data.city.strip(),
            neighborhood=data.neighborhood,
            address=data.address,
            priority=data.priority or DEFAULT_PRIORITY,
            preferred_date=data.preferred_date,
            preferred_time=data.preferred_time or DEFAULT_PREFERRED_TIME,
            additional_details=data.additional_details,
            status=CaseStatus.PENDING,
            assignment_type=assignment_type,
            is_open_case=not specific,
            provider_id=data.provider_id if specific else None,
            provider_name=data.provider_name if specific else None,
            budget_min=data.budget_min,
            budget_max=data.budget_max,
            created_at=now,
            updated_at=now,
            screenshots=_screenshot_urls(data.screenshots),
        )

        async with self._persistence("create_case", case_id=case.id):
            await self.cases.insert(case)

        AppMetrics.case_created(assignment_type.value)
        LogContext(logger, case_id=case.id, customer_id=case.customer_id).info(
            f"Case created: type={assignment_type.value}, category={case.category}",
            extra={"phone": case.phone},
        )

        if specific:
            await self.notifier.specific_case_created(case)

        return case

    async def get(self, case_id: str) -> Case:
        async with self._persistence("get_case", case_id=case_id):
            case = await self.cases.get(case_id)
        if case is None:
            raise CaseNotFoundError(case_id)
        return case

    # ------------------------------------------------------------------
    # Accept / start / complete / cancel
    # ------------------------------------------------------------------

    async def accept(
        self,
        case_id: str,
        provider_id: str,
        provider_name: Optional[str] = None,
        *,
        auto_assigned: bool = False,
    ) -> Case:
        """
        Take ownership of a pending case.

        Conditioned on ``status='pending'``: when several providers race for
        the same case exactly one update matches; the others get
        ``AlreadyAssignedError``.

        A provider holding a decline record for the case gets
        ``ForbiddenError``.  The ledger is checked again after the update: a
        decline by the same provider that landed in between hands the case
        straight back to the open queue.
        """
        if not case_id or not provider_id:
            raise InvalidInputError("Case ID and Provider ID are required")

        declined_meanwhile = False
        async with self._persistence("accept_case", case_id=case_id):
            if await self.declines.exists(case_id, provider_id):
                raise ForbiddenError("You have declined this case, undecline it before accepting")

            updated = await self.cases.accept_if_pending(
                case_id, provider_id, provider_name, self.clock(), auto_assigned=auto_assigned
            )
            if updated is None:
                current = await self.cases.get(case_id)
            elif await self.declines.exists(case_id, provider_id):
                await self.cases.release_if_assigned(case_id, provider_id, self.clock())
                declined_meanwhile = True

        if declined_meanwhile:
            logger.warning(
                "Accept undone: provider declined the case concurrently",
                extra={"case_id": case_id, "provider_id": provider_id},
            )
            raise ForbiddenError("You have declined this case, undecline it before accepting")

        if updated is None:
            if current is None:
                raise CaseNotFoundError(case_id)
            AppMetrics.accept_conflict()
            logger.info(
                f"Accept lost: case already {current.status.value}",
                extra={"case_id": case_id, "provider_id": provider_id},
            )
            raise AlreadyAssignedError(case_id)

        AppMetrics.case_accepted(auto_assigned)
        logger.info(
            "Case accepted",
            extra={"case_id": case_id, "provider_id": provider_id},
        )
        await self.notifier.case_accepted(updated)
        return updated

    async def start_work(self, case_id: str, provider_id: str) -> Case:
        """accepted -> wip, only by the owning provider."""
        async with self._persistence("start_case", case_id=case_id):
            updated = await self.cases.start_if_accepted(case_id, provider_id, self.clock())
            if updated is None:
                current = await self.cases.get(case_id)

        if updated is None:
            if current is None:
                raise CaseNotFoundError(case_id)
            if not current.is_assigned_to(provider_id):
                raise ForbiddenError("Only the assigned provider can start this case")
            raise InvalidStateError(
                f"Case cannot be started from status '{current.status.value}'"
            )

        logger.info("Case work started", extra={"case_id": case_id, "provider_id": provider_id})
        return updated

    async def complete(
        self,
        case_id: str,
        completion_notes: Optional[str] = None,
        income: Optional[IncomeEntry] = None,
    ) -> Case:
        """
        accepted/wip -> completed.

        When ``income`` carries an amount and the case has a provider, a
        completion-income entry is recorded.  A failure there is reported as
        ``InternalError``; the case stays completed.
        """
        async with self._persistence("complete_case", case_id=case_id):
            updated = await self.cases.complete_if_active(case_id, completion_notes, self.clock())
            if updated is None:
                current = await self.cases.get(case_id)

        if updated is None:
            if current is None:
                raise CaseNotFoundError(case_id)
            raise InvalidStateError(
                f"Case cannot be completed from status '{current.status.value}'"
            )

        AppMetrics.case_completed()

        income_recorded = False
        if income is not None and income.amount and updated.provider_id and self.income is not None:
            async with self._persistence("record_income", case_id=case_id):
                await self.income.record(
                    case_id=case_id,
                    provider_id=updated.provider_id,
                    customer_id=updated.customer_id,
                    income=income,
                    recorded_at=self.clock(),
                )
            income_recorded = True

        logger.info(
            f"Case completed (income_recorded={income_recorded})",
            extra={"case_id": case_id, "provider_id": updated.provider_id},
        )
        await self.notifier.case_completed(updated)
        return updated

    async def cancel(self, case_id: str) -> Case:
        """pending -> closed."""
        async with self._persistence("cancel_case", case_id=case_id):
            updated = await self.cases.close_if_pending(case_id, self.clock())
            if updated is None:
                current = await self.cases.get(case_id)

        if updated is None:
            if current is None:
                raise CaseNotFoundError(case_id)
            raise InvalidStateError(
                f"Case cannot be cancelled from status '{current.status.value}'"
            )

        logger.info("Case cancelled", extra={"case_id": case_id})
        return updated

    # ------------------------------------------------------------------
    # Decline ledger
    # ------------------------------------------------------------------

    async def decline(self, case_id: str, provider_id: str, reason: Optional[str] = None) -> DeclineResult:
        """
        Record that ``provider_id`` opts out of ``case_id``.

        The case disappears from that provider's queue.  If the provider is
        the case's current owner, the case also goes back to the open queue.

        Raises:
            AlreadyDeclinedError: a decline record for the pair already exists
            CaseNotFoundError: case absent
        """
        if not case_id or not provider_id:
            raise InvalidInputError("Case ID and Provider ID are required")

        async with self._persistence("decline_case", case_id=case_id):
            if await self.declines.exists(case_id, provider_id):
                raise AlreadyDeclinedError(case_id, provider_id)

            if await self.cases.get(case_id) is None:
                raise CaseNotFoundError(case_id)

            # Ledger row and release commit together, release conditioned on current ownership
            created, released = await self.declines.add_and_release(
                DeclineRecord(case_id=case_id, provider_id=provider_id, declined_at=self.clock(), reason=reason)
            )
            if not created:
                # Lost a race against a concurrent decline of the same pair
                raise AlreadyDeclinedError(case_id, provider_id)

        returned = released is not None
        AppMetrics.case_declined(returned)
        logger.info(
            f"Case declined (returned_to_queue={returned})",
            extra={"case_id": case_id, "provider_id": provider_id},
        )

        if returned:
            await self.notifier.case_returned_to_queue(released, provider_id, reason)

        return DeclineResult(returned_to_queue=returned)

    async def undecline(self, case_id: str, provider_id: str) -> None:
        """Remove a decline record. Removing a missing record is not an error."""
        if not case_id or not provider_id:
            raise InvalidInputError("Case ID and Provider ID are required")

        async with self._persistence("undecline_case", case_id=case_id):
            await self.declines.remove(case_id, provider_id)

        logger.info("Case un-declined", extra={"case_id": case_id, "provider_id": provider_id})

    # ------------------------------------------------------------------
    # Generic status update
    # ------------------------------------------------------------------

    async def update_status(self, case_id: str, status: str, message: Optional[str] = None) -> Case:
        """
        Move a case to any whitelisted status.

        ``completed`` goes through ``complete`` with the same guard and side
        effects.  Other targets are a compare-and-set against the status read
        just before; a concurrent change yields ``AlreadyAssignedError``.
        """
        if status not in ALLOWED_STATUS_UPDATES:
            raise InvalidStatusError(
                f"Invalid status. Must be one of: {', '.join(sorted(ALLOWED_STATUS_UPDATES))}"
            )

        target = CaseStatus(status)
        if target == CaseStatus.COMPLETED:
            return await self.complete(case_id, message)

        current = await self.get(case_id)

        if target in (CaseStatus.ACCEPTED, CaseStatus.WIP) and not current.provider_id:
            raise InvalidStateError(f"Status '{target.value}' requires an assigned provider")

        clear_provider = target in (CaseStatus.CLOSED, CaseStatus.DECLINED) or (
            target == CaseStatus.PENDING and current.assignment_type != AssignmentType.SPECIFIC
        )

        async with self._persistence("update_status", case_id=case_id):
            updated = await self.cases.set_status_if(
                case_id,
                expected=current.status,
                status=target,
                message=message,
                clear_provider=clear_provider,
                now=self.clock(),
            )

        if updated is None:
            raise AlreadyAssignedError(case_id, "Case status changed concurrently, reload and retry")

        logger.info(
            f"Case status updated: {current.status.value} -> {target.value}",
            extra={"case_id": case_id},
        )
        return updated

    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _persistence(self, operation: str, *, case_id: str | None = None):
        """Let domain errors through; log and wrap everything else."""
        try:
            yield
        except DispatchError:
            raise
        except Exception as exc:
            logger.error(
                f"Persistence failure during {operation}: {exc.__class__.__name__}",
                extra={"case_id": case_id} if case_id else None,
                exc_info=True,
            )
            AppMetrics.database_error(operation)
            raise InternalError(f"Failed to {operation.replace('_', ' ')}") from exc


def _present(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _validate_budget(budget_min: Optional[float], budget_max: Optional[float]) -> None:
    for value in (budget_min, budget_max):
        if value is not None and value < 0:
            raise InvalidInputError("Budget must not be negative")
    if budget_min is not None and budget_max is not None and budget_min > budget_max:
        raise InvalidInputError("budgetMin must not exceed budgetMax")


def _screenshot_urls(screenshots) -> list[str]:
    """Accept plain URLs or ``{"url": ...}``/``{"name": ...}`` objects; skip the rest."""
    urls: list[str] = []
    for item in screenshots or []:
        if isinstance(item, dict):
            item = item.get("url") or item.get("name")
        if isinstance(item, str) and item.strip():
            urls.append(item.strip())
    return urls
