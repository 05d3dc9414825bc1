# tests/test_queue.py
"""Tests for provider queues, case search and provider stats (core/queue.py)."""
from __future__ import annotations

import pytest

from casedispatch.core.domain import CaseFilters, CaseSort, CaseStatus
from casedispatch.core.errors import InvalidInputError
from casedispatch.core.queue import is_visible_to, sort_cases
from tests.helpers import make_input


async def _ids(queue, provider_id, sort=None):
    return [c.id for c in await queue.available_cases(provider_id, sort)]


class TestVisibilityRule:
    @pytest.mark.asyncio
    async def test_open_pending_visible_to_everyone(self, sm):
        case = await sm.create(make_input())
        assert is_visible_to(case, "anyone", declined=False)

    @pytest.mark.asyncio
    async def test_declined_never_visible(self, sm):
        case = await sm.create(make_input())
        assert not is_visible_to(case, "anyone", declined=True)

    @pytest.mark.asyncio
    async def test_specific_case_only_visible_to_named_provider(self, sm):
        case = await sm.create(make_input(assignment_type="specific", provider_id="prov-1"))
        assert is_visible_to(case, "prov-1", declined=False)
        assert not is_visible_to(case, "prov-2", declined=False)

    @pytest.mark.asyncio
    async def test_closed_case_hidden_from_owner(self, sm):
        case = await sm.create(make_input())
        await sm.accept(case.id, "prov-1")
        closed = await sm.update_status(case.id, "closed")
        assert not is_visible_to(closed, "prov-1", declined=False)


class TestAvailableCases:
    @pytest.mark.asyncio
    async def test_queue_membership(self, sm, queue, clock):
        open_case = await sm.create(make_input())
        clock.advance(minutes=1)
        specific = await sm.create(make_input(assignment_type="specific", provider_id="prov-1"))
        clock.advance(minutes=1)
        taken = await sm.create(make_input())
        await sm.accept(taken.id, "prov-2")

        assert await _ids(queue, "prov-1") == [specific.id, open_case.id]
        assert await _ids(queue, "prov-2") == [taken.id, open_case.id]
        assert await _ids(queue, "prov-3") == [open_case.id]

    @pytest.mark.asyncio
    async def test_owner_keeps_seeing_completed_work(self, sm, queue):
        case = await sm.create(make_input())
        await sm.accept(case.id, "prov-1")
        await sm.complete(case.id)
        assert await _ids(queue, "prov-1") == [case.id]
        assert await _ids(queue, "prov-2") == []

    @pytest.mark.asyncio
    async def test_declined_cases_excluded_for_every_provider_state(self, sm, queue):
        open_case = await sm.create(make_input())
        owned = await sm.create(make_input())
        await sm.accept(owned.id, "prov-1")
        await sm.start_work(owned.id, "prov-1")
        specific = await sm.create(make_input(assignment_type="specific", provider_id="prov-1"))

        for case in (open_case, owned, specific):
            await sm.decline(case.id, "prov-1")

        assert await _ids(queue, "prov-1") == []

    @pytest.mark.asyncio
    async def test_requeued_case_visible_to_others(self, sm, queue):
        case = await sm.create(make_input())
        await sm.accept(case.id, "prov-1")
        assert await _ids(queue, "prov-2") == []

        await sm.decline(case.id, "prov-1")
        assert await _ids(queue, "prov-2") == [case.id]
        assert await _ids(queue, "prov-1") == []

    @pytest.mark.asyncio
    async def test_sort_options(self, sm, queue, clock):
        low = await sm.create(make_input(priority="low"))
        clock.advance(minutes=1)
        urgent = await sm.create(make_input(priority="urgent"))
        clock.advance(minutes=1)
        normal = await sm.create(make_input())

        assert await _ids(queue, "p") == [normal.id, urgent.id, low.id]
        assert await _ids(queue, "p", "oldest") == [low.id, urgent.id, normal.id]
        assert await _ids(queue, "p", CaseSort.PRIORITY) == [urgent.id, normal.id, low.id]

    @pytest.mark.asyncio
    async def test_unknown_sort_rejected(self, queue):
        with pytest.raises(InvalidInputError):
            await queue.available_cases("p", "random")

    @pytest.mark.asyncio
    async def test_provider_id_required(self, queue):
        with pytest.raises(InvalidInputError):
            await queue.available_cases("")


class TestSortCases:
    def test_status_sort_ties_fall_back_to_newest(self, clock):
        from casedispatch.core.domain import Case

        def case(cid, status, minutes):
            return Case(
                id=cid, customer_id="c", service_type="s", category="s",
                description="d", phone="p", city="Sofia", status=status,
                created_at=clock.now.replace(minute=minutes),
            )

        cases = [
            case("a", CaseStatus.WIP, 1),
            case("b", CaseStatus.PENDING, 2),
            case("c", CaseStatus.PENDING, 3),
        ]
        assert [c.id for c in sort_cases(cases, CaseSort.STATUS)] == ["c", "b", "a"]


class TestDeclinedCases:
    @pytest.mark.asyncio
    async def test_newest_decline_first_with_metadata(self, sm, queue, clock):
        first = await sm.create(make_input())
        second = await sm.create(make_input())
        await sm.decline(first.id, "prov-1", "too far")
        clock.advance(minutes=5)
        await sm.decline(second.id, "prov-1", "busy")

        declined = await queue.declined_cases("prov-1")
        assert [d.case.id for d in declined] == [second.id, first.id]
        assert declined[0].record.reason == "busy"
        assert declined[0].to_dict()["declineReason"] == "busy"
        assert await queue.declined_cases("prov-2") == []


class TestSearch:
    @pytest.mark.asyncio
    async def test_status_priority_ordering_without_status_filter(self, sm, queue, clock):
        done = await sm.create(make_input())
        await sm.accept(done.id, "prov-1")
        await sm.complete(done.id)
        clock.advance(minutes=1)
        pending = await sm.create(make_input())
        clock.advance(minutes=1)
        accepted = await sm.create(make_input())
        await sm.accept(accepted.id, "prov-1")

        page = await queue.search(CaseFilters())
        assert [c.id for c in page.cases] == [pending.id, accepted.id, done.id]
        assert page.total == 3

    @pytest.mark.asyncio
    async def test_filters_and_pagination(self, sm, queue, clock):
        ids = []
        for i in range(5):
            case = await sm.create(make_input(city="Plovdiv" if i % 2 else "Sofia"))
            ids.append(case.id)
            clock.advance(minutes=1)

        page = await queue.search(CaseFilters(city="sofia", limit=2, page=1))
        assert page.total == 3
        assert page.total_pages == 2
        assert [c.id for c in page.cases] == [ids[4], ids[2]]

        page2 = await queue.search(CaseFilters(city="Sofia", limit=2, page=2))
        assert [c.id for c in page2.cases] == [ids[0]]

    @pytest.mark.asyncio
    async def test_participant_and_declined_filters(self, sm, queue):
        mine = await sm.create(make_input(customer_id="cust-9"))
        other = await sm.create(make_input())
        await sm.accept(other.id, "cust-9")
        third = await sm.create(make_input())
        await sm.decline(third.id, "prov-1")

        page = await queue.search(CaseFilters(participant_id="cust-9"))
        assert {c.id for c in page.cases} == {mine.id, other.id}

        page = await queue.search(CaseFilters(only_unassigned=True, exclude_declined_by="prov-1"))
        assert [c.id for c in page.cases] == [mine.id]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "filters",
        [
            CaseFilters(page=0),
            CaseFilters(limit=0),
            CaseFilters(limit=1000),
            CaseFilters(status="archived"),
            CaseFilters(sort_by="phone"),
            CaseFilters(sort_order="sideways"),
        ],
    )
    async def test_invalid_filters(self, queue, filters):
        with pytest.raises(InvalidInputError):
            await queue.search(filters)


class TestProviderStats:
    @pytest.mark.asyncio
    async def test_counts(self, sm, queue):
        a = await sm.create(make_input())
        b = await sm.create(make_input())
        await sm.create(make_input())
        d = await sm.create(make_input())

        await sm.accept(a.id, "prov-1")
        await sm.accept(b.id, "prov-1")
        await sm.start_work(b.id, "prov-1")
        await sm.decline(d.id, "prov-1")

        stats = await queue.provider_stats("prov-1")
        assert stats.to_dict() == {
            "available": 1,
            "declined": 1,
            "pending": 0,
            "accepted": 1,
            "wip": 1,
            "completed": 0,
        }
