from datetime import timedelta

import asyncio

import pytest

from reflectline.errors import ErrorKind
from reflectline.scheduler import CallScheduler, exponential_delay, fixed_delay, linear_delay
from reflectline.states import QueueStatus
from reflectline.store import EngineStore

from conftest import T0

DEST = "+15125551234"


async def _attempting(scheduler, conv="conv_1", max_attempts=3, owner="user_1"):
    (await scheduler.enqueue(conv, DEST, T0, max_attempts, owner=owner)).unwrap()
    return (await scheduler.begin_attempt(conv)).unwrap()


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_creates_pending_record(self, scheduler):
        call = (await scheduler.enqueue("conv_1", DEST, T0, 3, owner="user_1")).unwrap()
        assert call.status == QueueStatus.PENDING
        assert call.attempt_count == 0
        assert call.max_attempts == 3
        assert call.owner == "user_1"

    @pytest.mark.asyncio
    async def test_duplicate_active_rejected(self, scheduler):
        await scheduler.enqueue("conv_1", DEST, T0, 3)
        result = await scheduler.enqueue("conv_1", DEST, T0 + timedelta(hours=1), 3)
        assert result.error.kind == ErrorKind.DUPLICATE_ACTIVE
        assert len(await scheduler.due_work(T0 + timedelta(days=1))) == 1

    @pytest.mark.asyncio
    async def test_duplicate_while_attempting_rejected(self, scheduler):
        await _attempting(scheduler)
        result = await scheduler.enqueue("conv_1", DEST, T0, 3)
        assert result.error.kind == ErrorKind.DUPLICATE_ACTIVE

    @pytest.mark.asyncio
    async def test_reenqueue_after_terminal_allowed(self, scheduler):
        await _attempting(scheduler)
        await scheduler.complete("conv_1")
        result = await scheduler.enqueue("conv_1", DEST, T0 + timedelta(days=1), 3)
        assert result.ok
        latest = (await scheduler.get("conv_1")).unwrap()
        assert latest.status == QueueStatus.PENDING

    @pytest.mark.asyncio
    async def test_invalid_max_attempts(self, scheduler):
        for bad in (0, -1, 2.5, True):
            result = await scheduler.enqueue("conv_1", DEST, T0, bad)
            assert result.error.kind == ErrorKind.INVALID_ARGUMENT


class TestAttempts:
    @pytest.mark.asyncio
    async def test_begin_attempt_counts_and_stamps(self, scheduler, sched_clock):
        await scheduler.enqueue("conv_1", DEST, T0, 3)
        sched_clock.advance(30)
        call = (await scheduler.begin_attempt("conv_1")).unwrap()
        assert call.status == QueueStatus.ATTEMPTING
        assert call.attempt_count == 1
        assert call.last_attempt_at == T0 + timedelta(seconds=30)

    @pytest.mark.asyncio
    async def test_begin_attempt_requires_pending(self, scheduler):
        await _attempting(scheduler)
        result = await scheduler.begin_attempt("conv_1")
        assert result.error.kind == ErrorKind.ILLEGAL_TRANSITION
        assert (await scheduler.get("conv_1")).unwrap().attempt_count == 1

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, scheduler):
        result = await scheduler.begin_attempt("nope")
        assert result.error.kind == ErrorKind.NOT_FOUND


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_sets_next_retry(self, scheduler, sched_clock):
        await _attempting(scheduler)
        call = (await scheduler.retry("conv_1", timedelta(minutes=5))).unwrap()
        assert call.status == QueueStatus.PENDING
        assert call.next_retry_at == T0 + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_retry_beyond_budget_errors(self, scheduler):
        await _attempting(scheduler, max_attempts=1)
        result = await scheduler.retry("conv_1", timedelta(minutes=5))
        assert result.error.kind == ErrorKind.BUDGET_EXHAUSTED
        call = (await scheduler.get("conv_1")).unwrap()
        assert call.status == QueueStatus.ATTEMPTING

    @pytest.mark.asyncio
    async def test_retry_requires_attempting(self, scheduler):
        await scheduler.enqueue("conv_1", DEST, T0, 3)
        result = await scheduler.retry("conv_1", timedelta(minutes=5))
        assert result.error.kind == ErrorKind.ILLEGAL_TRANSITION

    @pytest.mark.asyncio
    async def test_attempt_count_never_exceeds_max(self, scheduler):
        await _attempting(scheduler, max_attempts=2)
        await scheduler.retry("conv_1", timedelta(0))
        await scheduler.begin_attempt("conv_1")
        assert not (await scheduler.retry("conv_1", timedelta(0))).ok
        call = (await scheduler.get("conv_1")).unwrap()
        assert call.attempt_count == 2 == call.max_attempts


class TestTerminal:
    @pytest.mark.asyncio
    async def test_complete_stamps_completed_at(self, scheduler, sched_clock):
        await _attempting(scheduler)
        sched_clock.advance(120)
        call = (await scheduler.complete("conv_1")).unwrap()
        assert call.status == QueueStatus.COMPLETED
        assert call.completed_at == T0 + timedelta(seconds=120)

    @pytest.mark.asyncio
    async def test_fail_always_succeeds_from_attempting(self, scheduler):
        await _attempting(scheduler, max_attempts=3)
        call = (await scheduler.fail("conv_1", "carrier error")).unwrap()
        assert call.status == QueueStatus.FAILED
        assert call.error == "carrier error"
        assert call.completed_at is not None

    @pytest.mark.asyncio
    async def test_complete_requires_attempting(self, scheduler):
        await scheduler.enqueue("conv_1", DEST, T0, 3)
        assert (await scheduler.complete("conv_1")).error.kind == ErrorKind.ILLEGAL_TRANSITION

    @pytest.mark.asyncio
    async def test_cancel_pending(self, scheduler):
        await scheduler.enqueue("conv_1", DEST, T0, 3)
        call = (await scheduler.cancel("conv_1")).unwrap()
        assert call.status == QueueStatus.CANCELLED
        assert call.completed_at is not None
        assert await scheduler.due_work(T0 + timedelta(days=1)) == []

    @pytest.mark.asyncio
    async def test_cancel_terminal_is_error(self, scheduler):
        await _attempting(scheduler)
        await scheduler.complete("conv_1")
        assert (await scheduler.cancel("conv_1")).error.kind == ErrorKind.ILLEGAL_TRANSITION


class TestDueWork:
    @pytest.mark.asyncio
    async def test_only_due_pending(self, scheduler):
        await scheduler.enqueue("early", DEST, T0 - timedelta(minutes=5), 3)
        await scheduler.enqueue("late", DEST, T0 + timedelta(hours=1), 3)
        due = await scheduler.due_work(T0)
        assert [c.conversation_id for c in due] == ["early"]

    @pytest.mark.asyncio
    async def test_ordered_by_time_then_insertion(self, scheduler):
        await scheduler.enqueue("b", DEST, T0, 3)
        await scheduler.enqueue("c", DEST, T0 - timedelta(minutes=1), 3)
        await scheduler.enqueue("a", DEST, T0, 3)
        due = await scheduler.due_work(T0)
        assert [c.conversation_id for c in due] == ["c", "b", "a"]

    @pytest.mark.asyncio
    async def test_retry_waits_for_next_retry_time(self, scheduler):
        await _attempting(scheduler)
        await scheduler.retry("conv_1", timedelta(minutes=5))
        assert await scheduler.due_work(T0 + timedelta(minutes=4)) == []
        due = await scheduler.due_work(T0 + timedelta(minutes=5))
        assert [c.conversation_id for c in due] == ["conv_1"]

    @pytest.mark.asyncio
    async def test_attempting_not_due(self, scheduler):
        await _attempting(scheduler)
        assert await scheduler.due_work(T0 + timedelta(days=1)) == []


class TestActiveFor:
    @pytest.mark.asyncio
    async def test_lists_non_terminal_for_owner(self, scheduler):
        await scheduler.enqueue("c1", DEST, T0, 3, owner="alice")
        await scheduler.enqueue("c2", DEST, T0, 3, owner="alice")
        await scheduler.enqueue("c3", DEST, T0, 3, owner="bob")
        await scheduler.begin_attempt("c2")
        await scheduler.cancel("c1")
        active = await scheduler.active_for("alice")
        assert [c.conversation_id for c in active] == ["c2"]


class TestScenarios:
    @pytest.mark.asyncio
    async def test_retry_then_complete(self, scheduler):
        await scheduler.enqueue("conv_1", DEST, T0, 3)
        await scheduler.begin_attempt("conv_1")
        await scheduler.retry("conv_1", timedelta(minutes=5))
        await scheduler.begin_attempt("conv_1")
        call = (await scheduler.complete("conv_1")).unwrap()
        assert call.status == QueueStatus.COMPLETED
        assert call.attempt_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_budget_fails(self, scheduler):
        await _attempting(scheduler, max_attempts=1)
        assert not (await scheduler.retry("conv_1", timedelta(minutes=5))).ok
        call = (await scheduler.fail("conv_1", "no answer")).unwrap()
        assert call.status == QueueStatus.FAILED


class TestRetryPolicies:
    def test_fixed(self):
        assert fixed_delay(5)(1) == fixed_delay(5)(3) == timedelta(minutes=5)

    def test_linear(self):
        policy = linear_delay(5)
        assert [policy(n) for n in (1, 2, 3)] == [timedelta(minutes=m) for m in (5, 10, 15)]

    def test_exponential_caps(self):
        policy = exponential_delay(base_minutes=5, factor=2, cap_minutes=15)
        assert [policy(n) for n in (1, 2, 3)] == [timedelta(minutes=m) for m in (5, 10, 15)]


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_enqueue_admits_one(self, scheduler):
        results = await asyncio.gather(*(scheduler.enqueue("c1", DEST, T0, 3) for _ in range(8)))
        assert sum(r.ok for r in results) == 1
        assert {r.error.kind for r in results if not r.ok} == {ErrorKind.DUPLICATE_ACTIVE}

    @pytest.mark.asyncio
    async def test_concurrent_begin_attempt_admits_one(self, scheduler):
        await scheduler.enqueue("c1", DEST, T0, 3)
        first, second = await asyncio.gather(scheduler.begin_attempt("c1"), scheduler.begin_attempt("c1"))
        assert [first.ok, second.ok].count(True) == 1
        loser = second if first.ok else first
        assert loser.error.kind == ErrorKind.ILLEGAL_TRANSITION
        call = (await scheduler.get("c1")).unwrap()
        assert call.status == QueueStatus.ATTEMPTING
        assert call.attempt_count == 1

    @pytest.mark.asyncio
    async def test_two_processes_share_one_database(self, tmp_path, sched_clock):
        path = str(tmp_path / "engine.db")
        stores = [EngineStore(path), EngineStore(path)]
        a, b = (CallScheduler(s, clock=sched_clock) for s in stores)
        try:
            enqueued = await asyncio.gather(a.enqueue("c1", DEST, T0, 3), b.enqueue("c1", DEST, T0, 3))
            assert [r.ok for r in enqueued].count(True) == 1

            begun = await asyncio.gather(a.begin_attempt("c1"), b.begin_attempt("c1"))
            assert [r.ok for r in begun].count(True) == 1
            assert (await b.get("c1")).unwrap().attempt_count == 1
        finally:
            for s in stores:
                s.close()
