import asyncio
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock

from reflectline.config import Settings
from reflectline.judge import Verdict
from reflectline.messages import Connected, Disconnected, SpeechChunk
from reflectline.orchestrator import Orchestrator
from reflectline.registry import CallRegistry
from reflectline.session import CallSession
from reflectline.states import CallStatus, QueueStatus
from reflectline.telephony import TelephonyError, Utterance

from conftest import T0

DEST = "+15125551234"


async def _wait_for(condition, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def telephony():
    t = AsyncMock()
    t.place.return_value = "CA_1"
    return t


@pytest.fixture
def journal():
    j = AsyncMock()
    j.send_entry.return_value = {"success": True}
    return j


@pytest.fixture
def orchestrator(scheduler, store, telephony, journal):
    voice = MagicMock()
    voice.utterance = AsyncMock(side_effect=lambda sid, text: Utterance(text))
    detector = AsyncMock()
    detector.check.return_value = Verdict(True, 0.9, "answered")
    judge = AsyncMock()
    judge.extract_rating.return_value = (8, 0.9)
    return Orchestrator(
        scheduler,
        store=store,
        registry=CallRegistry(),
        telephony=telephony,
        voice=voice,
        detector=detector,
        judge=judge,
        journal=journal,
        settings=Settings(
            pause_threshold_seconds=0.01,
            connect_timeout_seconds=1.0,
            caller_silence_timeout_seconds=5.0,
        ),
    )


async def _start_call(orchestrator, scheduler, max_attempts=3):
    await scheduler.enqueue("conv_1", DEST, T0, max_attempts, owner="user_1")
    (queued,) = await scheduler.due_work()
    task = asyncio.create_task(orchestrator.run_call(queued))
    await _wait_for(lambda: orchestrator.registry.get("CA_1") is not None)
    return task


class TestRunCall:
    @pytest.mark.asyncio
    async def test_completed_call_is_journaled_and_completed(self, orchestrator, scheduler, journal, telephony):
        task = await _start_call(orchestrator, scheduler)
        actor = orchestrator.registry.get("CA_1")

        assert orchestrator.dispatch("CA_1", Connected())
        await _wait_for(lambda: actor.session.status == CallStatus.IN_PROGRESS)
        for index, words in enumerate(["my sister", "how to knit", "an eight"]):
            orchestrator.dispatch("CA_1", SpeechChunk(words))
            if index < 2:
                await _wait_for(lambda: actor.session.prompt_index == index + 1)

        session = await asyncio.wait_for(task, timeout=2.0)
        assert session.status == CallStatus.COMPLETED
        telephony.place.assert_awaited_once_with(DEST)

        queued = (await scheduler.get("conv_1")).unwrap()
        assert queued.status == QueueStatus.COMPLETED
        assert queued.attempt_count == 1

        sent_session, rating = journal.send_entry.await_args.args
        assert sent_session is session
        assert rating == 8

    @pytest.mark.asyncio
    async def test_hangup_schedules_retry(self, orchestrator, scheduler, journal, sched_clock):
        task = await _start_call(orchestrator, scheduler)
        actor = orchestrator.registry.get("CA_1")
        orchestrator.dispatch("CA_1", Connected())
        orchestrator.dispatch("CA_1", SpeechChunk("my sister"))
        await _wait_for(lambda: actor.session.prompt_index == 1)
        orchestrator.dispatch("CA_1", Disconnected("completed"))

        session = await asyncio.wait_for(task, timeout=2.0)
        assert session.status == CallStatus.ABANDONED
        journal.send_entry.assert_not_called()

        queued = (await scheduler.get("conv_1")).unwrap()
        assert queued.status == QueueStatus.PENDING
        assert queued.attempt_count == 1
        assert queued.next_retry_at == T0 + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_hangup_on_last_attempt_fails(self, orchestrator, scheduler):
        task = await _start_call(orchestrator, scheduler, max_attempts=1)
        orchestrator.dispatch("CA_1", Disconnected("no-answer"))
        await asyncio.wait_for(task, timeout=2.0)

        queued = (await scheduler.get("conv_1")).unwrap()
        assert queued.status == QueueStatus.FAILED
        assert queued.error == "no-answer"

    @pytest.mark.asyncio
    async def test_place_failure_retries(self, orchestrator, scheduler, telephony):
        telephony.place.side_effect = TelephonyError("twilio down")
        await scheduler.enqueue("conv_1", DEST, T0, 3, owner="user_1")
        (queued,) = await scheduler.due_work()
        assert await orchestrator.run_call(queued) is None

        queued = (await scheduler.get("conv_1")).unwrap()
        assert queued.status == QueueStatus.PENDING
        assert queued.attempt_count == 1

    @pytest.mark.asyncio
    async def test_cancel_mid_call_hangs_up_without_journal(self, orchestrator, scheduler, journal, telephony):
        task = await _start_call(orchestrator, scheduler)
        actor = orchestrator.registry.get("CA_1")
        orchestrator.dispatch("CA_1", Connected())
        await _wait_for(lambda: actor.session.status == CallStatus.IN_PROGRESS)

        result = await orchestrator.cancel("conv_1")
        assert result.ok

        session = await asyncio.wait_for(task, timeout=2.0)
        assert session.status == CallStatus.ABANDONED
        assert session.error == "cancelled"
        telephony.end.assert_awaited_once_with("CA_1", answered=True)
        journal.send_entry.assert_not_called()
        queued = (await scheduler.get("conv_1")).unwrap()
        assert queued.status == QueueStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_record_cancelled_during_call_is_not_journaled(self, orchestrator, scheduler, journal):
        task = await _start_call(orchestrator, scheduler)
        actor = orchestrator.registry.get("CA_1")
        orchestrator.dispatch("CA_1", Connected())
        await _wait_for(lambda: actor.session.status == CallStatus.IN_PROGRESS)
        # cancelled behind the orchestrator's back; the call still finishes
        assert (await scheduler.cancel("conv_1")).ok
        for index, words in enumerate(["my sister", "how to knit", "an eight"]):
            orchestrator.dispatch("CA_1", SpeechChunk(words))
            if index < 2:
                await _wait_for(lambda: actor.session.prompt_index == index + 1)

        session = await asyncio.wait_for(task, timeout=2.0)
        assert session.status == CallStatus.COMPLETED
        journal.send_entry.assert_not_called()
        queued = (await scheduler.get("conv_1")).unwrap()
        assert queued.status == QueueStatus.CANCELLED
        assert queued.error == ""

    @pytest.mark.asyncio
    async def test_cancel_without_live_call(self, orchestrator, scheduler):
        await scheduler.enqueue("conv_1", DEST, T0, 3)
        assert (await orchestrator.cancel("conv_1")).ok
        assert not (await orchestrator.cancel("conv_1")).ok

    @pytest.mark.asyncio
    async def test_dispatch_unknown_call(self, orchestrator):
        assert orchestrator.dispatch("CA_nope", Connected()) is False


class TestTick:
    @pytest.mark.asyncio
    async def test_one_call_per_owner_and_conversation(self, orchestrator, scheduler):
        gate = asyncio.Event()

        async def fake_run_call(queued):
            await gate.wait()

        orchestrator.run_call = fake_run_call
        await scheduler.enqueue("c1", DEST, T0, 3, owner="alice")
        await scheduler.enqueue("c2", DEST, T0, 3, owner="alice")
        await scheduler.enqueue("c3", DEST, T0, 3, owner="bob")

        assert await orchestrator.tick() == 2
        assert set(orchestrator.running) == {"c1", "c3"}
        assert await orchestrator.tick() == 0

        gate.set()
        await asyncio.gather(*orchestrator.running.values())
        await asyncio.sleep(0)
        assert orchestrator.running == {}

    @pytest.mark.asyncio
    async def test_batch_size_caps_spawns(self, orchestrator, scheduler):
        orchestrator.settings.batch_size = 2
        orchestrator.run_call = AsyncMock()
        for i in range(3):
            await scheduler.enqueue(f"c{i}", DEST, T0, 3, owner=f"user_{i}")
        assert await orchestrator.tick() == 2

    @pytest.mark.asyncio
    async def test_future_work_not_started(self, orchestrator, scheduler):
        orchestrator.run_call = AsyncMock()
        await scheduler.enqueue("c1", DEST, T0 + timedelta(hours=1), 3)
        assert await orchestrator.tick() == 0


class TestRecover:
    @pytest.mark.asyncio
    async def test_restart_fails_live_sessions_and_retries_attempts(self, orchestrator, scheduler, store, prompts):
        await scheduler.enqueue("conv_1", DEST, T0, 3, owner="user_1")
        await scheduler.begin_attempt("conv_1")
        live = CallSession(owner="user_1", conversation_id="conv_1", call_sid="CA_old", prompts=prompts)
        live.connect()
        store.save_session(live)

        await orchestrator.recover()

        restored = store.load_session("CA_old")
        assert restored.status == CallStatus.FAILED
        assert restored.error == "process restarted"
        orchestrator.telephony.end.assert_awaited_once_with("CA_old", answered=True)
        queued = (await scheduler.get("conv_1")).unwrap()
        assert queued.status == QueueStatus.PENDING
        assert queued.attempt_count == 1

    @pytest.mark.asyncio
    async def test_restart_on_last_attempt_fails(self, orchestrator, scheduler):
        await scheduler.enqueue("conv_1", DEST, T0, 1)
        await scheduler.begin_attempt("conv_1")
        await orchestrator.recover()
        queued = (await scheduler.get("conv_1")).unwrap()
        assert queued.status == QueueStatus.FAILED
        assert queued.error == "process restarted"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, orchestrator):
        orchestrator.settings.poll_interval_seconds = 0.01
        await orchestrator.start()
        await asyncio.sleep(0.03)
        await orchestrator.shutdown()
        assert orchestrator.running == {}

    @pytest.mark.asyncio
    async def test_close_releases_clients(self, orchestrator, telephony):
        orchestrator.voice.synthesizer.close = AsyncMock()
        orchestrator.store = MagicMock()
        await orchestrator.close()
        telephony.close.assert_awaited_once()
        orchestrator.judge.close.assert_awaited_once()
        orchestrator.voice.synthesizer.close.assert_awaited_once()
        orchestrator.journal.close.assert_awaited_once()
        orchestrator.store.close.assert_called_once()
