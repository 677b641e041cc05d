"""Drives due calls from the queue through to an outcome.

Each tick pulls due work from the scheduler and spawns one task per call,
up to ``batch_size`` per tick.  A call task:

  begin_attempt -> script_for -> place -> CallActor.run -> settle

Settling is the only place a call outcome becomes a queue decision:
completed calls are journaled and completed; abandoned or failed calls are
retried while attempts remain, otherwise failed for good.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Callable, Optional

from reflectline.actor import CallActor
from reflectline.config import Settings
from reflectline.errors import ErrorKind, Result
from reflectline.messages import Cancelled
from reflectline.post_call import handle_call_ended, log_transcript
from reflectline.queued_call import QueuedCall
from reflectline.registry import OwnerBusy
from reflectline.scheduler import fixed_delay
from reflectline.script import StaticScriptProvider
from reflectline.session import CallSession
from reflectline.states import CallStatus, QueueStatus
from reflectline.telephony import TelephonyError

logger = logging.getLogger(__name__)


class Orchestrator:
    def __init__(
        self,
        scheduler,
        *,
        store,
        registry,
        telephony,
        voice,
        detector,
        judge,
        journal=None,
        script_provider=None,
        settings: Optional[Settings] = None,
        retry_policy: Optional[Callable[[int], timedelta]] = None,
    ):
        self.scheduler = scheduler
        self.store = store
        self.registry = registry
        self.telephony = telephony
        self.voice = voice
        self.detector = detector
        self.judge = judge
        self.journal = journal
        self.script_provider = script_provider or StaticScriptProvider()
        self.settings = settings or Settings()
        self.retry_policy = retry_policy or fixed_delay(self.settings.retry_delay_minutes)

        self._tasks: dict[str, asyncio.Task] = {}
        self._actors: dict[str, CallActor] = {}
        self._owners: set[str] = set()
        self._loop_task: Optional[asyncio.Task] = None

    # ── Lifecycle ──

    async def start(self) -> None:
        await self.recover()
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info(f"Orchestrator started, polling every {self.settings.poll_interval_seconds:.0f}s")

    async def shutdown(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Orchestrator stopped ({len(tasks)} calls cancelled)")

    async def close(self) -> None:
        """Release collaborator connections once no call is running."""
        await self.telephony.close()
        await self.judge.close()
        await self.voice.synthesizer.close()
        if self.journal is not None:
            await self.journal.close()
        self.store.close()

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self.settings.poll_interval_seconds)

    async def recover(self) -> None:
        """Settle work a previous process left mid-call."""
        for session in await asyncio.to_thread(self.store.live_sessions):
            answered = session.status != CallStatus.INITIATED
            session.fail("process restarted")
            await asyncio.to_thread(self.store.save_session, session)
            logger.warning(f"[{session.call_sid}] Marked failed after restart")
            try:
                await self.telephony.end(session.call_sid, answered=answered)
            except TelephonyError as e:
                logger.warning(f"[{session.call_sid}] Could not end orphaned call: {e}")
        for queued in await self.scheduler.attempting():
            if queued.conversation_id in self._tasks:
                continue
            await self._settle_failure(queued, "process restarted")

    # ── Dispatch ──

    @property
    def running(self) -> dict:
        return dict(self._tasks)

    async def tick(self) -> int:
        started = 0
        for queued in await self.scheduler.due_work():
            if started >= self.settings.batch_size:
                break
            if queued.conversation_id in self._tasks:
                continue
            if queued.owner and (queued.owner in self._owners or self.registry.owner_busy(queued.owner)):
                logger.debug(f"[{queued.conversation_id}] Owner {queued.owner} already on a call, skipping")
                continue
            self._spawn(queued)
            started += 1
        if started:
            logger.info(f"Tick started {started} call(s)")
        return started

    def _spawn(self, queued: QueuedCall) -> asyncio.Task:
        conv = queued.conversation_id
        task = asyncio.create_task(self.run_call(queued))
        self._tasks[conv] = task
        if queued.owner:
            self._owners.add(queued.owner)

        def _done(t: asyncio.Task):
            self._tasks.pop(conv, None)
            self._owners.discard(queued.owner)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"[{conv}] Call task crashed: {t.exception()!r}")

        task.add_done_callback(_done)
        return task

    def dispatch(self, call_sid: str, message) -> bool:
        """Deliver a message to a live call's actor; False if the call is unknown."""
        actor = self.registry.get(call_sid)
        if actor is None:
            logger.debug(f"[{call_sid}] No live call for {type(message).__name__}")
            return False
        actor.post(message)
        return True

    async def cancel(self, conversation_id: str) -> Result:
        """Cancel a queued call and hang up its live call, if any."""
        result = await self.scheduler.cancel(conversation_id)
        actor = self._actors.get(conversation_id)
        if result.ok and actor is not None:
            actor.post(Cancelled())
        return result

    # ── One call ──

    async def run_call(self, queued: QueuedCall) -> Optional[CallSession]:
        conv = queued.conversation_id
        begun = await self.scheduler.begin_attempt(conv)
        if not begun.ok:
            logger.warning(f"[{conv}] Could not begin attempt: {begun.error}")
            return None
        queued = begun.value

        try:
            script = await self.script_provider.script_for(queued)
            call_sid = await self.telephony.place(queued.destination)
        except TelephonyError as e:
            await self._settle_failure(queued, f"telephony: {e}")
            return None
        except Exception as e:
            logger.exception(f"[{conv}] Could not prepare call")
            await self._settle_failure(queued, f"setup: {e}")
            return None

        session = CallSession(
            owner=queued.owner,
            conversation_id=conv,
            call_sid=call_sid,
            prompts=script.prompts,
        )
        actor = CallActor(
            session,
            script,
            detector=self.detector,
            telephony=self.telephony,
            voice=self.voice,
            store=self.store,
            registry=self.registry,
            pause_threshold=self.settings.pause_threshold_seconds,
            connect_timeout=self.settings.connect_timeout_seconds,
            silence_timeout=self.settings.caller_silence_timeout_seconds,
        )
        self._actors[conv] = actor
        try:
            session = await actor.run()
        except OwnerBusy as e:
            logger.warning(f"[{call_sid}] {e}")
            session.fail(str(e))
            try:
                await self.telephony.end(call_sid, answered=False)
            except TelephonyError as end_error:
                logger.warning(f"[{call_sid}] Could not end call: {end_error}")
        except Exception:
            # the actor has already failed the session and released it
            await self.settle(queued, session)
            raise
        finally:
            self._actors.pop(conv, None)

        await self.settle(queued, session)
        return session

    async def settle(self, queued: QueuedCall, session: CallSession) -> None:
        conv = queued.conversation_id
        current = await self.scheduler.get(conv)
        if current.ok and current.value.status != QueueStatus.ATTEMPTING:
            # cancelled mid-call: nothing to journal or schedule
            logger.info(f"[{conv}] Queue record is {current.value.status.value}, skipping settlement")
            log_transcript(session)
            return

        await handle_call_ended(session, self.journal, self.judge)

        if session.status == CallStatus.COMPLETED:
            result = await self.scheduler.complete(conv)
            if not result.ok:
                logger.warning(f"[{conv}] Could not complete queue record: {result.error}")
            return
        await self._settle_failure(queued, session.error or session.status.value)

    async def _settle_failure(self, queued: QueuedCall, detail: str) -> None:
        conv = queued.conversation_id
        if queued.attempts_remaining > 0:
            delay = self.retry_policy(queued.attempt_count)
            result = await self.scheduler.retry(conv, delay)
            if result.ok:
                return
            if result.error.kind != ErrorKind.BUDGET_EXHAUSTED:
                logger.warning(f"[{conv}] Could not retry: {result.error}")
                return
        result = await self.scheduler.fail(conv, detail)
        if not result.ok:
            logger.warning(f"[{conv}] Could not fail queue record: {result.error}")
