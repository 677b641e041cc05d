"""Per-call actor.

One ``CallActor`` owns one ``CallSession`` for the life of a call.  Every
input (Twilio status callbacks, transcription chunks, its own completion
timer) arrives as a message in ``inbox`` and is handled one at a time, so
a call's prompts always advance strictly in order.

Timer rules:
  - one timer per call; re-armed on every final transcription
  - each arm bumps a generation number and a firing from an older
    generation is ignored
  - before the call connects the timer is the connect timeout
  - a not-complete verdict re-arms it, so silence keeps growing until the
    detector's hard ceiling is reached
"""

import asyncio
import logging
import sqlite3
from typing import Optional

from reflectline.messages import Cancelled, Connected, Disconnected, SpeechChunk, TimerFired
from reflectline.script import CallScript, closing, greeting
from reflectline.session import CallSession
from reflectline.states import CallStatus
from reflectline.telephony import TelephonyError

logger = logging.getLogger(__name__)


class CallActor:
    def __init__(
        self,
        session: CallSession,
        script: CallScript,
        *,
        detector,
        telephony,
        voice,
        store=None,
        registry=None,
        pause_threshold: float = 3.0,
        connect_timeout: float = 60.0,
        silence_timeout: float = 90.0,
    ):
        self.session = session
        self.script = script
        self.detector = detector
        self.telephony = telephony
        self.voice = voice
        self.store = store
        self.registry = registry
        self.pause_threshold = pause_threshold
        self.connect_timeout = connect_timeout
        self.silence_timeout = silence_timeout

        self.inbox: asyncio.Queue = asyncio.Queue()
        self._timer: Optional[asyncio.Task] = None
        self._generation = 0
        self._stream = None
        self._late_close: Optional[asyncio.Task] = None
        self._answered = False
        self._far_end_gone = False
        self._released = False

    @property
    def call_sid(self) -> str:
        return self.session.call_sid

    def post(self, message) -> None:
        self.inbox.put_nowait(message)

    def attach_stream(self, stream) -> None:
        if self._released:
            # the call ended before its media stream arrived
            self._late_close = asyncio.ensure_future(stream.close())
            return
        self._stream = stream

    async def run(self) -> CallSession:
        if self.registry is not None:
            self.registry.register(self)
        try:
            await self._persist()
            self._arm(self.connect_timeout)
            while not self.session.status.is_terminal:
                message = await self.inbox.get()
                await self._handle(message)
        except asyncio.CancelledError:
            self.session.fail("call cancelled")
            raise
        except Exception as e:
            logger.exception(f"[{self.call_sid}] Call actor crashed")
            self.session.fail(f"actor error: {e}")
            raise
        finally:
            await self.release()
        return self.session

    # ── Message handling ──

    async def _handle(self, message) -> None:
        if isinstance(message, Connected):
            await self._on_connected()
        elif isinstance(message, SpeechChunk):
            self._on_speech(message)
        elif isinstance(message, Disconnected):
            await self._on_disconnected(message)
        elif isinstance(message, Cancelled):
            await self._on_cancelled(message)
        elif isinstance(message, TimerFired):
            await self._on_timer(message)
        else:
            logger.warning(f"[{self.call_sid}] Ignoring unknown message {message!r}")

    async def _on_connected(self) -> None:
        if self.session.status != CallStatus.INITIATED:
            logger.debug(f"[{self.call_sid}] Duplicate connect ignored")
            return
        self.session.connect().unwrap()
        self._answered = True
        logger.info(f"[{self.call_sid}] Connected")

        opening = [
            await self.voice.utterance(self.call_sid, greeting(self.script)),
            await self.voice.utterance(self.call_sid, self.session.current_prompt.text),
        ]
        try:
            await self.telephony.speak(self.call_sid, opening, start_stream=True)
        except TelephonyError as e:
            await self._telephony_failed(e)
            return

        self.session.begin_prompting().unwrap()
        await self._persist()
        self._arm(self.pause_threshold)

    def _on_speech(self, chunk: SpeechChunk) -> None:
        if not chunk.is_final or not chunk.text.strip():
            return
        if self.session.status != CallStatus.IN_PROGRESS:
            logger.debug(f"[{self.call_sid}] Speech while {self.session.status.value}, ignored")
            return
        self.session.append_speech(f"{chunk.text.strip()} ").unwrap()
        self._arm(self.pause_threshold)

    async def _on_disconnected(self, message: Disconnected) -> None:
        self._far_end_gone = True
        if self.session.status.is_terminal:
            return
        self.session.abandon(message.reason or "caller hung up").unwrap()
        await self._persist()

    async def _on_cancelled(self, message: Cancelled) -> None:
        if self.session.status.is_terminal:
            return
        logger.info(f"[{self.call_sid}] Call cancelled: {message.reason}")
        self.session.abandon(message.reason).unwrap()
        await self._persist()

    async def _on_timer(self, message: TimerFired) -> None:
        if message.generation != self._generation:
            return
        status = self.session.status
        if status in (CallStatus.INITIATED, CallStatus.CONNECTED):
            await self._fail(f"not connected within {self.connect_timeout:.0f}s")
            return
        if status != CallStatus.IN_PROGRESS:
            return

        silence = self.session.silence_seconds()
        buffer = self.session.buffer
        if buffer.is_empty:
            if silence >= self.silence_timeout:
                self.session.abandon(f"caller silent for {silence:.0f}s").unwrap()
                await self._persist()
            else:
                self._arm(self.silence_timeout - silence)
            return

        if silence >= self.silence_timeout:
            logger.info(f"[{self.call_sid}] Caller silent after a short answer, moving on")
            await self._answer_finished()
            return

        verdict = await self.detector.check(self.session.current_prompt.text, buffer.content, silence)
        logger.info(
            f"[{self.call_sid}] Prompt {self.session.prompt_index + 1}: "
            f"complete={verdict.is_complete} confidence={verdict.confidence:.2f} ({verdict.reason})"
        )
        if verdict.is_complete:
            await self._answer_finished()
        else:
            self._arm(self.pause_threshold)

    async def _answer_finished(self) -> None:
        if self.session.is_last_prompt:
            self.session.complete().unwrap()
            await self._persist()
            await self._say(closing(self.script), hangup=True)
            return
        self.session.advance().unwrap()
        await self._persist()
        if await self._say(self.session.current_prompt.text):
            self._arm(self.pause_threshold)

    async def _say(self, text: str, hangup: bool = False) -> bool:
        utterance = await self.voice.utterance(self.call_sid, text)
        try:
            await self.telephony.speak(self.call_sid, [utterance], hangup=hangup)
        except TelephonyError as e:
            if self.session.status.is_live:
                await self._telephony_failed(e)
            else:
                logger.warning(f"[{self.call_sid}] Could not play closing line: {e}")
            return False
        return True

    async def _telephony_failed(self, error: TelephonyError) -> None:
        # a rejected redirect usually means the caller already hung up
        hangup = self._take_pending(Disconnected)
        if hangup is not None:
            await self._on_disconnected(hangup)
            return
        await self._fail(f"telephony: {error}")

    def _take_pending(self, kind):
        """Remove the first queued message of ``kind``; the rest keep their order."""
        found = None
        kept = []
        while not self.inbox.empty():
            message = self.inbox.get_nowait()
            if found is None and isinstance(message, kind):
                found = message
            else:
                kept.append(message)
        for message in kept:
            self.inbox.put_nowait(message)
        return found

    async def _fail(self, detail: str) -> None:
        self.session.fail(detail).unwrap()
        await self._persist()

    # ── Timer ──

    def _arm(self, delay: float) -> None:
        self._cancel_timer()
        self._generation += 1
        self._timer = asyncio.create_task(self._fire_after(self._generation, delay))

    async def _fire_after(self, generation: int, delay: float) -> None:
        await asyncio.sleep(delay)
        self.post(TimerFired(generation))

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    # ── Resources ──

    async def release(self) -> None:
        """Free the call's timer, stream, audio and registry slot, once."""
        if self._released:
            return
        self._released = True
        self._cancel_timer()

        if self._stream is not None:
            try:
                await self._stream.close()
            except Exception as e:
                logger.warning(f"[{self.call_sid}] Closing media stream failed: {e}")
            self._stream = None

        self.voice.release(self.call_sid)

        # a completed call hangs up through its closing TwiML
        if self.session.status != CallStatus.COMPLETED and not self._far_end_gone:
            try:
                await self.telephony.end(self.call_sid, answered=self._answered)
            except TelephonyError as e:
                logger.warning(f"[{self.call_sid}] Could not end call: {e}")

        if self.registry is not None:
            self.registry.unregister(self)
        await self._persist()
        logger.info(f"[{self.call_sid}] Released ({self.session.status.value})")

    async def _persist(self) -> None:
        if self.store is None:
            return
        try:
            await asyncio.to_thread(self.store.save_session, self.session)
        except sqlite3.Error:
            logger.exception(f"[{self.call_sid}] Could not save session snapshot")

