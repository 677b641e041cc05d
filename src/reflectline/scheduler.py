"""Durable call queue.

One QueuedCall per attempt series; at most one PENDING/ATTEMPTING record per
conversation.  Every operation returns a ``Result``.  The scheduler never
retries on its own: the orchestrator decides between ``retry`` and ``fail``.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from reflectline.errors import ErrorKind, Result, err, ok
from reflectline.queued_call import QueuedCall
from reflectline.states import QUEUE_TRANSITIONS, QueueStatus

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Retry policies ──
# Each maps the attempt count just used to the delay before the next one.

def fixed_delay(minutes: float = 5.0) -> Callable[[int], timedelta]:
    return lambda attempt: timedelta(minutes=minutes)


def linear_delay(step_minutes: float = 5.0) -> Callable[[int], timedelta]:
    return lambda attempt: timedelta(minutes=step_minutes * max(1, attempt))


def exponential_delay(
    base_minutes: float = 5.0, factor: float = 2.0, cap_minutes: float = 120.0
) -> Callable[[int], timedelta]:
    def policy(attempt: int) -> timedelta:
        return timedelta(minutes=min(cap_minutes, base_minutes * factor ** max(0, attempt - 1)))
    return policy


def _move(call: QueuedCall, target: QueueStatus, action: str) -> Result:
    if target not in QUEUE_TRANSITIONS[call.status]:
        return err(
            ErrorKind.ILLEGAL_TRANSITION,
            f"Cannot {action} conversation {call.conversation_id} in status {call.status.value}",
        )
    call.status = target
    return ok(call)


class CallScheduler:
    def __init__(self, store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def enqueue(
        self,
        conversation_id: str,
        destination: str,
        when: datetime,
        max_attempts: int,
        owner: str = "",
    ) -> Result:
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            return err(ErrorKind.INVALID_ARGUMENT, f"max_attempts must be an integer >= 1, got {max_attempts!r}")
        if not conversation_id or not destination:
            return err(ErrorKind.INVALID_ARGUMENT, "conversation_id and destination are required")
        call = QueuedCall(
            conversation_id=conversation_id,
            owner=owner,
            destination=destination,
            scheduled_for=when,
            max_attempts=max_attempts,
            created_at=self.clock(),
        )
        result = await asyncio.to_thread(self.store.insert_if_inactive, call)
        if result.ok:
            logger.info("[%s] Enqueued call to %s for %s", conversation_id, destination, when.isoformat())
        return result

    async def begin_attempt(self, conversation_id: str) -> Result:
        now = self.clock()

        def change(call: QueuedCall) -> Result:
            if call.attempt_count >= call.max_attempts:
                return err(
                    ErrorKind.BUDGET_EXHAUSTED,
                    f"Conversation {conversation_id} used {call.attempt_count}/{call.max_attempts} attempts",
                )
            result = _move(call, QueueStatus.ATTEMPTING, "begin attempt on")
            if result.ok:
                call.attempt_count += 1
                call.last_attempt_at = now
            return result

        result = await self._mutate(conversation_id, change)
        if result.ok:
            logger.info("[%s] Attempt %d/%d", conversation_id, result.value.attempt_count, result.value.max_attempts)
        return result

    async def retry(self, conversation_id: str, delay: timedelta) -> Result:
        if delay < timedelta(0):
            return err(ErrorKind.INVALID_ARGUMENT, f"retry delay must not be negative, got {delay}")
        now = self.clock()

        def change(call: QueuedCall) -> Result:
            if call.status != QueueStatus.ATTEMPTING:
                return _move(call, QueueStatus.PENDING, "retry")
            if call.attempt_count >= call.max_attempts:
                return err(
                    ErrorKind.BUDGET_EXHAUSTED,
                    f"Conversation {conversation_id} has no attempts left "
                    f"({call.attempt_count}/{call.max_attempts})",
                )
            call.status = QueueStatus.PENDING
            call.next_retry_at = now + delay
            return ok(call)

        result = await self._mutate(conversation_id, change)
        if result.ok:
            logger.info("[%s] Retry scheduled for %s", conversation_id, result.value.next_retry_at.isoformat())
        return result

    async def complete(self, conversation_id: str) -> Result:
        return await self._finish(conversation_id, QueueStatus.COMPLETED, "complete", "")

    async def fail(self, conversation_id: str, error_detail: str) -> Result:
        return await self._finish(conversation_id, QueueStatus.FAILED, "fail", error_detail)

    async def cancel(self, conversation_id: str) -> Result:
        return await self._finish(conversation_id, QueueStatus.CANCELLED, "cancel", "")

    async def _finish(self, conversation_id: str, target: QueueStatus, action: str, detail: str) -> Result:
        now = self.clock()

        def change(call: QueuedCall) -> Result:
            # complete/fail come from an attempt; cancel also from PENDING
            if target != QueueStatus.CANCELLED and call.status != QueueStatus.ATTEMPTING:
                return err(
                    ErrorKind.ILLEGAL_TRANSITION,
                    f"Cannot {action} conversation {conversation_id} in status {call.status.value}",
                )
            result = _move(call, target, action)
            if result.ok:
                call.completed_at = now
                call.error = detail
            return result

        result = await self._mutate(conversation_id, change)
        if result.ok:
            logger.info("[%s] Queue record %s%s", conversation_id, target.value, f": {detail}" if detail else "")
        return result

    async def _mutate(self, conversation_id: str, change) -> Result:
        return await asyncio.to_thread(self.store.mutate, conversation_id, change)

    # ── Queries ──

    async def due_work(self, as_of: Optional[datetime] = None) -> list[QueuedCall]:
        return await asyncio.to_thread(self.store.due, as_of or self.clock())

    async def active_for(self, owner: str) -> list[QueuedCall]:
        return await asyncio.to_thread(self.store.active_for, owner)

    async def get(self, conversation_id: str) -> Result:
        call = await asyncio.to_thread(self.store.get, conversation_id)
        if call is None:
            return err(ErrorKind.NOT_FOUND, f"No queued call for conversation {conversation_id}")
        return ok(call)

    async def attempting(self) -> list[QueuedCall]:
        return await asyncio.to_thread(self.store.by_status, QueueStatus.ATTEMPTING)
