import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from reflectline.errors import ErrorKind, Result, err, ok
from reflectline.states import CALL_TRANSITIONS, CallStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prompt:
    text: str
    prompt_id: str = ""
    is_rating: bool = False


@dataclass
class Answer:
    position: int
    prompt_id: str
    prompt_text: str
    text: str
    is_rating: bool = False
    finished_at: float = 0.0


@dataclass
class TurnBuffer:
    """Transcript of the answer currently being spoken."""

    text: str = ""
    last_speech_at: float = 0.0

    def append(self, text: str, at: float) -> None:
        self.text += text
        self.last_speech_at = at

    def clear(self) -> None:
        self.text = ""

    @property
    def content(self) -> str:
        return self.text.strip()

    @property
    def is_empty(self) -> bool:
        return not self.content


@dataclass
class CallSession:
    owner: str
    call_sid: str
    prompts: list
    conversation_id: str = ""
    status: CallStatus = CallStatus.INITIATED
    prompt_index: int = 0
    transcript: str = ""
    buffer: TurnBuffer = field(default_factory=TurnBuffer)
    answers: list = field(default_factory=list)
    error: str = ""
    created_at: float = 0.0
    completed_at: float = 0.0
    clock: Callable[[], float] = field(default=time.time, repr=False, compare=False)

    def __post_init__(self):
        if not self.prompts:
            raise ValueError("A call session needs at least one prompt")
        if not self.created_at:
            self.created_at = self.clock()
        if not self.buffer.last_speech_at:
            self.buffer.last_speech_at = self.created_at

    # ── Queries ──

    @property
    def current_prompt(self) -> Prompt:
        return self.prompts[self.prompt_index]

    @property
    def is_last_prompt(self) -> bool:
        return self.prompt_index == len(self.prompts) - 1

    @property
    def last_speech_at(self) -> float:
        return self.buffer.last_speech_at

    def silence_seconds(self, now: Optional[float] = None) -> float:
        now = self.clock() if now is None else now
        return max(0.0, now - self.buffer.last_speech_at)

    # ── Transitions ──

    def connect(self) -> Result:
        return self._step(CallStatus.INITIATED, CallStatus.CONNECTED, "connect")

    def begin_prompting(self) -> Result:
        result = self._step(CallStatus.CONNECTED, CallStatus.IN_PROGRESS, "begin prompting")
        if result.ok:
            # silence is measured from when the first prompt starts, not from dialing
            self.buffer.last_speech_at = self.clock()
        return result

    def append_speech(self, text: str) -> Result:
        if self.status != CallStatus.IN_PROGRESS:
            return self._illegal("append speech")
        now = self.clock()
        self.transcript += text
        self.buffer.append(text, now)
        return ok(self.buffer.text)

    def advance(self) -> Result:
        if self.status != CallStatus.IN_PROGRESS:
            return self._illegal("advance")
        if self.is_last_prompt:
            return err(
                ErrorKind.ILLEGAL_TRANSITION,
                f"Call {self.call_sid} is on its last prompt "
                f"({self.prompt_index}/{len(self.prompts) - 1}); use complete()",
            )
        self._record_answer()
        self.buffer.clear()
        self.prompt_index += 1
        self.buffer.last_speech_at = self.clock()
        logger.info("[%s] Advanced to prompt %d/%d", self.call_sid, self.prompt_index + 1, len(self.prompts))
        return ok(self.prompt_index)

    def complete(self) -> Result:
        if self.status == CallStatus.COMPLETED:
            return ok(self.status)
        if self.status != CallStatus.IN_PROGRESS:
            return self._illegal("complete")
        if not self.is_last_prompt:
            return err(
                ErrorKind.ILLEGAL_TRANSITION,
                f"Call {self.call_sid} still has prompts after index {self.prompt_index}; use advance()",
            )
        self._record_answer()
        self.buffer.clear()
        self._finish(CallStatus.COMPLETED, "")
        return ok(self.status)

    def abandon(self, reason: str) -> Result:
        return self._terminate(CallStatus.ABANDONED, reason)

    def fail(self, error: str) -> Result:
        return self._terminate(CallStatus.FAILED, error)

    # ── Helpers ──

    def _step(self, expected: CallStatus, target: CallStatus, action: str) -> Result:
        if self.status != expected or target not in CALL_TRANSITIONS[self.status]:
            return self._illegal(action)
        self.status = target
        return ok(self.status)

    def _terminate(self, target: CallStatus, detail: str) -> Result:
        if self.status == target:
            return ok(self.status)
        if self.status.is_terminal:
            return self._illegal(f"move to {target.value}")
        self._finish(target, detail)
        return ok(self.status)

    def _finish(self, target: CallStatus, detail: str) -> None:
        self.status = target
        self.error = detail
        self.completed_at = self.clock()
        logger.info("[%s] Session %s%s", self.call_sid, target.value, f": {detail}" if detail else "")

    def _record_answer(self) -> None:
        prompt = self.current_prompt
        self.answers.append(Answer(
            position=self.prompt_index + 1,
            prompt_id=prompt.prompt_id,
            prompt_text=prompt.text,
            text=self.buffer.content,
            is_rating=prompt.is_rating,
            finished_at=self.clock(),
        ))

    def _illegal(self, action: str) -> Result:
        return err(
            ErrorKind.ILLEGAL_TRANSITION,
            f"Cannot {action} call {self.call_sid} in status {self.status.value}",
        )

    # ── Persistence ──

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "conversation_id": self.conversation_id,
            "call_sid": self.call_sid,
            "status": self.status.value,
            "prompts": [
                {"text": p.text, "prompt_id": p.prompt_id, "is_rating": p.is_rating}
                for p in self.prompts
            ],
            "prompt_index": self.prompt_index,
            "transcript": self.transcript,
            "buffer": self.buffer.text,
            "last_speech_at": self.buffer.last_speech_at,
            "answers": [vars(a).copy() for a in self.answers],
            "error": self.error,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CallSession":
        return cls(
            owner=data["owner"],
            conversation_id=data.get("conversation_id", ""),
            call_sid=data["call_sid"],
            prompts=[Prompt(**p) for p in data["prompts"]],
            status=CallStatus(data["status"]),
            prompt_index=data.get("prompt_index", 0),
            transcript=data.get("transcript", ""),
            buffer=TurnBuffer(text=data.get("buffer", ""), last_speech_at=data.get("last_speech_at", 0.0)),
            answers=[Answer(**a) for a in data.get("answers", [])],
            error=data.get("error", ""),
            created_at=data.get("created_at", 0.0),
            completed_at=data.get("completed_at", 0.0),
        )
