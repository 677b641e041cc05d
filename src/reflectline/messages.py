"""Messages delivered to a call actor's inbox.

Telephony webhooks, the transcription stream and the actor's own timer
never touch a call session directly; they post one of these and the
actor handles them one at a time.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Connected:
    pass


@dataclass(frozen=True)
class SpeechChunk:
    text: str
    is_final: bool = True


@dataclass(frozen=True)
class Disconnected:
    reason: str = ""


@dataclass(frozen=True)
class TimerFired:
    generation: int


@dataclass(frozen=True)
class Cancelled:
    reason: str = "cancelled"
