"""Speech synthesis with a <Say> fallback.

Prompts are synthesized with Google Cloud Text-to-Speech and cached in
memory per call so Twilio can fetch them from ``/audio/{call_sid}/{clip_id}``.
When synthesis fails, or the circuit breaker has tripped, the line is read
by Twilio's own voice instead; a call never stalls on synthesis.
"""

import base64
import logging
import os
import time
import uuid
from typing import Callable, Optional

import httpx

from reflectline.circuit_breaker import CircuitBreaker
from reflectline.telephony import Utterance

logger = logging.getLogger(__name__)

GOOGLE_TTS_URL = "https://texttospeech.googleapis.com/v1/text:synthesize"
AUDIO_MEDIA_TYPE = "audio/mpeg"


class SpeechError(Exception):
    pass


class AudioCache:
    """Synthesized clips, keyed by call and clip id.

    ``discard`` retires a call's clips after a grace period rather than at
    once, so Twilio can still fetch a closing line that was queued just
    before the call was released.
    """

    def __init__(self, grace_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.grace_seconds = grace_seconds
        self.clock = clock
        self._clips: dict[str, dict[str, bytes]] = {}
        self._expires: dict[str, float] = {}

    def put(self, call_sid: str, audio: bytes) -> str:
        clip_id = uuid.uuid4().hex[:12]
        self._clips.setdefault(call_sid, {})[clip_id] = audio
        return clip_id

    def get(self, call_sid: str, clip_id: str) -> Optional[bytes]:
        self._purge()
        return self._clips.get(call_sid, {}).get(clip_id)

    def discard(self, call_sid: str) -> None:
        if call_sid in self._clips:
            self._expires[call_sid] = self.clock() + self.grace_seconds
        self._purge()

    def _purge(self) -> None:
        now = self.clock()
        for sid in [s for s, at in self._expires.items() if at <= now]:
            self._clips.pop(sid, None)
            del self._expires[sid]

    def __contains__(self, call_sid: str) -> bool:
        self._purge()
        return call_sid in self._clips


class SpeechSynthesizer:
    def __init__(
        self,
        api_key: str = "",
        voice: str = "",
        timeout: float = 8.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key or os.getenv("GOOGLE_TTS_API_KEY", "")
        self.voice = voice or os.getenv("GOOGLE_TTS_VOICE", "en-US-Neural2-F")
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="speech synthesis",
        )
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def close(self):
        await self._client.aclose()

    async def synthesize(self, text: str) -> bytes:
        if not self.enabled:
            raise SpeechError("speech synthesis not configured")
        if not self._circuit.should_try():
            raise SpeechError("speech synthesis circuit breaker open")
        try:
            resp = await self._client.post(
                GOOGLE_TTS_URL,
                params={"key": self.api_key},
                json={
                    "input": {"text": text},
                    "voice": {"languageCode": self.voice[:5], "name": self.voice},
                    "audioConfig": {"audioEncoding": "MP3", "speakingRate": 0.95},
                },
            )
            resp.raise_for_status()
            audio = base64.b64decode(resp.json()["audioContent"])
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            self._circuit.record_failure()
            raise SpeechError(f"synthesis failed: {e}") from e
        self._circuit.record_success()
        return audio


class Voice:
    """Turns lines of text into utterances a call can play."""

    def __init__(self, synthesizer: SpeechSynthesizer, cache: AudioCache, public_base_url: str = ""):
        self.synthesizer = synthesizer
        self.cache = cache
        self.public_base_url = (public_base_url or os.getenv("PUBLIC_BASE_URL", "")).rstrip("/")

    def audio_url(self, call_sid: str, clip_id: str) -> str:
        return f"{self.public_base_url}/audio/{call_sid}/{clip_id}"

    async def utterance(self, call_sid: str, text: str) -> Utterance:
        if not self.synthesizer.enabled:
            return Utterance(text)
        try:
            audio = await self.synthesizer.synthesize(text)
        except SpeechError as e:
            logger.warning(f"[{call_sid}] Falling back to <Say>: {e}")
            return Utterance(text)
        clip_id = self.cache.put(call_sid, audio)
        return Utterance(text, self.audio_url(call_sid, clip_id))

    def release(self, call_sid: str) -> None:
        self.cache.discard(call_sid)
