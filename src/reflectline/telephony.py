"""Twilio call control over the REST API.

Calls are placed with inline TwiML that just holds the line.  Once Twilio
reports the call answered, the actor redirects it with new TwiML for every
thing it says: ``<Play>`` for synthesized audio, ``<Say>`` when synthesis
is unavailable, followed by a long ``<Pause>`` so the line stays open while
the person answers.  The media stream is forked with ``<Start><Stream>``,
which keeps running across redirects.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional
from xml.sax.saxutils import escape, quoteattr

import httpx

from reflectline.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
FALLBACK_VOICE = "Polly.Joanna"
HOLD_SECONDS = 120

STATUS_EVENTS = ["initiated", "ringing", "answered", "completed"]

# Twilio CallStatus values that end the call from the far side
DISCONNECT_STATUSES = {"completed", "busy", "no-answer", "failed", "canceled"}
CONNECT_STATUSES = {"in-progress", "answered"}


class TelephonyError(Exception):
    """Twilio rejected or never answered a call-control request."""


@dataclass(frozen=True)
class Utterance:
    text: str
    audio_url: Optional[str] = None


def twiml_verb(utterance: Utterance) -> str:
    if utterance.audio_url:
        return f"<Play>{escape(utterance.audio_url)}</Play>"
    return f"<Say voice={quoteattr(FALLBACK_VOICE)}>{escape(utterance.text)}</Say>"


def build_twiml(
    utterances: list[Utterance],
    *,
    stream_url: Optional[str] = None,
    hangup: bool = False,
) -> str:
    parts = ["<Response>"]
    if stream_url:
        parts.append(f"<Start><Stream url={quoteattr(stream_url)}/></Start>")
    parts.extend(twiml_verb(u) for u in utterances)
    parts.append("<Hangup/>" if hangup else f'<Pause length="{HOLD_SECONDS}"/>')
    parts.append("</Response>")
    return "".join(parts)


class TelephonyClient:
    """Places, redirects and ends calls.

    A circuit breaker guards every request: after 3 consecutive failures
    requests fail fast for 60s instead of waiting on Twilio's timeout.
    """

    def __init__(
        self,
        account_sid: str = "",
        auth_token: str = "",
        from_number: str = "",
        public_base_url: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.account_sid = account_sid or os.getenv("TWILIO_ACCOUNT_SID", "")
        self.from_number = from_number or os.getenv("TWILIO_FROM_NUMBER", "")
        self.public_base_url = (public_base_url or os.getenv("PUBLIC_BASE_URL", "")).rstrip("/")
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="telephony",
        )
        self._client = client or httpx.AsyncClient(
            auth=(self.account_sid, auth_token or os.getenv("TWILIO_AUTH_TOKEN", "")),
            timeout=timeout,
        )

    async def close(self):
        await self._client.aclose()

    @property
    def calls_url(self) -> str:
        return f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Calls"

    @property
    def status_callback_url(self) -> str:
        return f"{self.public_base_url}/twilio/status"

    @property
    def stream_url(self) -> str:
        host = self.public_base_url.split("://", 1)[-1]
        return f"wss://{host}/ws/media"

    async def _post(self, url: str, data: dict, label: str) -> dict:
        if not self._circuit.should_try():
            raise TelephonyError(f"{label}: telephony circuit breaker open")
        try:
            resp = await self._client.post(url, data=data)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            self._circuit.record_failure()
            logger.error("%s failed: %s", label, e)
            raise TelephonyError(f"{label} failed: {e}") from e
        self._circuit.record_success()
        return body

    async def place(self, destination: str) -> str:
        body = await self._post(
            f"{self.calls_url}.json",
            {
                "To": destination,
                "From": self.from_number,
                "Twiml": build_twiml([]),
                "StatusCallback": self.status_callback_url,
                "StatusCallbackEvent": STATUS_EVENTS,
                "StatusCallbackMethod": "POST",
            },
            "place call",
        )
        call_sid = body.get("sid")
        if not call_sid:
            raise TelephonyError(f"place call: no sid in response {body!r}")
        logger.info(f"[{call_sid}] Placed call to {destination}")
        return call_sid

    async def redirect(self, call_sid: str, twiml: str) -> None:
        await self._post(f"{self.calls_url}/{call_sid}.json", {"Twiml": twiml}, f"[{call_sid}] redirect")

    async def speak(
        self,
        call_sid: str,
        utterances: list[Utterance],
        *,
        start_stream: bool = False,
        hangup: bool = False,
    ) -> None:
        twiml = build_twiml(
            utterances,
            stream_url=self.stream_url if start_stream else None,
            hangup=hangup,
        )
        await self.redirect(call_sid, twiml)

    async def end(self, call_sid: str, answered: bool = True) -> None:
        # a call still ringing is canceled, an answered one is completed
        status = "completed" if answered else "canceled"
        await self._post(f"{self.calls_url}/{call_sid}.json", {"Status": status}, f"[{call_sid}] end call")
        logger.info(f"[{call_sid}] Ended call")
