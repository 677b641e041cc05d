"""Journal webhook: where finished reflections are written.

One entry per completed call.  The entry is keyed by conversation and call
so the journal can drop a repeat delivery; that makes a retry after a
timeout safe.  Server errors and network failures are retried, a 4xx is
not: the journal rejected the entry and sending it again won't help.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from reflectline.session import CallSession
from reflectline.transcript import to_json_array, to_plain_text

logger = logging.getLogger(__name__)


def _iso(ts: float) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def entry_payload(session: CallSession, rating: Optional[int] = None) -> dict:
    """The journal entry for a completed call."""
    payload = {
        "owner": session.owner,
        "conversation_id": session.conversation_id,
        "call_id": session.call_sid,
        "started_at": _iso(session.created_at),
        "completed_at": _iso(session.completed_at),
        "duration_seconds": round(session.completed_at - session.created_at, 1) if session.completed_at else 0,
        "transcript": to_plain_text(session.answers),
        "raw_transcript": session.transcript.strip(),
        "responses": to_json_array(session.answers),
    }
    if rating is not None:
        payload["rating"] = rating
    return payload


class JournalClient:
    """Writes journal entries; never raises, the result carries ``success``."""

    def __init__(
        self,
        *,
        entries_url: str,
        webhook_secret: str,
        timeout: float = 15.0,
        attempts: int = 2,
        retry_backoff: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.entries_url = entries_url
        self.secret = webhook_secret
        self.attempts = max(1, attempts)
        self.retry_backoff = retry_backoff
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self):
        await self._client.aclose()

    async def send_entry(self, session: CallSession, rating: Optional[int] = None) -> dict:
        headers = {
            "X-Webhook-Secret": self.secret,
            "Idempotency-Key": f"{session.conversation_id}:{session.call_sid}",
        }
        return await self._deliver(entry_payload(session, rating), headers, session.call_sid)

    async def _deliver(self, payload: dict, headers: dict, call_sid: str) -> dict:
        error = ""
        for attempt in range(1, self.attempts + 1):
            try:
                resp = await self._client.post(self.entries_url, json=payload, headers=headers)
            except httpx.TransportError as e:
                error = f"{type(e).__name__}: {e}"
            else:
                if resp.status_code < 400:
                    try:
                        body = resp.json()
                    except ValueError:
                        body = {}
                    return body if isinstance(body, dict) and "success" in body else {"success": True}
                if resp.status_code < 500:
                    logger.error(f"[{call_sid}] Journal rejected entry: HTTP {resp.status_code}")
                    return {"success": False, "error": f"HTTP {resp.status_code}"}
                error = f"HTTP {resp.status_code}"

            if attempt < self.attempts:
                logger.warning(
                    "[%s] Journal write failed (%s), retry %d in %.0fs",
                    call_sid, error, attempt, self.retry_backoff,
                )
                await asyncio.sleep(self.retry_backoff)

        logger.error(f"[{call_sid}] Journal write gave up after {self.attempts} attempts: {error}")
        return {"success": False, "error": error}
