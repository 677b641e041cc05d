import json
import logging
import os
import time
from typing import Optional

from reflectline.journal_sync import JournalClient
from reflectline.session import CallSession
from reflectline.states import CallStatus
from reflectline.transcript import to_timestamped_dump

logger = logging.getLogger(__name__)

RATING_MIN_CONFIDENCE = 0.5


async def extract_rating(session: CallSession, judge) -> Optional[int]:
    """First confidently-read 1-10 rating among the rating-prompt answers."""
    for answer in session.answers:
        if not answer.is_rating or not answer.text.strip():
            continue
        rating, confidence = await judge.extract_rating(answer.text)
        logger.info(f"[{session.call_sid}] Rating read from {answer.text!r}: {rating} ({confidence:.2f})")
        if rating is not None and confidence >= RATING_MIN_CONFIDENCE:
            return rating
    return None


def chunk_transcript_dump(dump: dict, max_bytes: int = 3500) -> list[str]:
    """Split a transcript dump into chunks that fit within log line limits.

    Each chunk is a string: TRANSCRIPT_DUMP|N/M|{json}
    The first chunk carries the header fields with as many entries as fit.
    """
    header = {k: v for k, v in dump.items() if k != "entries"}
    entries = dump.get("entries", [])

    if not entries:
        return [f"TRANSCRIPT_DUMP|1/1|{json.dumps({**header, 'entries': []})}"]

    chunks: list[list[dict]] = []
    current: list[dict] = []
    current_size = len(json.dumps({**header, "entries": []}).encode("utf-8"))

    for entry in entries:
        entry_size = len(json.dumps(entry).encode("utf-8")) + 2
        if current and (current_size + entry_size) > max_bytes:
            chunks.append(current)
            current = []
            current_size = len(json.dumps({"entries": []}).encode("utf-8"))
        current.append(entry)
        current_size += entry_size

    if current:
        chunks.append(current)

    total = len(chunks)
    lines = []
    for i, chunk in enumerate(chunks):
        body = {**header, "entries": chunk} if i == 0 else {"entries": chunk}
        lines.append(f"TRANSCRIPT_DUMP|{i + 1}/{total}|{json.dumps(body)}")
    return lines


def journal_client_from_env() -> Optional[JournalClient]:
    url = os.getenv("JOURNAL_WEBHOOK_URL", "")
    secret = os.getenv("JOURNAL_WEBHOOK_SECRET", "")
    if not url or not secret:
        return None
    return JournalClient(entries_url=url, webhook_secret=secret)


def log_transcript(session: CallSession) -> None:
    dump = to_timestamped_dump(session)
    dump["duration_s"] = round((session.completed_at or time.time()) - session.created_at, 1)
    for line in chunk_transcript_dump(dump):
        logger.info(line)


async def handle_call_ended(
    session: CallSession,
    journal: Optional[JournalClient],
    judge,
) -> Optional[dict]:
    """Post-call work: transcript dump always, journal entry only when completed."""
    log_transcript(session)

    if session.status != CallStatus.COMPLETED:
        logger.info(f"[{session.call_sid}] No journal entry for {session.status.value} call")
        return None
    if journal is None:
        logger.warning("Journal webhook not configured, skipping journal sync")
        return None

    rating = await extract_rating(session, judge)
    result = await journal.send_entry(session, rating)
    logger.info(f"[{session.call_sid}] Journal sync: {result}")
    return result
