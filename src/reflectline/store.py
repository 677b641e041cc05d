"""Durable state for the engine (SQLite).

Holds the call queue and snapshots of in-flight call sessions so both
survive a process restart.

- WAL mode + busy_timeout for a file-backed database
- A thread lock around short transactions; every queue mutation is one
  read-check-write inside ``BEGIN IMMEDIATE``
- A partial unique index makes "one PENDING/ATTEMPTING record per
  conversation" a database constraint as well as a scheduler check

The store is synchronous; the scheduler calls it through
``asyncio.to_thread`` so the event loop never blocks on disk.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from reflectline.errors import ErrorKind, Result, err
from reflectline.queued_call import QueuedCall
from reflectline.session import CallSession
from reflectline.states import QueueStatus

logger = logging.getLogger(__name__)

_CREATE_TABLES_SQL = [
    """
    CREATE TABLE IF NOT EXISTS queued_calls (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        conversation_id TEXT NOT NULL,
        owner TEXT NOT NULL DEFAULT '',
        destination TEXT NOT NULL,
        scheduled_for TEXT NOT NULL,
        status TEXT NOT NULL,  -- pending|attempting|completed|failed|cancelled
        attempt_count INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL,
        last_attempt_at TEXT,
        next_retry_at TEXT,
        created_at TEXT NOT NULL,
        completed_at TEXT,
        error TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_queued_calls_one_active
    ON queued_calls(conversation_id) WHERE status IN ('pending', 'attempting')
    """,
    "CREATE INDEX IF NOT EXISTS idx_queued_calls_status_due ON queued_calls(status, scheduled_for)",
    "CREATE INDEX IF NOT EXISTS idx_queued_calls_owner ON queued_calls(owner, status)",
    """
    CREATE TABLE IF NOT EXISTS call_sessions (
        call_sid TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        conversation_id TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        data_json TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_call_sessions_status ON call_sessions(status)",
]

_LIVE_SESSION_STATUSES = ("initiated", "connected", "in_progress")


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def _utcnow_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _row_to_call(row: sqlite3.Row) -> QueuedCall:
    return QueuedCall(
        conversation_id=row["conversation_id"],
        owner=row["owner"],
        destination=row["destination"],
        scheduled_for=_dt(row["scheduled_for"]),
        status=QueueStatus(row["status"]),
        attempt_count=row["attempt_count"],
        max_attempts=row["max_attempts"],
        last_attempt_at=_dt(row["last_attempt_at"]),
        next_retry_at=_dt(row["next_retry_at"]),
        created_at=_dt(row["created_at"]),
        completed_at=_dt(row["completed_at"]),
        error=row["error"] or "",
        seq=row["seq"],
    )


class EngineStore:
    def __init__(self, db_path: str = "data/reflectline.db"):
        self._db_path = db_path
        self._lock = threading.Lock()
        if db_path != ":memory:":
            parent = Path(db_path).parent
            if str(parent):
                parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            if self._db_path != ":memory:":
                cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA busy_timeout=5000")
            for stmt in _CREATE_TABLES_SQL:
                cur.execute(stmt)
        logger.info("Engine store ready at %s", self._db_path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            else:
                cur.execute("COMMIT")

    # ── Queue ──

    @staticmethod
    def _current(cur: sqlite3.Cursor, conversation_id: str) -> Optional[QueuedCall]:
        """The active record for a conversation, else its most recent one."""
        row = cur.execute(
            """
            SELECT * FROM queued_calls WHERE conversation_id = ?
            ORDER BY CASE WHEN status IN ('pending', 'attempting') THEN 0 ELSE 1 END, seq DESC
            LIMIT 1
            """,
            (conversation_id,),
        ).fetchone()
        return _row_to_call(row) if row else None

    def insert_if_inactive(self, call: QueuedCall) -> Result:
        with self._transaction() as cur:
            existing = self._current(cur, call.conversation_id)
            if existing is not None and existing.status.is_active:
                return err(
                    ErrorKind.DUPLICATE_ACTIVE,
                    f"Conversation {call.conversation_id} already has an active call "
                    f"({existing.status.value})",
                )
            cur.execute(
                """
                INSERT INTO queued_calls (
                    conversation_id, owner, destination, scheduled_for, status,
                    attempt_count, max_attempts, last_attempt_at, next_retry_at,
                    created_at, completed_at, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    call.conversation_id, call.owner, call.destination, _iso(call.scheduled_for),
                    call.status.value, call.attempt_count, call.max_attempts,
                    _iso(call.last_attempt_at), _iso(call.next_retry_at),
                    _iso(call.created_at) or _utcnow_iso(), _iso(call.completed_at), call.error,
                ),
            )
            call.seq = cur.lastrowid
        return Result(value=call)

    def mutate(self, conversation_id: str, change: Callable[[QueuedCall], Result]) -> Result:
        """Atomically load a conversation's record, apply ``change``, persist on success."""
        with self._transaction() as cur:
            call = self._current(cur, conversation_id)
            if call is None:
                return err(ErrorKind.NOT_FOUND, f"No queued call for conversation {conversation_id}")
            result = change(call)
            if not result.ok:
                return result
            cur.execute(
                """
                UPDATE queued_calls SET
                    status = ?, attempt_count = ?, last_attempt_at = ?, next_retry_at = ?,
                    completed_at = ?, error = ?
                WHERE seq = ?
                """,
                (
                    call.status.value, call.attempt_count, _iso(call.last_attempt_at),
                    _iso(call.next_retry_at), _iso(call.completed_at), call.error, call.seq,
                ),
            )
        return Result(value=call)

    def get(self, conversation_id: str) -> Optional[QueuedCall]:
        with self._lock:
            return self._current(self._conn.cursor(), conversation_id)

    def due(self, as_of: datetime) -> list[QueuedCall]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM queued_calls
                WHERE status = 'pending' AND COALESCE(next_retry_at, scheduled_for) <= ?
                ORDER BY scheduled_for ASC, seq ASC
                """,
                (_iso(as_of),),
            ).fetchall()
        return [_row_to_call(r) for r in rows]

    def by_status(self, status: QueueStatus) -> list[QueuedCall]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM queued_calls WHERE status = ? ORDER BY seq ASC", (status.value,)
            ).fetchall()
        return [_row_to_call(r) for r in rows]

    def active_for(self, owner: str) -> list[QueuedCall]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM queued_calls
                WHERE owner = ? AND status IN ('pending', 'attempting')
                ORDER BY scheduled_for ASC, seq ASC
                """,
                (owner,),
            ).fetchall()
        return [_row_to_call(r) for r in rows]

    # ── Call sessions ──

    def save_session(self, session: CallSession) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO call_sessions (call_sid, owner, conversation_id, status, data_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(call_sid) DO UPDATE SET
                    status = excluded.status,
                    data_json = excluded.data_json,
                    updated_at = excluded.updated_at
                """,
                (
                    session.call_sid, session.owner, session.conversation_id,
                    session.status.value, json.dumps(session.to_dict()), _utcnow_iso(),
                ),
            )

    def load_session(self, call_sid: str) -> Optional[CallSession]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM call_sessions WHERE call_sid = ?", (call_sid,)
            ).fetchone()
        return CallSession.from_dict(json.loads(row["data_json"])) if row else None

    def live_sessions(self) -> list[CallSession]:
        placeholders = ", ".join("?" for _ in _LIVE_SESSION_STATUSES)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT data_json FROM call_sessions WHERE status IN ({placeholders})",
                _LIVE_SESSION_STATUSES,
            ).fetchall()
        return [CallSession.from_dict(json.loads(r["data_json"])) for r in rows]
