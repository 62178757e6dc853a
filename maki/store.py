"""SQLite-backed thread store."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .errors import PersistenceError
from .history import Message

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    title TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    thread_id TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    tool_calls TEXT,
    tool_call_id TEXT,
    tool_name TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id, id);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ThreadSummary:
    id: str
    title: str | None
    created_at: str
    updated_at: str
    message_count: int

    @property
    def label(self) -> str:
        return self.title or "Untitled thread"


@dataclass
class StoredThread:
    id: str
    title: str | None
    created_at: str
    messages: list[Message] = field(default_factory=list)


class ThreadStore:
    """Persistent threads and their ordered messages.

    Every public method opens its own connection and runs in a single
    transaction, so a write either lands completely or not at all. Methods
    are blocking; async callers run them with ``asyncio.to_thread``.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(self.path, timeout=10)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open thread database {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"thread database error: {e}") from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    # -- reads ----------------------------------------------------------------

    def list_threads(self) -> list[ThreadSummary]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT t.id, t.title, t.created_at, t.updated_at,
                       COUNT(m.id) AS message_count
                FROM threads t LEFT JOIN messages m ON m.thread_id = t.id
                GROUP BY t.id
                ORDER BY t.updated_at DESC, t.rowid DESC
                """
            ).fetchall()
        return [
            ThreadSummary(
                id=r["id"],
                title=r["title"],
                created_at=r["created_at"],
                updated_at=r["updated_at"],
                message_count=r["message_count"],
            )
            for r in rows
        ]

    def get_thread(self, thread_id: str) -> StoredThread | None:
        """Return the thread with all messages in insertion order, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, title, created_at FROM threads WHERE id = ?", (thread_id,)
            ).fetchone()
            if row is None:
                return None
            msg_rows = conn.execute(
                "SELECT role, content, tool_calls, tool_call_id, tool_name"
                " FROM messages WHERE thread_id = ? ORDER BY id",
                (thread_id,),
            ).fetchall()

        messages = []
        for r in msg_rows:
            extra = {}
            if r["tool_calls"]:
                try:
                    extra["tool_calls"] = json.loads(r["tool_calls"])
                except json.JSONDecodeError:
                    logger.warning("thread %s: unreadable tool_calls column, ignored", thread_id)
            if r["tool_call_id"] is not None:
                extra["tool_call_id"] = r["tool_call_id"]
            if r["tool_name"] is not None:
                extra["tool_name"] = r["tool_name"]
            messages.append(Message.from_stored(r["role"], r["content"], extra))
        return StoredThread(
            id=row["id"], title=row["title"], created_at=row["created_at"], messages=messages
        )

    # -- writes ---------------------------------------------------------------

    def create_thread(self, title: str | None = None) -> str:
        thread_id = uuid.uuid4().hex
        now = _now()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO threads (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (thread_id, title, now, now),
            )
        logger.debug("created thread %s", thread_id)
        return thread_id

    def add_message(
        self, thread_id: str, role: str, content: str, extra: dict | None = None
    ) -> None:
        self.add_messages(thread_id, [(role, content, extra)])

    def add_messages(self, thread_id: str, entries: list[tuple[str, str, dict | None]]) -> None:
        """Append several messages in one transaction."""
        if not entries:
            return
        now = _now()
        with self._connect() as conn:
            self._require_thread(conn, thread_id)
            for role, content, extra in entries:
                extra = extra or {}
                tool_calls = extra.get("tool_calls")
                conn.execute(
                    "INSERT INTO messages"
                    " (thread_id, role, content, tool_calls, tool_call_id, tool_name, created_at)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        thread_id,
                        role,
                        content or "",
                        json.dumps(tool_calls) if tool_calls else None,
                        extra.get("tool_call_id"),
                        extra.get("tool_name"),
                        now,
                    ),
                )
            conn.execute("UPDATE threads SET updated_at = ? WHERE id = ?", (now, thread_id))

    def save_message(self, thread_id: str, message: Message) -> None:
        role, content, extra = message.to_stored()
        self.add_message(thread_id, role, content, extra)

    def truncate_messages(self, thread_id: str, keep: int) -> int:
        """Delete every message after the first ``keep``; return how many went."""
        if keep < 0:
            raise ValueError("keep must not be negative")
        with self._connect() as conn:
            self._require_thread(conn, thread_id)
            cur = conn.execute(
                "DELETE FROM messages WHERE thread_id = ? AND id NOT IN"
                " (SELECT id FROM messages WHERE thread_id = ? ORDER BY id LIMIT ?)",
                (thread_id, thread_id, keep),
            )
            removed = cur.rowcount
            if removed:
                conn.execute("UPDATE threads SET updated_at = ? WHERE id = ?", (_now(), thread_id))
        logger.debug("thread %s: removed %d stored message(s)", thread_id, removed)
        return removed

    def update_thread_title(self, thread_id: str, title: str) -> None:
        with self._connect() as conn:
            self._require_thread(conn, thread_id)
            conn.execute(
                "UPDATE threads SET title = ?, updated_at = ? WHERE id = ?",
                (title, _now(), thread_id),
            )

    def delete_thread(self, thread_id: str) -> None:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
            if cur.rowcount == 0:
                raise PersistenceError(f"thread {thread_id} not found")
        logger.debug("deleted thread %s", thread_id)

    @staticmethod
    def _require_thread(conn, thread_id: str) -> None:
        if conn.execute("SELECT 1 FROM threads WHERE id = ?", (thread_id,)).fetchone() is None:
            raise PersistenceError(f"thread {thread_id} not found")
