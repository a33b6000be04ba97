"""
SQLite storage for conversations, messages and stream handles.
This is the source of truth for who owns what and what was said.
Single portable file. Query with SQL.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from chatrelay.storage.models import Conversation, Document, Message, StreamHandle

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    visibility TEXT NOT NULL DEFAULT 'private',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    parts TEXT NOT NULL,
    attachments TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE TABLE IF NOT EXISTS streams (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE TABLE IF NOT EXISTS documents (
    id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'text',
    content TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    PRIMARY KEY (id, created_at)
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_created
    ON messages(created_at);
CREATE INDEX IF NOT EXISTS idx_streams_conversation
    ON streams(conversation_id, created_at);
CREATE INDEX IF NOT EXISTS idx_conversations_user
    ON conversations(user_id);
"""


def _conversation_from_row(row) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        visibility=row["visibility"],
        created_at=row["created_at"],
    )


def _message_from_row(row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        parts=json.loads(row["parts"]),
        attachments=json.loads(row["attachments"]),
        created_at=row["created_at"],
    )


class SQLiteStore:
    """Thread-safe SQLite conversation store (one connection per call)."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ─ Conversations ──────────────────────────────────────────────────────

    def save_conversation(self, conv: Conversation):
        """Create a conversation. Raises sqlite3.IntegrityError if the id exists."""
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO conversations (id, user_id, title, visibility, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (conv.id, conv.user_id, conv.title, conv.visibility, conv.created_at),
            )
        logger.debug("Stored conversation %s (user=%s)", conv.id, conv.user_id)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        return _conversation_from_row(row) if row else None

    def delete_conversation(self, conversation_id: str) -> Conversation | None:
        """Delete a conversation with its messages and stream handles."""
        conv = self.get_conversation(conversation_id)
        if conv is None:
            return None
        with self._connect() as conn:
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            conn.execute("DELETE FROM streams WHERE conversation_id = ?", (conversation_id,))
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        logger.info("Deleted conversation %s", conversation_id)
        return conv

    # ─ Messages ───────────────────────────────────────────────────────────

    def save_messages(self, messages: list[Message]):
        """
        Insert messages in one transaction.
        Duplicate ids raise sqlite3.IntegrityError and nothing is written.
        """
        with self._connect() as conn:
            conn.executemany(
                """INSERT INTO messages
                   (id, conversation_id, role, parts, attachments, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (m.id, m.conversation_id, m.role,
                     json.dumps(m.parts, ensure_ascii=False),
                     json.dumps(m.attachments, ensure_ascii=False),
                     m.created_at)
                    for m in messages
                ],
            )
        for m in messages:
            logger.debug("Stored message %s (role=%s, conv=%s)", m.id, m.role, m.conversation_id)

    def get_message(self, message_id: str) -> Message | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM messages WHERE id = ?",
                (message_id,),
            ).fetchone()
        return _message_from_row(row) if row else None

    def get_messages(self, conversation_id: str) -> list[Message]:
        """All messages for a conversation, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM messages WHERE conversation_id = ?
                   ORDER BY created_at, rowid""",
                (conversation_id,),
            ).fetchall()
        return [_message_from_row(r) for r in rows]

    def count_user_messages(self, user_id: str, hours: int = 24) -> int:
        """User-role messages sent by user_id in their own chats in the trailing window."""
        cutoff = (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat(timespec="microseconds")
        with self._connect() as conn:
            return conn.execute(
                """SELECT COUNT(*) FROM messages m
                   JOIN conversations c ON c.id = m.conversation_id
                   WHERE c.user_id = ?
                     AND m.role = 'user'
                     AND m.created_at >= ?""",
                (user_id, cutoff),
            ).fetchone()[0]

    # ─ Stream handles ─────────────────────────────────────────────────────

    def create_stream(self, handle: StreamHandle):
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO streams (id, conversation_id, created_at) VALUES (?, ?, ?)",
                (handle.id, handle.conversation_id, handle.created_at),
            )
        logger.debug("Stored stream %s (conv=%s)", handle.id, handle.conversation_id)

    def get_stream_ids(self, conversation_id: str) -> list[str]:
        """Stream handle ids for a conversation, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT id FROM streams WHERE conversation_id = ?
                   ORDER BY created_at, rowid""",
                (conversation_id,),
            ).fetchall()
        return [r["id"] for r in rows]

    # ─ Documents ──────────────────────────────────────────────────────────

    def save_document(self, doc: Document):
        """Append a document version (id + created_at is the key)."""
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO documents (id, user_id, title, kind, content, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (doc.id, doc.user_id, doc.title, doc.kind, doc.content, doc.created_at),
            )
        logger.debug("Stored document %s (kind=%s)", doc.id, doc.kind)

    def get_stats(self) -> dict:
        """Counts of stored records."""
        with self._connect() as conn:
            conv_count = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
            msg_count = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
            stream_count = conn.execute("SELECT COUNT(*) FROM streams").fetchone()[0]
            doc_count = conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
        return {
            "conversations": conv_count,
            "messages": msg_count,
            "streams": stream_count,
            "documents": doc_count,
        }
