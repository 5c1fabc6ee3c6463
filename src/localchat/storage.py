"""SQLite storage for conversations and their messages."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .config import DEFAULT_TITLE
from .errors import NotFound, StorageError, StorageInitError, StorageWriteError
from .models import Conversation, ConversationSummary, Message

logger = logging.getLogger(__name__)

_UTC_NOW = "(strftime('%Y-%m-%d %H:%M:%f', 'now'))"

SCHEMA = f"""
    CREATE TABLE IF NOT EXISTS conversations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        model TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT {_UTC_NOW}
    );

    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        conversation_id INTEGER NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
        content TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT {_UTC_NOW},
        FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_messages_conv
        ON messages(conversation_id, created_at);
"""


class ConversationStore:
    """SQLite-backed storage for conversations and messages.

    Every operation opens its own connection and closes it before returning,
    so no lock is held between calls and each call is its own transaction.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    @contextmanager
    def _connect(
        self, action: str = "read chat history", error: type[StorageError] = StorageError
    ) -> Iterator[sqlite3.Connection]:
        """Yield a connection that commits on success and rolls back on error.

        The connection is closed on every exit path. ``sqlite3`` errors are
        re-raised as ``error``.
        """
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as exc:
            raise error(f"Failed to {action}: {exc}") from exc
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.warning("Failed to %s: %s", action, exc)
            raise error(f"Failed to {action}: {exc}") from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _writing(self, action: str):
        return self._connect(action, StorageWriteError)

    def initialize(self):
        """Create the data directory and tables if they do not exist yet."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageInitError(
                f"Failed to create data directory {self.db_path.parent}: {exc}"
            ) from exc
        with self._connect("initialize the database", StorageInitError) as conn:
            conn.executescript(SCHEMA)
        logger.debug("Database ready at %s", self.db_path)

    # -- Conversations -------------------------------------------------------

    def create_conversation(self, model: str) -> int:
        with self._writing("create conversation") as conn:
            cur = conn.execute(
                "INSERT INTO conversations (title, model) VALUES (?, ?)",
                (DEFAULT_TITLE, model),
            )
            conversation_id = int(cur.lastrowid)
        logger.debug("Created conversation %s (model=%s)", conversation_id, model)
        return conversation_id

    def list_conversations(self) -> list[ConversationSummary]:
        """List conversations, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT id, title, created_at FROM conversations
                   ORDER BY created_at DESC, id DESC"""
            ).fetchall()
        return [ConversationSummary(**dict(r)) for r in rows]

    def get_conversation(self, conversation_id: int) -> Conversation:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, title, model, created_at FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        if row is None:
            raise NotFound(conversation_id)
        return Conversation(**dict(row))

    def get_conversation_model(self, conversation_id: int) -> str:
        return self.get_conversation(conversation_id).model

    def latest_conversation_id(self) -> int | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id FROM conversations ORDER BY created_at DESC, id DESC LIMIT 1"
            ).fetchone()
        return row["id"] if row else None

    def rename_conversation(self, conversation_id: int, title: str):
        with self._writing("rename conversation") as conn:
            cur = conn.execute(
                "UPDATE conversations SET title = ? WHERE id = ?",
                (title, conversation_id),
            )
        if cur.rowcount == 0:
            raise NotFound(conversation_id)

    def set_conversation_model(self, conversation_id: int, model: str):
        with self._writing("update conversation model") as conn:
            cur = conn.execute(
                "UPDATE conversations SET model = ? WHERE id = ?",
                (model, conversation_id),
            )
        if cur.rowcount == 0:
            raise NotFound(conversation_id)

    def delete_conversation(self, conversation_id: int):
        """Delete a conversation and all of its messages as one transaction."""
        with self._writing("delete conversation") as conn:
            conn.execute(
                "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,)
            )
            cur = conn.execute(
                "DELETE FROM conversations WHERE id = ?", (conversation_id,)
            )
            if cur.rowcount == 0:
                # Rolls back the (empty) message delete along with it
                raise NotFound(conversation_id)
        logger.debug("Deleted conversation %s", conversation_id)

    # -- Messages ------------------------------------------------------------

    def append_message(self, conversation_id: int, role: str, content: str) -> int:
        with self._writing("append message") as conn:
            cur = conn.execute(
                "INSERT INTO messages (conversation_id, role, content) VALUES (?, ?, ?)",
                (conversation_id, role, content),
            )
            message_id = int(cur.lastrowid)
        logger.debug(
            "Appended %s message %s to conversation %s", role, message_id, conversation_id
        )
        return message_id

    def list_messages(self, conversation_id: int) -> list[Message]:
        """Messages of a conversation in creation order, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT id, conversation_id, role, content, created_at
                   FROM messages WHERE conversation_id = ?
                   ORDER BY created_at ASC, id ASC""",
                (conversation_id,),
            ).fetchall()
        return [Message(**dict(r)) for r in rows]

    def count_messages(self, conversation_id: int) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()[0]

    def get_stats(self) -> dict:
        """Get overall database statistics."""
        with self._connect() as conn:
            conv_count = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
            msg_count = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
            date_range = conn.execute(
                "SELECT MIN(created_at), MAX(created_at) FROM conversations"
            ).fetchone()
            models = conn.execute(
                """SELECT model, COUNT(*) AS cnt FROM conversations
                   GROUP BY model ORDER BY cnt DESC LIMIT 10"""
            ).fetchall()

        return {
            "total_conversations": conv_count,
            "total_messages": msg_count,
            "date_range_start": _format_date(date_range[0]),
            "date_range_end": _format_date(date_range[1]),
            "top_models": [{"model": r[0], "count": r[1]} for r in models],
            "avg_messages_per_conversation": round(msg_count / conv_count, 1) if conv_count else 0,
        }


def _format_date(ts: str | None) -> str | None:
    if ts is None:
        return None
    return ts[:10]
