"""SQLite implementation of the storage port.

Every operation is a single SQL statement executed on an autocommit
connection. Driver errors are wrapped in ``StorageError`` so callers never
need to know which backend they are talking to.
"""

import json
import sqlite3
import threading

from storage.records import (
    Conversation,
    Message,
    ModerationLog,
    RateLimitWindow,
    now_ms,
)
from storage.StoragePort import StorageError


class SqliteStorage:
    """Storage port backed by the tables in ``storage.schema``."""

    # Creates the window at count 1, or bumps it by one while under the limit.
    # When the WHERE clause rejects the update no row is returned.
    _INCREMENT_SQL = """
        INSERT INTO rate_limits (user_id, endpoint, window_start, request_count, created_at)
        VALUES (?, ?, ?, 1, ?)
        ON CONFLICT(user_id, endpoint, window_start)
        DO UPDATE SET request_count = request_count + 1
        WHERE rate_limits.request_count < ?
        RETURNING request_count
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection
        self._lock = threading.Lock()

    def _execute(self, sql: str, params: tuple = ()) -> tuple[list[tuple], int]:
        """Run one statement and return ``(rows, rowcount)``.

        Raises:
            StorageError: If the database returns an error.
        """
        with self._lock:
            try:
                cursor = self._connection.cursor()
            except sqlite3.Error as e:
                raise StorageError(f"Storage unavailable: {e}") from e
            try:
                cursor.execute(sql, params)
                rows = cursor.fetchall()
                return rows, cursor.rowcount
            except sqlite3.Error as e:
                raise StorageError(f"Storage operation failed: {e}") from e
            finally:
                cursor.close()

    # ------------------------------------------------------------------
    # Rate limit windows
    # ------------------------------------------------------------------

    def atomic_increment(
        self, subject_id: str, endpoint: str, window_start: int, limit: int
    ) -> int | None:
        rows, _ = self._execute(
            self._INCREMENT_SQL,
            (subject_id, endpoint, window_start, now_ms(), limit),
        )
        return rows[0][0] if rows else None

    def get_window(
        self, subject_id: str, endpoint: str, window_start: int
    ) -> RateLimitWindow | None:
        rows, _ = self._execute(
            "SELECT user_id, endpoint, window_start, request_count FROM rate_limits "
            "WHERE user_id = ? AND endpoint = ? AND window_start = ?",
            (subject_id, endpoint, window_start),
        )
        return RateLimitWindow(*rows[0]) if rows else None

    def delete_before(self, subject_id: str, endpoint: str, cutoff: int) -> int:
        _, count = self._execute(
            "DELETE FROM rate_limits WHERE user_id = ? AND endpoint = ? AND window_start < ?",
            (subject_id, endpoint, cutoff),
        )
        return count

    def delete_windows(self, subject_id: str, endpoint: str) -> int:
        _, count = self._execute(
            "DELETE FROM rate_limits WHERE user_id = ? AND endpoint = ?",
            (subject_id, endpoint),
        )
        return count

    def list_windows(self, subject_id: str, since: int) -> list[RateLimitWindow]:
        rows, _ = self._execute(
            "SELECT user_id, endpoint, window_start, request_count FROM rate_limits "
            "WHERE user_id = ? AND window_start >= ? ORDER BY window_start DESC",
            (subject_id, since),
        )
        return [RateLimitWindow(*row) for row in rows]

    def set_block(self, subject_id: str, endpoint: str, blocked_until: int) -> None:
        self._execute(
            "INSERT INTO rate_limit_blocks (user_id, endpoint, blocked_until) VALUES (?, ?, ?) "
            "ON CONFLICT(user_id, endpoint) DO UPDATE SET blocked_until = excluded.blocked_until",
            (subject_id, endpoint, blocked_until),
        )

    def get_block(self, subject_id: str, endpoint: str, now: int) -> int | None:
        rows, _ = self._execute(
            "SELECT blocked_until FROM rate_limit_blocks "
            "WHERE user_id = ? AND endpoint = ? AND blocked_until > ?",
            (subject_id, endpoint, now),
        )
        return rows[0][0] if rows else None

    # ------------------------------------------------------------------
    # Moderation logs
    # ------------------------------------------------------------------

    def insert_moderation_log(self, log: ModerationLog) -> ModerationLog:
        self._execute(
            "INSERT INTO moderation_logs "
            "(id, message_id, user_id, action, reason, categories, confidence, appealed, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                log.id,
                log.message_id,
                log.subject_id,
                log.action,
                log.reason,
                json.dumps(list(log.categories)),
                log.confidence,
                int(log.appealed),
                log.created_at,
            ),
        )
        return log

    def mark_appealed(self, log_id: str, subject_id: str | None = None) -> bool:
        if subject_id is None:
            _, count = self._execute(
                "UPDATE moderation_logs SET appealed = 1 WHERE id = ?", (log_id,)
            )
        else:
            _, count = self._execute(
                "UPDATE moderation_logs SET appealed = 1 WHERE id = ? AND user_id = ?",
                (log_id, subject_id),
            )
        return count > 0

    def list_moderation_logs(
        self,
        action: str | None = None,
        subject_id: str | None = None,
        since: int | None = None,
        until: int | None = None,
        limit: int = 100,
    ) -> list[ModerationLog]:
        clauses: list[str] = []
        params: list = []
        if action is not None:
            clauses.append("action = ?")
            params.append(action)
        if subject_id is not None:
            clauses.append("user_id = ?")
            params.append(subject_id)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(since)
        if until is not None:
            clauses.append("created_at <= ?")
            params.append(until)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        rows, _ = self._execute(
            "SELECT id, message_id, user_id, action, reason, categories, confidence, "
            f"appealed, created_at FROM moderation_logs {where}"
            "ORDER BY created_at DESC LIMIT ?",
            (*params, limit),
        )
        return [
            ModerationLog(
                id=row[0],
                message_id=row[1],
                subject_id=row[2],
                action=row[3],
                reason=row[4],
                categories=json.loads(row[5]),
                confidence=row[6],
                appealed=bool(row[7]),
                created_at=row[8],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Conversations and messages
    # ------------------------------------------------------------------

    def create_conversation(self, conversation: Conversation) -> Conversation:
        self._execute(
            "INSERT INTO conversations (id, user_id, character_id, title, summary, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                conversation.id,
                conversation.user_id,
                conversation.character_id,
                conversation.title,
                conversation.summary,
                conversation.created_at,
            ),
        )
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        rows, _ = self._execute(
            "SELECT id, user_id, character_id, title, summary, created_at "
            "FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        if not rows:
            return None
        row = rows[0]
        return Conversation(
            id=row[0],
            user_id=row[1],
            character_id=row[2],
            title=row[3],
            summary=row[4],
            created_at=row[5],
        )

    def set_conversation_summary(self, conversation_id: str, summary: str) -> bool:
        _, count = self._execute(
            "UPDATE conversations SET summary = ? WHERE id = ?",
            (summary, conversation_id),
        )
        return count > 0

    def append_message(self, message: Message) -> Message:
        self._execute(
            "INSERT INTO messages "
            "(id, conversation_id, role, content, tokens, metadata, hidden, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                message.id,
                message.conversation_id,
                message.role,
                message.content,
                message.tokens,
                json.dumps(message.metadata or {}),
                int(message.hidden),
                message.created_at,
            ),
        )
        return message

    def list_messages(
        self, conversation_id: str, include_hidden: bool = False
    ) -> list[Message]:
        hidden_clause = "" if include_hidden else "AND hidden = 0 "
        rows, _ = self._execute(
            "SELECT id, conversation_id, role, content, tokens, metadata, hidden, created_at "
            f"FROM messages WHERE conversation_id = ? {hidden_clause}ORDER BY seq ASC",
            (conversation_id,),
        )
        return [
            Message(
                id=row[0],
                conversation_id=row[1],
                role=row[2],
                content=row[3],
                tokens=row[4],
                metadata=json.loads(row[5]) if row[5] else {},
                hidden=bool(row[6]),
                created_at=row[7],
            )
            for row in rows
        ]

    def set_message_hidden(self, message_id: str, hidden: bool = True) -> bool:
        _, count = self._execute(
            "UPDATE messages SET hidden = ? WHERE id = ?", (int(hidden), message_id)
        )
        return count > 0
