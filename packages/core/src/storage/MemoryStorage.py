"""Process-local implementation of the storage port.

Holds every table in plain dicts behind one lock. Used by the test suite
and whenever ``CHAT_DB_PATH`` is unset; it gives the same atomicity guarantee
as ``SqliteStorage`` for threads within a single process.
"""

import copy
import threading

from storage.records import (
    Conversation,
    Message,
    ModerationLog,
    RateLimitWindow,
)
from storage.StoragePort import StorageError


class MemoryStorage:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: dict[tuple[str, str, int], RateLimitWindow] = {}
        self._blocks: dict[tuple[str, str], int] = {}
        self._logs: dict[str, ModerationLog] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._message_index: dict[str, Message] = {}

    # -- rate limit windows ---------------------------------------------------

    def atomic_increment(
        self, subject_id: str, endpoint: str, window_start: int, limit: int
    ) -> int | None:
        key = (subject_id, endpoint, window_start)
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = RateLimitWindow(subject_id, endpoint, window_start, 1)
                self._windows[key] = window
                return 1
            if window.request_count >= limit:
                return None
            window.request_count += 1
            return window.request_count

    def get_window(
        self, subject_id: str, endpoint: str, window_start: int
    ) -> RateLimitWindow | None:
        with self._lock:
            window = self._windows.get((subject_id, endpoint, window_start))
            return copy.copy(window) if window else None

    def delete_before(self, subject_id: str, endpoint: str, cutoff: int) -> int:
        with self._lock:
            stale = [
                key
                for key in self._windows
                if key[0] == subject_id and key[1] == endpoint and key[2] < cutoff
            ]
            for key in stale:
                del self._windows[key]
            return len(stale)

    def delete_windows(self, subject_id: str, endpoint: str) -> int:
        with self._lock:
            keys = [k for k in self._windows if k[0] == subject_id and k[1] == endpoint]
            for key in keys:
                del self._windows[key]
            return len(keys)

    def list_windows(self, subject_id: str, since: int) -> list[RateLimitWindow]:
        with self._lock:
            windows = [
                copy.copy(w)
                for (subject, _, start), w in self._windows.items()
                if subject == subject_id and start >= since
            ]
        return sorted(windows, key=lambda w: w.window_start, reverse=True)

    def set_block(self, subject_id: str, endpoint: str, blocked_until: int) -> None:
        with self._lock:
            self._blocks[(subject_id, endpoint)] = blocked_until

    def get_block(self, subject_id: str, endpoint: str, now: int) -> int | None:
        with self._lock:
            until = self._blocks.get((subject_id, endpoint))
            return until if until is not None and until > now else None

    # -- moderation logs ------------------------------------------------------

    def insert_moderation_log(self, log: ModerationLog) -> ModerationLog:
        with self._lock:
            self._logs[log.id] = copy.deepcopy(log)
        return log

    def mark_appealed(self, log_id: str, subject_id: str | None = None) -> bool:
        with self._lock:
            log = self._logs.get(log_id)
            if log is None or (subject_id is not None and log.subject_id != subject_id):
                return False
            log.appealed = True
            return True

    def list_moderation_logs(
        self,
        action: str | None = None,
        subject_id: str | None = None,
        since: int | None = None,
        until: int | None = None,
        limit: int = 100,
    ) -> list[ModerationLog]:
        with self._lock:
            logs = [
                copy.deepcopy(log)
                for log in self._logs.values()
                if (action is None or log.action == action)
                and (subject_id is None or log.subject_id == subject_id)
                and (since is None or log.created_at >= since)
                and (until is None or log.created_at <= until)
            ]
        logs.sort(key=lambda log: log.created_at, reverse=True)
        return logs[:limit]

    # -- conversations and messages -------------------------------------------

    def create_conversation(self, conversation: Conversation) -> Conversation:
        with self._lock:
            if conversation.id in self._conversations:
                raise StorageError(f"Conversation {conversation.id} already exists")
            self._conversations[conversation.id] = copy.deepcopy(conversation)
            self._messages[conversation.id] = []
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return copy.deepcopy(conversation) if conversation else None

    def set_conversation_summary(self, conversation_id: str, summary: str) -> bool:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return False
            conversation.summary = summary
            return True

    def append_message(self, message: Message) -> Message:
        with self._lock:
            if message.conversation_id not in self._conversations:
                raise StorageError(
                    f"Unknown conversation {message.conversation_id}"
                )
            stored = copy.deepcopy(message)
            self._messages[message.conversation_id].append(stored)
            self._message_index[message.id] = stored
        return message

    def list_messages(
        self, conversation_id: str, include_hidden: bool = False
    ) -> list[Message]:
        with self._lock:
            return [
                copy.deepcopy(m)
                for m in self._messages.get(conversation_id, [])
                if include_hidden or not m.hidden
            ]

    def set_message_hidden(self, message_id: str, hidden: bool = True) -> bool:
        with self._lock:
            message = self._message_index.get(message_id)
            if message is None:
                return False
            message.hidden = hidden
            return True
