"""Narrow persistence interface shared by the rate limiter, moderator and
context manager.

Each backend implements this protocol once. Components only ever see the
protocol, so every one of them can be exercised against ``MemoryStorage``.
"""

from typing import Protocol

from storage.records import (
    Conversation,
    Message,
    ModerationLog,
    RateLimitWindow,
)


class StorageError(RuntimeError):
    """Any failure inside a storage backend.

    Callers treat this as a signal to degrade to a safe default, never as
    something to surface to the end user.
    """


class StoragePort(Protocol):
    # -- rate limit windows ---------------------------------------------------

    def atomic_increment(
        self, subject_id: str, endpoint: str, window_start: int, limit: int
    ) -> int | None:
        """Create-or-increment the window counter in one atomic step.

        The counter is only incremented while it is below ``limit``.

        Returns:
            The post-increment count, or None if the window was already full.
        """
        ...

    def get_window(
        self, subject_id: str, endpoint: str, window_start: int
    ) -> RateLimitWindow | None: ...

    def delete_before(self, subject_id: str, endpoint: str, cutoff: int) -> int:
        """Delete windows for the key that started before ``cutoff``."""
        ...

    def delete_windows(self, subject_id: str, endpoint: str) -> int: ...

    def list_windows(self, subject_id: str, since: int) -> list[RateLimitWindow]: ...

    def set_block(self, subject_id: str, endpoint: str, blocked_until: int) -> None: ...

    def get_block(self, subject_id: str, endpoint: str, now: int) -> int | None:
        """Return the block expiry if a live marker exists."""
        ...

    # -- moderation logs ------------------------------------------------------

    def insert_moderation_log(self, log: ModerationLog) -> ModerationLog: ...

    def mark_appealed(self, log_id: str, subject_id: str | None = None) -> bool:
        """Set ``appealed``; with ``subject_id``, only on that subject's entries."""
        ...

    def list_moderation_logs(
        self,
        action: str | None = None,
        subject_id: str | None = None,
        since: int | None = None,
        until: int | None = None,
        limit: int = 100,
    ) -> list[ModerationLog]: ...

    # -- conversations and messages -------------------------------------------

    def create_conversation(self, conversation: Conversation) -> Conversation: ...

    def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    def set_conversation_summary(self, conversation_id: str, summary: str) -> bool: ...

    def append_message(self, message: Message) -> Message: ...

    def list_messages(
        self, conversation_id: str, include_hidden: bool = False
    ) -> list[Message]:
        """Return messages in insertion order."""
        ...

    def set_message_hidden(self, message_id: str, hidden: bool = True) -> bool: ...
