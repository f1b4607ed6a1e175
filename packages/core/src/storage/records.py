"""Row types persisted through the storage port."""

import time
import uuid
from dataclasses import dataclass, field


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class RateLimitWindow:
    """Request counter for one (subject, endpoint) fixed window.

    Attributes:
        subject_id: Caller identity (user id or API key).
        endpoint: Logical endpoint name, e.g. ``"chat-send"``.
        window_start: Window boundary in epoch ms, aligned to the window size.
        request_count: Admitted requests so far in this window.
    """

    subject_id: str
    endpoint: str
    window_start: int
    request_count: int = 0


@dataclass
class RateLimitBlock:
    """Explicit block marker for a repeated offender."""

    subject_id: str
    endpoint: str
    blocked_until: int


@dataclass
class ModerationLog:
    """Audit record written for every non-allowed moderation verdict."""

    action: str
    confidence: float
    categories: list[str] = field(default_factory=list)
    reason: str | None = None
    message_id: str | None = None
    subject_id: str | None = None
    appealed: bool = False
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)


@dataclass
class Conversation:
    """A chat between one user and one character."""

    user_id: str
    character_id: str
    title: str | None = None
    summary: str | None = None
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)


@dataclass
class Message:
    """A single message within a conversation.

    Messages are append-only; only ``hidden`` may change after creation.

    Attributes:
        conversation_id: Owning conversation.
        role: One of "user", "assistant" or "system".
        content: Message text.
        tokens: Token estimate stored at creation (0 means unknown).
        metadata: Opaque key/value data (moderation verdicts, summary tags).
        hidden: Redacted from context without being deleted.
        created_at: Creation time in epoch ms.
    """

    conversation_id: str
    role: str
    content: str
    tokens: int = 0
    metadata: dict = field(default_factory=dict)
    hidden: bool = False
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)

    def to_api_dict(self) -> dict:
        """Serialize into the ``{role, content}`` shape the chat model expects."""
        return {"role": self.role, "content": self.content}
