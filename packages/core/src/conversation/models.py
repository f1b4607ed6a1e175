"""Derived (non-persisted) types used while assembling model context."""

from dataclasses import dataclass, field

from storage.records import Message


@dataclass(frozen=True)
class TokenLimits:
    """Token budget for one model call.

    The history window gets what is left after reserving room for the
    system prompt and the model's response.
    """

    max_context_tokens: int = 4000
    max_message_tokens: int = 1000
    system_prompt_tokens: int = 500
    response_tokens: int = 500

    @property
    def available(self) -> int:
        return max(
            0,
            self.max_context_tokens - self.system_prompt_tokens - self.response_tokens,
        )


@dataclass
class ContextWindow:
    """Chronologically ordered, token-bounded suffix of a conversation.

    ``messages`` may start with one synthetic system message tagged
    ``metadata["isSummary"]``.
    """

    messages: list[Message]
    total_tokens: int
    truncated: bool = False
    summary_used: bool = False


@dataclass
class ConversationContext:
    conversation_id: str
    character_id: str
    messages: list[Message]
    total_tokens: int
    context_window: list[Message]
    system_prompt: str = ""
    summary: str | None = None


@dataclass
class ContextInfo:
    total_tokens: int
    truncated: bool
    message_count: int
    summary_used: bool = False


@dataclass
class PreparedContext:
    """Exactly what is handed to the chat model, plus observability data."""

    messages: list[dict]
    context_info: ContextInfo = field(
        default_factory=lambda: ContextInfo(0, False, 0)
    )
