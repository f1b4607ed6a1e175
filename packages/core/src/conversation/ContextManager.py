"""Conversation history and token-bounded context assembly.

The context manager owns the message history of each conversation and
produces, for every model call, a chronologically ordered suffix of that
history that fits the token budget. When truncation leaves almost nothing,
older turns are folded into one synthetic summary message.
"""

import logging

from conversation.models import (
    ContextInfo,
    ContextWindow,
    ConversationContext,
    PreparedContext,
    TokenLimits,
)
from conversation.summary import create_conversation_summary
from conversation.TokenEstimator import HeuristicTokenEstimator, TokenEstimator
from storage.records import Conversation, Message, now_ms
from storage.StoragePort import StorageError, StoragePort

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant", "system")

# Below this many retained messages a truncated window gets a summary.
SUMMARY_THRESHOLD = 3
# No summary is attempted with less budget than this left.
MIN_SUMMARY_TOKENS = 50
# Most recent excluded turns fed to the summarizer.
MAX_SUMMARIZED_MESSAGES = 10
# Messages left out of the stored conversation summary.
KEEP_RECENT_MESSAGES = 5

SUMMARY_PREFIX = "Previous conversation summary: "


def needs_summarization(message_count: int, total_tokens: int) -> bool:
    return message_count > 20 or total_tokens > 3000


def calculate_efficiency(window: ContextWindow, limits: TokenLimits) -> float:
    """Share of the full context budget used by the window."""
    if limits.max_context_tokens <= 0:
        return 0.0
    return window.total_tokens / limits.max_context_tokens


def format_context_info(context: ConversationContext) -> str:
    return (
        f"Context: {len(context.messages)} messages, {context.total_tokens} tokens, "
        f"Character: {context.character_id}"
    )


def validate_message(
    content: str,
    limits: TokenLimits,
    estimator: TokenEstimator | None = None,
) -> tuple[bool, str | None]:
    """Check a message before it is added.

    Returns:
        ``(valid, reason)``; ``reason`` is None when valid.
    """
    if not content or not content.strip():
        return False, "Empty content"
    estimator = estimator or HeuristicTokenEstimator()
    if estimator.estimate(content) > limits.max_message_tokens:
        return False, "Message too long"
    return True, None


class ContextManager:
    """Builds model-ready context from persisted conversation history."""

    def __init__(
        self,
        storage: StoragePort,
        token_limits: TokenLimits | None = None,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self._storage = storage
        self._limits = token_limits or TokenLimits()
        self._estimator = estimator or HeuristicTokenEstimator()

    @property
    def token_limits(self) -> TokenLimits:
        return self._limits

    def estimate_tokens(self, text: str) -> int:
        return self._estimator.estimate(text)

    def message_tokens(self, message: Message) -> int:
        """Stored estimate, falling back to estimating the content."""
        return message.tokens or self._estimator.estimate(message.content)

    def calculate_total_tokens(self, messages: list[Message]) -> int:
        return sum(self.message_tokens(m) for m in messages)

    # ------------------------------------------------------------------
    # Conversations and messages
    # ------------------------------------------------------------------

    def create_conversation(
        self, user_id: str, character_id: str, title: str | None = None
    ) -> Conversation | None:
        try:
            return self._storage.create_conversation(
                Conversation(user_id=user_id, character_id=character_id, title=title)
            )
        except StorageError:
            logger.exception("Error creating conversation for %s", user_id)
            return None

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        try:
            return self._storage.get_conversation(conversation_id)
        except StorageError:
            logger.exception("Error getting conversation %s", conversation_id)
            return None

    def add_message_to_context(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: dict | None = None,
        message_id: str | None = None,
    ) -> Message | None:
        """Append a message to the conversation.

        Args:
            conversation_id: Target conversation.
            role: "user", "assistant" or "system".
            content: Message text, stored verbatim.
            metadata: Opaque key/value data kept with the message.
            message_id: Id to store the message under; generated when omitted.

        Returns:
            The stored message, or None if storage failed.

        Raises:
            ValueError: If ``role`` is not a known role.
        """
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role!r}")

        message = Message(
            conversation_id=conversation_id,
            role=role,
            content=content,
            tokens=self._estimator.estimate(content),
            metadata=dict(metadata or {}),
        )
        if message_id:
            message.id = message_id
        try:
            return self._storage.append_message(message)
        except StorageError:
            logger.exception("Error adding message to %s", conversation_id)
            return None

    def list_messages(
        self, conversation_id: str, include_hidden: bool = False
    ) -> list[Message]:
        try:
            return self._storage.list_messages(conversation_id, include_hidden)
        except StorageError:
            logger.exception("Error listing messages for %s", conversation_id)
            return []

    def hide_message(self, message_id: str) -> bool:
        """Redact a message from future context without deleting it."""
        try:
            return self._storage.set_message_hidden(message_id, True)
        except StorageError:
            logger.exception("Error hiding message %s", message_id)
            return False

    def _load(self, conversation_id: str) -> tuple[Conversation, list[Message]] | None:
        try:
            conversation = self._storage.get_conversation(conversation_id)
            if conversation is None:
                return None
            return conversation, self._storage.list_messages(conversation_id)
        except StorageError:
            logger.exception("Error loading conversation %s", conversation_id)
            return None

    def get_conversation_context(
        self,
        conversation_id: str,
        system_prompt: str = "",
        limits: TokenLimits | None = None,
    ) -> ConversationContext | None:
        """Load the visible history and its context window.

        Returns:
            None for unknown conversations or when storage is unavailable.
        """
        loaded = self._load(conversation_id)
        if loaded is None:
            return None
        conversation, messages = loaded

        window = self.create_context_window(
            messages, limits, stored_summary=conversation.summary
        )
        return ConversationContext(
            conversation_id=conversation_id,
            character_id=conversation.character_id,
            messages=messages,
            total_tokens=self.calculate_total_tokens(messages),
            context_window=window.messages,
            system_prompt=system_prompt,
            summary=conversation.summary,
        )

    # ------------------------------------------------------------------
    # Windowing
    # ------------------------------------------------------------------

    def create_context_window(
        self,
        messages: list[Message],
        limits: TokenLimits | None = None,
        stored_summary: str | None = None,
    ) -> ContextWindow:
        """Select the newest messages that fit the available budget.

        Walks from newest to oldest and stops at the first message that
        does not fit. If fewer than ``SUMMARY_THRESHOLD`` messages survive a
        truncation, a summary of the excluded turns is prepended when it
        fits in what is left of the budget.
        """
        limits = limits or self._limits
        available = limits.available
        ordered = sorted(messages, key=lambda m: m.created_at)

        kept: list[Message] = []
        total = 0
        truncated = False
        for message in reversed(ordered):
            tokens = self.message_tokens(message)
            if total + tokens > available:
                truncated = True
                break
            kept.append(message)
            total += tokens
        kept.reverse()

        summary_used = False
        if truncated and len(kept) < SUMMARY_THRESHOLD:
            excluded = ordered[: len(ordered) - len(kept)]
            summary_message = self._summary_message(
                excluded, available - total, stored_summary, kept
            )
            if summary_message is not None:
                kept.insert(0, summary_message)
                total += summary_message.tokens
                summary_used = True

        return ContextWindow(
            messages=kept,
            total_tokens=total,
            truncated=truncated,
            summary_used=summary_used,
        )

    def _summary_message(
        self,
        excluded: list[Message],
        budget: int,
        stored_summary: str | None,
        kept: list[Message],
    ) -> Message | None:
        if budget < MIN_SUMMARY_TOKENS:
            return None

        turns = [m for m in excluded if m.role != "system"][-MAX_SUMMARIZED_MESSAGES:]
        try:
            summary = create_conversation_summary(turns)
        except Exception:  # noqa: BLE001
            logger.exception("Summarization failed; continuing without summary")
            summary = ""
        summary = summary or stored_summary
        if not summary:
            return None

        content = SUMMARY_PREFIX + summary
        tokens = self._estimator.estimate(content)
        if tokens > budget:
            return None

        source = kept[0] if kept else excluded[-1]
        return Message(
            id="summary",
            conversation_id=source.conversation_id,
            role="system",
            content=content,
            tokens=tokens,
            metadata={"isSummary": True},
            created_at=kept[0].created_at if kept else now_ms(),
        )

    def prepare_ai_context(
        self,
        conversation_id: str,
        system_prompt: str,
        limits: TokenLimits | None = None,
    ) -> PreparedContext | None:
        """Build the ordered ``{role, content}`` list for the chat model.

        The system prompt comes first (with the summary appended when one
        was used), followed by the visible user/assistant turns of the
        window in chronological order.

        Returns:
            None if the conversation cannot be loaded.
        """
        loaded = self._load(conversation_id)
        if loaded is None:
            return None
        conversation, messages = loaded

        try:
            window = self.create_context_window(
                messages, limits, stored_summary=conversation.summary
            )
        except Exception:  # noqa: BLE001
            logger.exception("Error building context window for %s", conversation_id)
            return None

        system_content = system_prompt
        for message in window.messages:
            if message.metadata.get("isSummary"):
                system_content = (
                    f"{system_prompt}\n\n{message.content}" if system_prompt else message.content
                )
                break

        ai_messages = [{"role": "system", "content": system_content}]
        ai_messages.extend(
            m.to_api_dict()
            for m in window.messages
            if not m.hidden and m.role != "system"
        )

        return PreparedContext(
            messages=ai_messages,
            context_info=ContextInfo(
                total_tokens=window.total_tokens,
                truncated=window.truncated,
                message_count=len(window.messages),
                summary_used=window.summary_used,
            ),
        )

    def update_conversation_summary(self, conversation_id: str) -> bool:
        """Store a summary of all but the most recent messages.

        Only long conversations are summarized.

        Returns:
            True if a summary was written.
        """
        loaded = self._load(conversation_id)
        if loaded is None:
            return False
        _, messages = loaded

        if not needs_summarization(len(messages), self.calculate_total_tokens(messages)):
            return False

        older = [m for m in messages[:-KEEP_RECENT_MESSAGES] if m.role != "system"]
        summary = create_conversation_summary(older)
        if not summary:
            return False

        try:
            return self._storage.set_conversation_summary(conversation_id, summary)
        except StorageError:
            logger.exception("Error updating summary for %s", conversation_id)
            return False
