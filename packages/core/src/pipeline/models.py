"""Data models for one chat turn moving through the pipeline."""

from dataclasses import dataclass

from admission.models import RateLimitResult
from conversation.models import PreparedContext
from moderation.models import ModerationResult
from storage.records import Conversation, Message


@dataclass
class Turn:
    """A user message that has been admitted, moderated and persisted.

    Everything on a Turn is final: if the model call fails afterwards the
    user message stays in the history and only the reply is skipped.

    Attributes:
        conversation: The conversation the message belongs to.
        user_message: The stored user message (None if storage was down).
        system_prompt: Persona prompt used for this turn.
        prepared: Context handed to the model.
        rate_limit: The admission decision.
        moderation: The moderation verdict (allowed or flagged).
    """

    conversation: Conversation
    user_message: Message | None
    system_prompt: str
    prepared: PreparedContext
    rate_limit: RateLimitResult
    moderation: ModerationResult


@dataclass
class TurnResult:
    """The completed turn returned to callers."""

    conversation_id: str
    response: str
    turn: Turn
    assistant_message: Message | None = None
