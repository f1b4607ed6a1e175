"""Pydantic request/response models for the API."""

from pydantic import BaseModel


class CreateConversationRequest(BaseModel):
    """Body for creating a conversation."""

    character_id: str
    title: str | None = None


class ChatRequest(BaseModel):
    """Body for the chat endpoints."""

    message: str


class ContextInfoSchema(BaseModel):
    total_tokens: int
    truncated: bool
    message_count: int
    summary_used: bool = False


class ModerationSchema(BaseModel):
    moderated: bool
    action: str
    categories: list[str]


class ChatResponse(BaseModel):
    """Response from the chat endpoint."""

    conversation_id: str
    response: str
    remaining_requests: int
    moderation: ModerationSchema
    context_info: ContextInfoSchema


class MessageSchema(BaseModel):
    """A single message within a conversation."""

    id: str
    role: str
    content: str
    tokens: int
    created_at: int


class ConversationSummary(BaseModel):
    """Lightweight representation of a conversation."""

    id: str
    character_id: str
    title: str | None
    created_at: int


class ConversationDetail(ConversationSummary):
    """Full conversation including its visible messages."""

    summary: str | None
    messages: list[MessageSchema]


class RateLimitStatus(BaseModel):
    """Current rate-limit status for the calling subject."""

    limit: int
    remaining: int
    reset: int


class AppealRequest(BaseModel):
    approved: bool


class AppealResponse(BaseModel):
    log_id: str
    appealed: bool


class ModerationLogSchema(BaseModel):
    id: str
    message_id: str | None
    action: str
    reason: str | None
    categories: list[str]
    confidence: float
    appealed: bool
    created_at: int
