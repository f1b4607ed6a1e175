"""API route definitions."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import StreamingResponse

from chat_api.auth import require_subject
from chat_api.rate_limit import get_pipeline, rate_limited
from chat_api.schemas import (
    AppealRequest,
    AppealResponse,
    ChatRequest,
    ChatResponse,
    ContextInfoSchema,
    ConversationDetail,
    ConversationSummary,
    CreateConversationRequest,
    MessageSchema,
    ModerationLogSchema,
    ModerationSchema,
    RateLimitStatus,
)
from moderation.models import format_for_api
from pipeline.ChatPipeline import ChatPipeline
from storage.records import Conversation

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


@router.get("/health")
async def health_check():
    """Basic liveness probe -- no auth required."""
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _owned_conversation(
    pipeline: ChatPipeline, conversation_id: str, subject: str
) -> Conversation:
    """Load a conversation, hiding other subjects' conversations behind a 404."""
    conversation = pipeline.context_manager.get_conversation(conversation_id)
    if conversation is None or conversation.user_id != subject:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )
    return conversation


def _summary(conversation: Conversation) -> ConversationSummary:
    return ConversationSummary(
        id=conversation.id,
        character_id=conversation.character_id,
        title=conversation.title,
        created_at=conversation.created_at,
    )


def _apply_rate_limit_headers(request: Request, response: Response) -> None:
    result = getattr(request.state, "rate_limit", None)
    if result is not None:
        response.headers.update(result.headers())


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@router.post(
    "/conversations",
    response_model=ConversationSummary,
    status_code=status.HTTP_201_CREATED,
)
async def create_conversation(
    body: CreateConversationRequest,
    request: Request,
    response: Response,
    subject: str = Depends(rate_limited("chat-session")),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    """Create a new conversation with a character."""
    conversation = pipeline.create_conversation(subject, body.character_id, body.title)
    if conversation is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Conversation store unavailable",
        )
    _apply_rate_limit_headers(request, response)
    return _summary(conversation)


@router.get("/conversations/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(
    conversation_id: str,
    request: Request,
    response: Response,
    subject: str = Depends(rate_limited("chat-conversation-detail")),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    """Get a conversation with its visible message history."""
    conversation = _owned_conversation(pipeline, conversation_id, subject)
    context = pipeline.context_manager.get_conversation_context(conversation.id)
    messages = context.messages if context is not None else []

    _apply_rate_limit_headers(request, response)
    return ConversationDetail(
        **_summary(conversation).model_dump(),
        summary=conversation.summary,
        messages=[
            MessageSchema(
                id=m.id,
                role=m.role,
                content=m.content,
                tokens=m.tokens,
                created_at=m.created_at,
            )
            for m in messages
            if m.role != "system"
        ],
    )


@router.delete(
    "/conversations/{conversation_id}/messages/{message_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def hide_message(
    conversation_id: str,
    message_id: str,
    subject: str = Depends(require_subject),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    """Hide a message from the history and from future model context.

    Hiding an already hidden message succeeds again.
    """
    conversation = _owned_conversation(pipeline, conversation_id, subject)
    messages = pipeline.context_manager.list_messages(conversation.id, include_hidden=True)
    if all(m.id != message_id for m in messages):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Message not found",
        )
    pipeline.context_manager.hide_message(message_id)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


@router.post(
    "/conversations/{conversation_id}/chat",
    response_model=ChatResponse,
)
async def chat(
    conversation_id: str,
    body: ChatRequest,
    response: Response,
    subject: str = Depends(require_subject),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    """Send a message and receive the assistant's reply.

    Rate limiting and moderation happen inside the pipeline; their
    rejections are turned into 429/422 by the app's exception handlers.
    """
    _owned_conversation(pipeline, conversation_id, subject)
    result = pipeline.process_message(conversation_id, subject, body.message)

    turn = result.turn
    response.headers.update(turn.rate_limit.headers())
    info = turn.prepared.context_info
    return ChatResponse(
        conversation_id=result.conversation_id,
        response=result.response,
        remaining_requests=turn.rate_limit.remaining,
        moderation=ModerationSchema(**format_for_api(turn.moderation)),
        context_info=ContextInfoSchema(
            total_tokens=info.total_tokens,
            truncated=info.truncated,
            message_count=info.message_count,
            summary_used=info.summary_used,
        ),
    )


@router.post("/conversations/{conversation_id}/chat/stream")
async def chat_stream(
    conversation_id: str,
    body: ChatRequest,
    subject: str = Depends(require_subject),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    """Send a message and stream the assistant's reply as Server-Sent Events.

    Each SSE event has an ``event`` field (status, moderation, token, done,
    error) and a JSON ``data`` payload. Admission and moderation run before
    the stream opens, so their rejections are ordinary 429/422 responses.
    """
    _owned_conversation(pipeline, conversation_id, subject)
    turn = pipeline.begin_turn(conversation_id, subject, body.message)
    events = pipeline.stream_turn(turn)

    def _event_generator():
        try:
            for event in events:
                yield f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"
        except Exception as exc:  # noqa: BLE001
            logger.exception("Streaming reply failed for %s", conversation_id)
            error_event = {"type": "error", "message": str(exc)}
            yield f"event: error\ndata: {json.dumps(error_event)}\n\n"
        finally:
            events.close()

    return StreamingResponse(
        _event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            **turn.rate_limit.headers(),
        },
    )


# ---------------------------------------------------------------------------
# Rate-limit status
# ---------------------------------------------------------------------------


@router.get("/rate-limit", response_model=RateLimitStatus)
async def get_rate_limit_status(
    response: Response,
    subject: str = Depends(require_subject),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    """Return the chat quota for the calling subject without consuming it."""
    result = pipeline.rate_limiter.peek(subject, "chat-send")
    response.headers.update(result.headers())
    return RateLimitStatus(
        limit=result.limit,
        remaining=result.remaining,
        reset=result.reset_time,
    )


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------


@router.post("/moderation/{log_id}/appeal", response_model=AppealResponse)
async def appeal_moderation(
    log_id: str,
    body: AppealRequest,
    subject: str = Depends(require_subject),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    """Record an appeal decision against one of the caller's moderation log entries."""
    if not pipeline.moderator.process_appeal(log_id, body.approved, subject_id=subject):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Moderation log not found",
        )
    return AppealResponse(log_id=log_id, appealed=True)


@router.get("/moderation/logs", response_model=list[ModerationLogSchema])
async def list_moderation_logs(
    action: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    subject: str = Depends(require_subject),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    """List the caller's logged moderation verdicts, newest first."""
    return [
        ModerationLogSchema(
            id=log.id,
            message_id=log.message_id,
            action=log.action,
            reason=log.reason,
            categories=list(log.categories),
            confidence=log.confidence,
            appealed=log.appealed,
            created_at=log.created_at,
        )
        for log in pipeline.moderator.get_moderation_history(
            action=action, subject_id=subject, limit=limit
        )
    ]
