"""Orchestrates one chat turn: admission, moderation, context, model call.

The rate-limit and moderation gates run under a short timeout and fail
open past it. Once a user message is admitted and stored it is never rolled
back; a failed or aborted model call only skips the assistant reply.
"""

import logging
from collections.abc import Callable, Generator
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import replace

from openai import APIError, BadRequestError, OpenAI  # type: ignore

from admission.models import RateLimitResult
from admission.RateLimiter import RateLimiter
from conversation.ContextManager import ContextManager
from conversation.models import ContextInfo, PreparedContext, TokenLimits
from moderation.ContentModerator import ContentModerator
from moderation.models import BLOCKED, FLAGGED, ModerationResult, error_result
from pipeline.errors import (
    ContentBlocked,
    ConversationNotFound,
    ModelUnavailable,
    RateLimitExceeded,
)
from pipeline.models import Turn, TurnResult
from pipeline.prompts import get_system_prompt
from storage.records import Conversation, new_id, now_ms

logger = logging.getLogger(__name__)

_CONTEXT_LENGTH_MSG = (
    "Conversation is too long. Please start a new conversation."
)


class ChatPipeline:
    """Runs the admission -> moderation -> context -> model sequence."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        moderator: ContentModerator,
        context_manager: ContextManager,
        client: OpenAI | None = None,
        model: str = "gpt-4o-mini",
        persona: Callable[[str], str] = get_system_prompt,
        gate_timeout: float = 0.05,
        endpoint: str = "chat-send",
    ) -> None:
        """Wire the pipeline.

        Args:
            rate_limiter: Admission control for ``endpoint``.
            moderator: Content moderator for user messages.
            context_manager: History store and context builder.
            client: OpenAI-compatible client; None disables model calls.
            model: Chat model name passed to the client.
            persona: Maps a character id to its system prompt.
            gate_timeout: Seconds each gate may take before failing open.
            endpoint: Rate limit endpoint charged per message.
        """
        self._limiter = rate_limiter
        self._moderator = moderator
        self._context = context_manager
        self._client = client
        self._model = model
        self._persona = persona
        self._gate_timeout = gate_timeout
        self._endpoint = endpoint
        self._gates = ThreadPoolExecutor(max_workers=8, thread_name_prefix="chat-gate")

    @property
    def context_manager(self) -> ContextManager:
        return self._context

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def moderator(self) -> ContentModerator:
        return self._moderator

    def close(self) -> None:
        self._gates.shutdown(wait=False)

    def create_conversation(
        self, user_id: str, character_id: str, title: str | None = None
    ) -> Conversation | None:
        return self._context.create_conversation(user_id, character_id, title)

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def _bounded(self, label: str, fallback: Callable[[], object], fn, *args):
        """Run ``fn`` under the gate timeout, returning ``fallback()`` on
        timeout or unexpected error."""
        future = self._gates.submit(fn, *args)
        try:
            return future.result(timeout=self._gate_timeout)
        except FuturesTimeoutError:
            logger.warning(
                "%s exceeded %.0f ms; failing open", label, self._gate_timeout * 1000
            )
        except Exception:  # noqa: BLE001
            logger.exception("%s failed; failing open", label)
        return fallback()

    def check_rate_limit(self, subject_id: str, endpoint: str | None = None) -> RateLimitResult:
        """Consume one request of ``endpoint``'s quota under the gate timeout.

        Defaults to the chat endpoint. A slow or failing limiter admits the
        request with a full-window result.
        """
        endpoint = endpoint or self._endpoint
        config = self._limiter.config_for(endpoint)
        return self._bounded(
            "Rate limit check",
            lambda: RateLimitResult(
                allowed=True,
                remaining=max(0, config.max_requests - 1),
                reset_time=now_ms() + config.window_ms,
                limit=config.max_requests,
            ),
            self._limiter.check_and_consume,
            subject_id,
            endpoint,
        )

    def _moderate(
        self, message: str, user_id: str, conversation: Conversation, message_id: str
    ) -> ModerationResult:
        return self._bounded(
            "Moderation",
            lambda: error_result("timeout", "Moderation timed out"),
            self._moderator.moderate_content,
            message,
            user_id,
            {
                "conversation_id": conversation.id,
                "character_id": conversation.character_id,
                "message_id": message_id,
            },
        )

    # ------------------------------------------------------------------
    # Turn processing
    # ------------------------------------------------------------------

    def begin_turn(self, conversation_id: str, user_id: str, message: str) -> Turn:
        """Admit, moderate and persist a user message, then build context.

        Raises:
            ConversationNotFound: If the conversation does not exist.
            RateLimitExceeded: If the caller is over quota.
            ContentBlocked: If moderation blocks the message.
        """
        conversation = self._context.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)

        rate = self.check_rate_limit(user_id)
        if not rate.allowed:
            raise RateLimitExceeded(rate, self._endpoint)

        message_id = new_id()
        verdict = self._moderate(message, user_id, conversation, message_id)
        if verdict.action == BLOCKED:
            raise ContentBlocked(verdict)

        metadata = {}
        if verdict.action == FLAGGED:
            metadata["moderation"] = {
                "action": verdict.action,
                "categories": list(verdict.categories),
                "confidence": verdict.confidence,
            }
        user_message = self._context.add_message_to_context(
            conversation.id, "user", message, metadata, message_id
        )

        system_prompt = self._persona(conversation.character_id)
        prepared = self._prepare(conversation.id, system_prompt, message)
        return Turn(
            conversation=conversation,
            user_message=user_message,
            system_prompt=system_prompt,
            prepared=prepared,
            rate_limit=rate,
            moderation=verdict,
        )

    def _prepare(
        self,
        conversation_id: str,
        system_prompt: str,
        message: str,
        limits: TokenLimits | None = None,
    ) -> PreparedContext:
        prepared = self._context.prepare_ai_context(conversation_id, system_prompt, limits)
        if prepared is not None:
            return prepared
        logger.warning("Falling back to single-message context for %s", conversation_id)
        return PreparedContext(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": message},
            ],
            context_info=ContextInfo(
                total_tokens=self._context.estimate_tokens(message),
                truncated=False,
                message_count=1,
            ),
        )

    def _create_completion(self, messages: list[dict], stream: bool):
        if self._client is None:
            raise ModelUnavailable("No chat model is configured.")
        try:
            return self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                stream=stream,
            )
        except BadRequestError:
            raise
        except APIError as e:
            raise ModelUnavailable(f"Model call failed: {e}") from e

    def _complete(self, turn: Turn, stream: bool):
        """Call the model, retrying once with half the budget on overflow."""
        try:
            return self._create_completion(turn.prepared.messages, stream)
        except BadRequestError as e:
            if "context_length_exceeded" not in str(e):
                raise ModelUnavailable(f"Model rejected the request: {e}") from e

        limits = self._context.token_limits
        smaller = replace(limits, max_context_tokens=limits.max_context_tokens // 2)
        turn.prepared = self._prepare(
            turn.conversation.id,
            turn.system_prompt,
            turn.user_message.content if turn.user_message else "",
            smaller,
        )
        try:
            return self._create_completion(turn.prepared.messages, stream)
        except BadRequestError as e:
            if "context_length_exceeded" in str(e):
                raise ModelUnavailable(_CONTEXT_LENGTH_MSG) from e
            raise ModelUnavailable(f"Model rejected the request: {e}") from e

    def _finish_turn(self, turn: Turn, reply: str) -> TurnResult:
        assistant_message = self._context.add_message_to_context(
            turn.conversation.id, "assistant", reply
        )
        if self._context.update_conversation_summary(turn.conversation.id):
            logger.info("Refreshed summary for conversation %s", turn.conversation.id)
        return TurnResult(
            conversation_id=turn.conversation.id,
            response=reply,
            turn=turn,
            assistant_message=assistant_message,
        )

    def process_message(
        self, conversation_id: str, user_id: str, message: str
    ) -> TurnResult:
        """Run a full turn and return the assistant's reply.

        Args:
            conversation_id: Existing conversation identifier.
            user_id: Caller identity used for rate limiting and moderation logs.
            message: The user's message.

        Returns:
            The completed turn, including the stored messages.

        Raises:
            ModelUnavailable: If the model call fails; the user message
                stays in the history.
        """
        turn = self.begin_turn(conversation_id, user_id, message)
        completion = self._complete(turn, stream=False)
        reply = completion.choices[0].message.content or ""
        return self._finish_turn(turn, reply)

    def process_message_stream(
        self, conversation_id: str, user_id: str, message: str
    ) -> Generator[dict, None, None]:
        """Admit the message now, then return a generator of reply events.

        Admission errors are raised before any event is produced. Events:
            - ``status``     - processing phase ("admitted", "thinking")
            - ``moderation`` - the message was flagged but allowed
            - ``token``      - a content token from the model
            - ``done``       - final response with context info

        Closing the generator early skips storing the reply.
        """
        turn = self.begin_turn(conversation_id, user_id, message)
        return self.stream_turn(turn)

    def stream_turn(self, turn: Turn) -> Generator[dict, None, None]:
        """Stream the reply for a turn already admitted by ``begin_turn``."""
        yield {
            "type": "status",
            "status": "admitted",
            "remaining": turn.rate_limit.remaining,
        }
        if turn.moderation.action == FLAGGED:
            yield {
                "type": "moderation",
                "action": turn.moderation.action,
                "categories": list(turn.moderation.categories),
            }
        yield {"type": "status", "status": "thinking"}

        stream = self._complete(turn, stream=True)
        content_parts: list[str] = []
        for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                content_parts.append(delta.content)
                yield {"type": "token", "token": delta.content}

        result = self._finish_turn(turn, "".join(content_parts))
        info = turn.prepared.context_info
        yield {
            "type": "done",
            "conversation_id": result.conversation_id,
            "response": result.response,
            "context_info": {
                "total_tokens": info.total_tokens,
                "truncated": info.truncated,
                "message_count": info.message_count,
            },
        }
