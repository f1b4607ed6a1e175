"""Errors surfaced by the chat pipeline to its callers.

Storage failures are absorbed by each component and never surface here,
and a flagged message is not an error at all.
"""

from admission.models import RateLimitResult
from moderation.models import ModerationResult, format_for_api


class RateLimitExceeded(Exception):
    """The caller is over quota; ``retry_after`` says when to come back."""

    def __init__(self, result: RateLimitResult, endpoint: str = "") -> None:
        self.result = result
        self.endpoint = endpoint
        super().__init__(
            f"Too many requests. Try again in {result.retry_after} seconds."
        )

    @property
    def retry_after(self) -> int:
        return self.result.retry_after or 60

    @property
    def headers(self) -> dict[str, str]:
        return self.result.headers()


class ContentBlocked(Exception):
    """The message was rejected by moderation."""

    def __init__(self, result: ModerationResult) -> None:
        self.result = result
        super().__init__(result.reason or "Message blocked by moderation")

    def to_dict(self) -> dict:
        """Rejection payload: ``{moderated, action, categories, reason}``."""
        return {**format_for_api(self.result), "reason": self.result.reason}


class ConversationNotFound(LookupError):
    """No conversation exists with the requested id."""


class ModelUnavailable(RuntimeError):
    """The chat model could not produce a reply.

    Raised after the user message is stored, so the history keeps it.
    """
