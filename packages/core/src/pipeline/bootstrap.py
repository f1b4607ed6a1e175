"""Assemble a ChatPipeline from Settings.

Shared by the API lifespan and the CLI so both wire components the same way.
"""

import logging

from openai import OpenAI  # type: ignore

from admission.RateLimiter import RateLimiter
from conversation.ContextManager import ContextManager
from conversation.models import TokenLimits
from conversation.TokenEstimator import get_estimator
from moderation.ContentModerator import ContentModerator
from pipeline.ChatPipeline import ChatPipeline
from pipeline.settings import Settings
from storage.DatabaseProvider import DatabaseProvider
from storage.MemoryStorage import MemoryStorage
from storage.SqliteStorage import SqliteStorage
from storage.StoragePort import StoragePort

logger = logging.getLogger(__name__)


def open_storage(settings: Settings) -> tuple[StoragePort, DatabaseProvider | None]:
    """Return the configured backend and, for SQLite, its provider."""
    if not settings.db_path:
        logger.info("CHAT_DB_PATH not set; using in-memory storage")
        return MemoryStorage(), None
    provider = DatabaseProvider(settings.db_path)
    return SqliteStorage(provider.get_connection()), provider


def build_pipeline(
    settings: Settings,
    storage: StoragePort,
    client: OpenAI | None = None,
) -> ChatPipeline:
    """Wire every component over one storage backend.

    Args:
        settings: Runtime configuration.
        storage: Backend shared by all components.
        client: Chat model client; built from ``OPENAI_API_KEY`` when omitted.
    """
    estimator = get_estimator(settings.token_estimator, settings.model)
    limits = TokenLimits(max_context_tokens=settings.max_context_tokens)

    if client is None and settings.openai_api_key:
        client = OpenAI(api_key=settings.openai_api_key)
    if client is None:
        logger.warning("OPENAI_API_KEY not set; model calls are disabled")

    return ChatPipeline(
        rate_limiter=RateLimiter(storage),
        moderator=ContentModerator(
            storage,
            enable_logging=settings.moderation_logging,
            max_message_tokens=limits.max_message_tokens,
            estimator=estimator,
        ),
        context_manager=ContextManager(storage, limits, estimator),
        client=client,
        model=settings.model,
        gate_timeout=settings.gate_timeout_ms / 1000,
    )
