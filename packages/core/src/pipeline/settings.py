"""Environment-driven settings shared by the API and the CLI.

Entry points call ``load_dotenv()`` before ``Settings.from_env()`` so a
local ``.env`` file can supply any of these variables.
"""

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration.

    Attributes:
        db_path: SQLite file for the chat store; None keeps everything in memory.
        openai_api_key: Key for the chat model; None disables model calls.
        model: Chat model name.
        gate_timeout_ms: Upper bound for the rate-limit and moderation checks.
        token_estimator: "heuristic" or "tiktoken".
        max_context_tokens: Total context budget per model call.
        moderation_logging: Persist non-allowed moderation verdicts.
        log_level: Root logging level name.
    """

    db_path: str | None = None
    openai_api_key: str | None = None
    model: str = "gpt-4o-mini"
    gate_timeout_ms: int = 50
    token_estimator: str = "heuristic"
    max_context_tokens: int = 4000
    moderation_logging: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.environ.get("CHAT_DB_PATH") or None,
            openai_api_key=os.environ.get("OPENAI_API_KEY") or None,
            model=os.environ.get("OPENAI_MODEL", "gpt-4o-mini"),
            gate_timeout_ms=int(os.environ.get("GATE_TIMEOUT_MS", "50")),
            token_estimator=os.environ.get("TOKEN_ESTIMATOR", "heuristic"),
            max_context_tokens=int(os.environ.get("MAX_CONTEXT_TOKENS", "4000")),
            moderation_logging=_env_bool("MODERATION_LOGGING", True),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
