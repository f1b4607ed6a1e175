"""Token estimation for context budgeting.

The windowing algorithm only needs ``estimate(text) -> int``. The default
heuristic is ~4 characters per token; ``TiktokenEstimator`` gives BPE counts
for OpenAI models without changing anything downstream.
"""

import logging
import math
from typing import Protocol

import tiktoken  # type: ignore

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


class TokenEstimator(Protocol):
    def estimate(self, text: str) -> int: ...


class HeuristicTokenEstimator:
    """``ceil(len(text) / 4)``; cheap and model-agnostic."""

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / CHARS_PER_TOKEN)


class TiktokenEstimator:
    """Exact BPE token counts for an OpenAI model."""

    def __init__(self, model: str = "gpt-4o-mini") -> None:
        try:
            self._encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            logger.info("No tiktoken encoding registered for %s; using o200k_base", model)
            self._encoding = tiktoken.get_encoding("o200k_base")

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text))


def get_estimator(name: str, model: str = "gpt-4o-mini") -> TokenEstimator:
    """Resolve the ``TOKEN_ESTIMATOR`` setting ("heuristic" or "tiktoken")."""
    if name == "tiktoken":
        return TiktokenEstimator(model)
    if name != "heuristic":
        raise ValueError(f"Unknown token estimator: {name!r}")
    return HeuristicTokenEstimator()
