"""Static rule and heuristic tables for the content moderator.

Rules are data: add a ``ModerationRule`` here to extend moderation without
touching ``ContentModerator`` control flow.
"""

import re

from moderation.models import ModerationRule

MODERATION_RULES: tuple[ModerationRule, ...] = (
    # Harmful content
    ModerationRule(
        id="inappropriate_1",
        pattern=re.compile(r"\b(hate|kill|die|suicide)\b", re.IGNORECASE),
        category="harmful_content",
        action="block",
        confidence=0.9,
        description="Contains harmful language",
    ),
    # Personal information
    ModerationRule(
        id="personal_info_1",
        pattern=re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),  # SSN
        category="personal_information",
        action="block",
        confidence=0.95,
        description="Contains potential personal information",
    ),
    ModerationRule(
        id="personal_info_2",
        pattern=re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b"),  # payment card
        category="personal_information",
        action="block",
        confidence=0.9,
        description="Contains a potential payment card number",
    ),
    # Profanity (mild)
    ModerationRule(
        id="profanity_1",
        pattern=re.compile(r"\b(damn|hell|crap)\b", re.IGNORECASE),
        category="mild_profanity",
        action="flag",
        confidence=0.6,
        description="Contains mild profanity",
    ),
    # Attempts to break the character persona
    ModerationRule(
        id="injection_1",
        pattern=re.compile(
            r"(ignore|disregard|forget)\s+(all\s+)?(previous|prior|above)\s+"
            r"(instructions|prompts|rules)",
            re.IGNORECASE,
        ),
        category="prompt_injection",
        action="flag",
        confidence=0.7,
        description="Attempts to override the character instructions",
    ),
    ModerationRule(
        id="injection_2",
        pattern=re.compile(r"(reveal|print|output)\s+(your\s+)?(system\s+)?prompt", re.IGNORECASE),
        category="prompt_injection",
        action="flag",
        confidence=0.7,
        description="Asks for the system prompt",
    ),
    # Spam
    ModerationRule(
        id="spam_1",
        pattern="CLICK HERE NOW",
        category="spam",
        action="block",
        confidence=0.8,
        description="Spam-like content",
    ),
    # Deterministic triggers for integration testing
    ModerationRule(
        id="test_block",
        pattern="SIMULATE_CONTENT_BLOCK",
        category="test",
        action="block",
        confidence=1.0,
        description="Test content blocking",
    ),
    ModerationRule(
        id="test_flag",
        pattern="SIMULATE_CONTENT_FLAG",
        category="test",
        action="flag",
        confidence=0.8,
        description="Test content flagging",
    ),
)

# Each matching indicator adds SPAM_INDICATOR_WEIGHT to the spam score.
SPAM_INDICATORS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(.)\1{10,}"),  # same character 11+ times
    re.compile(r"\b(\w+)\b\s*\1\s*\1", re.IGNORECASE),  # same word 3 times running
    re.compile(r"^[A-Z\s!]{20,}$"),  # shouting
    re.compile(r"click here|buy now|free gift|limited time|act now", re.IGNORECASE),
    re.compile(r"make money|work from home|lose weight fast", re.IGNORECASE),
    re.compile(r"!{5,}|\?{5,}|\.{10,}"),
    re.compile(r"https?://|www\.|\.com|\.org", re.IGNORECASE),
)

SPAM_INDICATOR_WEIGHT = 0.3
SPAM_BLOCK_SCORE = 0.6
SPAM_FLAG_SCORE = 0.3

MAX_CONTENT_CHARS = 1000
MAX_SPECIAL_CHAR_RATIO = 0.5
STRUCTURE_BLOCK_SEVERITY = 0.8
STRUCTURE_FLAG_SEVERITY = 0.3
