"""Content moderation for chat messages.

Every message runs through independent stages (rule table, spam heuristic,
structure check) whose results are folded into one verdict. Non-allowed
verdicts are written to the moderation log. Internal failures never block
a message: they degrade to ``allowed`` with an ``error`` category.
"""

import logging
import re
import unicodedata
from datetime import datetime

from conversation.TokenEstimator import HeuristicTokenEstimator, TokenEstimator
from moderation.models import (
    ALLOWED,
    BLOCKED,
    FLAGGED,
    ModerationResult,
    ModerationRule,
    combine_results,
    error_result,
)
from moderation.rules import (
    MAX_CONTENT_CHARS,
    MAX_SPECIAL_CHAR_RATIO,
    MODERATION_RULES,
    SPAM_BLOCK_SCORE,
    SPAM_FLAG_SCORE,
    SPAM_INDICATOR_WEIGHT,
    SPAM_INDICATORS,
    STRUCTURE_BLOCK_SEVERITY,
    STRUCTURE_FLAG_SEVERITY,
)
from storage.records import ModerationLog
from storage.StoragePort import StorageError, StoragePort

logger = logging.getLogger(__name__)

# Unicode categories stripped during normalization: control, format,
# private-use and surrogate code points.
_NON_TEXT_CATEGORIES = {"Cc", "Cf", "Co", "Cs"}
_WHITESPACE_RUN = re.compile(r"\s+")
_SPECIAL_CHAR = re.compile(r"[^\w\s]")


class ContentModerator:
    """Rule-based and heuristic moderator with audit logging."""

    def __init__(
        self,
        storage: StoragePort | None = None,
        enable_logging: bool = True,
        rules: tuple[ModerationRule, ...] = MODERATION_RULES,
        max_message_tokens: int = 1000,
        estimator: TokenEstimator | None = None,
    ) -> None:
        """Initialize the moderator.

        Args:
            storage: Where moderation logs go. Logging is skipped without one.
            enable_logging: Persist non-allowed verdicts.
            rules: The rule table to evaluate.
            max_message_tokens: Messages estimated above this are blocked.
            estimator: Token estimator used for the size check.
        """
        self._storage = storage
        self._enable_logging = enable_logging and storage is not None
        self._rules = rules
        self._max_message_tokens = max_message_tokens
        self._estimator = estimator or HeuristicTokenEstimator()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def moderate_content(
        self,
        content: str,
        subject_id: str | None = None,
        context: dict | None = None,
    ) -> ModerationResult:
        """Moderate one message.

        Args:
            content: Raw message text.
            subject_id: Author of the message, recorded in the log.
            context: Optional ``conversation_id``, ``character_id`` and
                ``message_id`` for the log entry.

        Returns:
            The combined verdict.
        """
        try:
            normalized = self.normalize_content(content or "")
            result = combine_results(
                [
                    self.apply_moderation_rules(normalized),
                    self.check_spam_patterns(normalized),
                    self.check_content_structure(normalized),
                ]
            )
        except Exception:  # noqa: BLE001
            logger.exception("Content moderation error; allowing message")
            return error_result()

        if self._enable_logging and result.action != ALLOWED:
            self._log_moderation_action(result, subject_id, context)
        return result

    def process_appeal(
        self, log_id: str, approved: bool, subject_id: str | None = None
    ) -> bool:
        """Mark a moderation log entry as appealed.

        Idempotent: repeated calls leave ``appealed`` set and return True.
        With ``subject_id`` only that subject's own entries can be appealed.

        Returns:
            False if the entry does not exist, belongs to another subject,
            or storage is unavailable.
        """
        if self._storage is None:
            return False
        try:
            found = self._storage.mark_appealed(log_id, subject_id)
        except StorageError:
            logger.exception("Error processing appeal for %s", log_id)
            return False
        if found:
            logger.info(
                "Appeal %s for moderation log %s",
                "approved" if approved else "denied",
                log_id,
            )
        return found

    def get_moderation_history(
        self,
        action: str | None = None,
        subject_id: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int = 100,
    ) -> list[ModerationLog]:
        """Return logged verdicts, newest first, optionally for one subject."""
        if self._storage is None:
            return []
        try:
            return self._storage.list_moderation_logs(
                action=action,
                subject_id=subject_id,
                since=int(date_from.timestamp() * 1000) if date_from else None,
                until=int(date_to.timestamp() * 1000) if date_to else None,
                limit=limit,
            )
        except StorageError:
            logger.exception("Error fetching moderation history")
            return []

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    @staticmethod
    def normalize_content(content: str) -> str:
        """Strip non-text code points, collapse whitespace and trim."""
        text = "".join(
            ch
            for ch in content
            if ch.isspace() or unicodedata.category(ch) not in _NON_TEXT_CATEGORIES
        )
        return _WHITESPACE_RUN.sub(" ", text).strip()

    def apply_moderation_rules(self, content: str) -> ModerationResult:
        """Evaluate the whole rule table and merge every match."""
        matched = [rule for rule in self._rules if rule.find(content) is not None]
        if not matched:
            return ModerationResult(action=ALLOWED, confidence=1.0)

        action = BLOCKED if any(r.verdict == BLOCKED for r in matched) else FLAGGED
        suggested_edit = None
        if action == FLAGGED:
            suggested_edit = content
            for rule in matched:
                suggested_edit = self._mask(rule, suggested_edit)

        return ModerationResult(
            action=action,
            confidence=max(r.confidence for r in matched if r.verdict == action),
            categories=tuple(r.category for r in matched),
            reasons=tuple(r.description for r in matched),
            suggested_edit=suggested_edit,
        )

    @staticmethod
    def check_spam_patterns(content: str) -> ModerationResult:
        """Score spam indicators; each match adds a fixed weight."""
        matched = [
            f"spam_pattern_{index}"
            for index, pattern in enumerate(SPAM_INDICATORS)
            if pattern.search(content)
        ]
        score = round(len(matched) * SPAM_INDICATOR_WEIGHT, 2)

        if score >= SPAM_BLOCK_SCORE:
            return ModerationResult(
                action=BLOCKED,
                confidence=min(score, 1.0),
                categories=("spam", *matched),
                reasons=("Content appears to be spam",),
            )
        if score >= SPAM_FLAG_SCORE:
            return ModerationResult(
                action=FLAGGED,
                confidence=score,
                categories=("potential_spam", *matched),
                reasons=("Content shows spam-like characteristics",),
            )
        return ModerationResult(action=ALLOWED, confidence=1.0 - score)

    def check_content_structure(self, content: str) -> ModerationResult:
        """Check emptiness, size and the share of special characters."""
        if not content.strip():
            return ModerationResult(
                action=BLOCKED,
                confidence=1.0,
                categories=("structure_violation", "empty_content"),
                reasons=("Message is empty",),
            )

        issues: list[str] = []
        severity = 0.0

        if self._estimator.estimate(content) > self._max_message_tokens:
            issues.append("oversized_message")
            severity = 0.9
        elif len(content) > MAX_CONTENT_CHARS:
            issues.append("excessive_length")
            severity = 0.3

        special_ratio = len(_SPECIAL_CHAR.findall(content)) / len(content)
        if special_ratio > MAX_SPECIAL_CHAR_RATIO:
            issues.append("excessive_special_chars")
            severity = max(severity, 0.4)

        if severity >= STRUCTURE_BLOCK_SEVERITY:
            return ModerationResult(
                action=BLOCKED,
                confidence=severity,
                categories=("structure_violation", *issues),
                reasons=("Content structure is problematic",),
            )
        if severity >= STRUCTURE_FLAG_SEVERITY:
            return ModerationResult(
                action=FLAGGED,
                confidence=severity,
                categories=("structure_warning", *issues),
                reasons=("Content structure may be problematic",),
            )
        return ModerationResult(action=ALLOWED, confidence=1.0 - severity)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _mask(rule: ModerationRule, content: str) -> str:
        if isinstance(rule.pattern, re.Pattern):
            pattern = rule.pattern
        else:
            pattern = re.compile(re.escape(rule.pattern), re.IGNORECASE)
        return pattern.sub(lambda m: "*" * len(m.group()), content)

    def _log_moderation_action(
        self,
        result: ModerationResult,
        subject_id: str | None,
        context: dict | None,
    ) -> None:
        entry = ModerationLog(
            action=result.action,
            confidence=result.confidence,
            categories=list(result.categories),
            reason=result.reason,
            message_id=(context or {}).get("message_id"),
            subject_id=subject_id,
        )
        try:
            self._storage.insert_moderation_log(entry)
        except StorageError:
            logger.exception("Error logging moderation action")
            return
        logger.info(
            "Moderation %s (%.2f) for %s: %s",
            result.action,
            result.confidence,
            subject_id or "anonymous",
            ", ".join(result.categories),
        )
