"""Data models for the content moderation pipeline."""

import re
from collections.abc import Iterable
from dataclasses import dataclass

ALLOWED = "allowed"
FLAGGED = "flagged"
BLOCKED = "blocked"

# Higher wins when stage results are combined.
_SEVERITY = {ALLOWED: 0, FLAGGED: 1, BLOCKED: 2}


@dataclass(frozen=True)
class ModerationRule:
    """A declarative moderation rule.

    ``pattern`` is either a compiled regex (matched with ``search``) or a
    literal matched case-insensitively as a substring.
    """

    id: str
    pattern: re.Pattern[str] | str
    category: str
    action: str  # "flag" | "block"
    confidence: float
    description: str

    def __post_init__(self) -> None:
        if self.action not in ("flag", "block"):
            raise ValueError(f"Rule {self.id}: action must be 'flag' or 'block'")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Rule {self.id}: confidence must be within [0, 1]")

    @property
    def verdict(self) -> str:
        return BLOCKED if self.action == "block" else FLAGGED

    def find(self, content: str) -> tuple[int, int] | None:
        """Return the span of the first match, or None."""
        if isinstance(self.pattern, re.Pattern):
            match = self.pattern.search(content)
            return match.span() if match else None
        index = content.lower().find(self.pattern.lower())
        if index < 0:
            return None
        return index, index + len(self.pattern)


@dataclass(frozen=True)
class ModerationResult:
    """Verdict for one message, or for one stage of the pipeline.

    Attributes:
        action: "allowed", "flagged" or "blocked".
        confidence: Within [0, 1].
        categories: Sorted, de-duplicated category names.
        reasons: Sorted, de-duplicated human-readable reasons.
        suggested_edit: A rewritten message that would pass, when one exists.
    """

    action: str = ALLOWED
    confidence: float = 1.0
    categories: tuple[str, ...] = ()
    reasons: tuple[str, ...] = ()
    suggested_edit: str | None = None

    def __post_init__(self) -> None:
        if self.action not in _SEVERITY:
            raise ValueError(f"Unknown moderation action: {self.action!r}")
        object.__setattr__(self, "confidence", min(1.0, max(0.0, float(self.confidence))))
        object.__setattr__(self, "categories", tuple(sorted(set(self.categories))))
        object.__setattr__(self, "reasons", tuple(sorted(set(self.reasons))))

    @property
    def reason(self) -> str | None:
        return "; ".join(self.reasons) if self.reasons else None


def combine_results(results: Iterable[ModerationResult]) -> ModerationResult:
    """Fold stage results into one verdict.

    The most severe action wins. Confidence is the highest confidence among
    the results carrying that action; categories and reasons are unions.
    The fold is associative and independent of input order.
    """
    results = list(results)
    if not results:
        return ModerationResult()

    action = max((r.action for r in results), key=_SEVERITY.__getitem__)
    contributing = [r for r in results if r.action == action]
    edits = [r.suggested_edit for r in contributing if r.suggested_edit is not None]

    return ModerationResult(
        action=action,
        confidence=max(r.confidence for r in contributing),
        categories=tuple(c for r in results for c in r.categories),
        reasons=tuple(reason for r in results for reason in r.reasons),
        suggested_edit=min(edits) if edits else None,
    )


def error_result(category: str = "error", reason: str = "Moderation service error") -> ModerationResult:
    """The fail-open verdict used when moderation cannot complete."""
    return ModerationResult(
        action=ALLOWED, confidence=0.0, categories=(category,), reasons=(reason,)
    )


# ---------------------------------------------------------------------------
# Helpers for callers
# ---------------------------------------------------------------------------


def should_block(result: ModerationResult) -> bool:
    return result.action == BLOCKED


def should_flag(result: ModerationResult) -> bool:
    return result.action in (FLAGGED, BLOCKED)


def severity_level(result: ModerationResult) -> str:
    if result.action == BLOCKED:
        return "high"
    if result.action == FLAGGED:
        return "medium"
    return "low"


def format_for_api(result: ModerationResult) -> dict:
    """Shape a verdict for an HTTP response body."""
    return {
        "moderated": result.action != ALLOWED,
        "action": result.action,
        "categories": list(result.categories),
    }


def moderation_headers(result: ModerationResult) -> dict[str, str]:
    return {
        "X-Content-Moderated": "true" if result.action != ALLOWED else "false",
        "X-Moderation-Action": result.action,
        "X-Moderation-Confidence": str(result.confidence),
    }
