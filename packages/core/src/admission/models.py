"""Configuration and result types for fixed-window rate limiting."""

from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitConfig:
    """Quota for one endpoint.

    Attributes:
        max_requests: Requests admitted per window.
        window_ms: Window length in milliseconds.
        block_duration_ms: How long an explicit block marker lasts.
        escalate: Write a block marker whenever the quota is exhausted.
    """

    max_requests: int = 10
    window_ms: int = 60_000
    block_duration_ms: int = 300_000
    escalate: bool = False

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if self.block_duration_ms < 0:
            raise ValueError("block_duration_ms must not be negative")


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one admission check.

    ``reset_time`` is the epoch-ms end of the current window (or block);
    ``retry_after`` is whole seconds and only set when the request is denied.
    """

    allowed: bool
    remaining: int
    reset_time: int
    limit: int
    retry_after: int | None = None

    def headers(self) -> dict[str, str]:
        """Build the ``X-RateLimit-*`` headers (plus ``Retry-After`` on denial)."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_time),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after or 60)
        return headers


@dataclass(frozen=True)
class WindowStatus:
    """Read-only view of one stored window, for status endpoints."""

    endpoint: str
    request_count: int
    window_start: int
    remaining: int


# Predefined quotas for the chat endpoints.
RATE_LIMIT_CONFIGS: dict[str, RateLimitConfig] = {
    "chat-send": RateLimitConfig(
        max_requests=10, window_ms=60_000, block_duration_ms=300_000
    ),
    "chat-session": RateLimitConfig(
        max_requests=5, window_ms=60_000, block_duration_ms=600_000
    ),
    "chat-conversations": RateLimitConfig(
        max_requests=30, window_ms=60_000, block_duration_ms=60_000
    ),
    "chat-conversation-detail": RateLimitConfig(
        max_requests=20, window_ms=60_000, block_duration_ms=60_000
    ),
    "chat-characters": RateLimitConfig(
        max_requests=60, window_ms=60_000, block_duration_ms=60_000
    ),
}
