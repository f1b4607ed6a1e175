"""Per-(subject, endpoint) fixed-window rate limiter.

Counters live behind the storage port so limits hold across processes.
The check-and-increment is a single atomic storage call; the limiter never
reads a count and writes it back. Any storage failure fails open.
"""

import logging
import math
import time
from collections.abc import Callable

from admission.models import (
    RATE_LIMIT_CONFIGS,
    RateLimitConfig,
    RateLimitResult,
    WindowStatus,
)
from storage.StoragePort import StorageError, StoragePort

logger = logging.getLogger(__name__)

# Windows older than this many window lengths are garbage-collected.
_RETAINED_WINDOWS = 2

STATUS_LOOKBACK_MS = 3_600_000


def _system_clock() -> float:
    return time.time() * 1000


def window_start_for(now: int, window_ms: int) -> int:
    """Align ``now`` down to its window boundary."""
    return (now // window_ms) * window_ms


def _seconds_until(deadline: int, now: int) -> int:
    return max(1, math.ceil((deadline - now) / 1000))


class RateLimiter:
    """Fixed-window admission control with optional block escalation."""

    def __init__(
        self,
        storage: StoragePort,
        default_config: RateLimitConfig | None = None,
        configs: dict[str, RateLimitConfig] | None = None,
        clock: Callable[[], float] = _system_clock,
    ) -> None:
        """Initialize the limiter.

        Args:
            storage: Backend holding window counters and block markers.
            default_config: Quota for endpoints missing from ``configs``.
            configs: Per-endpoint quotas; defaults to ``RATE_LIMIT_CONFIGS``.
            clock: Returns the current time in epoch milliseconds.
        """
        self._storage = storage
        self._default_config = default_config or RateLimitConfig()
        self._configs = RATE_LIMIT_CONFIGS if configs is None else configs
        self._clock = clock

    def config_for(self, endpoint: str) -> RateLimitConfig:
        return self._configs.get(endpoint, self._default_config)

    def _now(self) -> int:
        return int(self._clock())

    def check_and_consume(
        self,
        subject_id: str,
        endpoint: str,
        config: RateLimitConfig | None = None,
    ) -> RateLimitResult:
        """Admit or reject one request, consuming quota when admitted.

        Args:
            subject_id: Caller identity.
            endpoint: Logical endpoint name.
            config: Overrides the endpoint's configured quota.

        Returns:
            The admission decision. Denials carry ``retry_after`` in seconds.
        """
        config = config or self.config_for(endpoint)
        now = self._now()
        window_start = window_start_for(now, config.window_ms)
        reset_time = window_start + config.window_ms

        if config.max_requests <= 0:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=reset_time,
                limit=config.max_requests,
                retry_after=_seconds_until(reset_time, now),
            )

        self._cleanup(subject_id, endpoint, now, config.window_ms)

        try:
            blocked_until = self._storage.get_block(subject_id, endpoint, now)
            if blocked_until is not None:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_time=blocked_until,
                    limit=config.max_requests,
                    retry_after=_seconds_until(blocked_until, now),
                )

            count = self._storage.atomic_increment(
                subject_id, endpoint, window_start, config.max_requests
            )
        except StorageError:
            logger.exception(
                "Rate limiter storage failure for %s on %s; failing open",
                subject_id,
                endpoint,
            )
            return RateLimitResult(
                allowed=True,
                remaining=max(0, config.max_requests - 1),
                reset_time=now + config.window_ms,
                limit=config.max_requests,
            )

        if count is None:
            logger.info("Rate limit exceeded for %s on %s", subject_id, endpoint)
            if config.escalate and config.block_duration_ms > 0:
                self.block_subject(subject_id, endpoint, config.block_duration_ms)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=reset_time,
                limit=config.max_requests,
                retry_after=_seconds_until(reset_time, now),
            )

        return RateLimitResult(
            allowed=True,
            remaining=max(0, config.max_requests - count),
            reset_time=reset_time,
            limit=config.max_requests,
        )

    def _cleanup(self, subject_id: str, endpoint: str, now: int, window_ms: int) -> None:
        """Drop windows older than the retention horizon for this key."""
        cutoff = now - _RETAINED_WINDOWS * window_ms
        try:
            removed = self._storage.delete_before(subject_id, endpoint, cutoff)
        except StorageError:
            logger.warning(
                "Could not clean up old windows for %s on %s", subject_id, endpoint,
                exc_info=True,
            )
            return
        if removed:
            logger.debug("Removed %d stale windows for %s on %s", removed, subject_id, endpoint)

    def block_subject(
        self, subject_id: str, endpoint: str, duration_ms: int | None = None
    ) -> bool:
        """Write an explicit block marker that short-circuits future checks.

        Returns:
            True if the marker was stored.
        """
        if duration_ms is None:
            duration_ms = self.config_for(endpoint).block_duration_ms
        blocked_until = self._now() + duration_ms
        try:
            self._storage.set_block(subject_id, endpoint, blocked_until)
        except StorageError:
            logger.exception("Error blocking %s on %s", subject_id, endpoint)
            return False
        logger.warning("Blocked %s on %s until %d", subject_id, endpoint, blocked_until)
        return True

    def is_blocked(self, subject_id: str, endpoint: str) -> bool:
        try:
            return self._storage.get_block(subject_id, endpoint, self._now()) is not None
        except StorageError:
            logger.exception("Error checking block status for %s", subject_id)
            return False

    def reset(self, subject_id: str, endpoint: str) -> None:
        """Forget every window for the key."""
        try:
            self._storage.delete_windows(subject_id, endpoint)
        except StorageError:
            logger.exception("Error resetting rate limit for %s on %s", subject_id, endpoint)
            return
        logger.info("Rate limit reset for %s on %s", subject_id, endpoint)

    def get_subject_status(self, subject_id: str) -> list[WindowStatus]:
        """List the subject's windows from the last hour, newest first."""
        try:
            windows = self._storage.list_windows(
                subject_id, self._now() - STATUS_LOOKBACK_MS
            )
        except StorageError:
            logger.exception("Error getting rate limit status for %s", subject_id)
            return []
        return [
            WindowStatus(
                endpoint=w.endpoint,
                request_count=w.request_count,
                window_start=w.window_start,
                remaining=max(0, self.config_for(w.endpoint).max_requests - w.request_count),
            )
            for w in windows
        ]

    def peek(self, subject_id: str, endpoint: str) -> RateLimitResult:
        """Report the current window's state without consuming quota."""
        config = self.config_for(endpoint)
        now = self._now()
        window_start = window_start_for(now, config.window_ms)
        try:
            window = self._storage.get_window(subject_id, endpoint, window_start)
        except StorageError:
            logger.exception("Error reading rate limit window for %s", subject_id)
            window = None
        used = window.request_count if window else 0
        return RateLimitResult(
            allowed=used < config.max_requests,
            remaining=max(0, config.max_requests - used),
            reset_time=window_start + config.window_ms,
            limit=config.max_requests,
        )
