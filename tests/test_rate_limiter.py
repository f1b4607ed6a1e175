"""Tests for fixed-window admission control."""

import threading

import pytest

from admission.models import RATE_LIMIT_CONFIGS, RateLimitConfig, RateLimitResult
from admission.RateLimiter import RateLimiter, window_start_for
from conftest import WINDOW_START_MS
from storage.MemoryStorage import MemoryStorage
from storage.StoragePort import StorageError

QUOTA = RateLimitConfig(max_requests=3, window_ms=60_000, block_duration_ms=300_000)


class BrokenStorage(MemoryStorage):
    """Every rate-limit call fails as if the database were down."""

    def atomic_increment(self, *args):
        raise StorageError("database is locked")

    def get_block(self, *args):
        raise StorageError("database is locked")

    def delete_before(self, *args):
        raise StorageError("database is locked")


def test_window_start_alignment():
    assert window_start_for(WINDOW_START_MS + 59_999, 60_000) == WINDOW_START_MS
    assert window_start_for(WINDOW_START_MS + 60_000, 60_000) == WINDOW_START_MS + 60_000


def test_quota_then_denial(storage, clock):
    limiter = RateLimiter(storage, configs={"chat-send": QUOTA}, clock=clock)

    results = [limiter.check_and_consume("u1", "chat-send") for _ in range(3)]
    assert all(r.allowed for r in results)
    assert [r.remaining for r in results] == [2, 1, 0]
    assert all(r.reset_time == WINDOW_START_MS + 60_000 for r in results)

    denied = limiter.check_and_consume("u1", "chat-send")
    assert not denied.allowed
    assert denied.remaining == 0
    assert denied.retry_after == 45


def test_subjects_do_not_share_quota(storage, clock):
    limiter = RateLimiter(storage, configs={"chat-send": QUOTA}, clock=clock)
    for _ in range(3):
        limiter.check_and_consume("u1", "chat-send")
    assert limiter.check_and_consume("u2", "chat-send").allowed


def test_new_window_restores_quota(storage, clock):
    limiter = RateLimiter(storage, configs={"chat-send": QUOTA}, clock=clock)
    for _ in range(4):
        limiter.check_and_consume("u1", "chat-send")

    clock.now = WINDOW_START_MS + 60_000
    result = limiter.check_and_consume("u1", "chat-send")
    assert result.allowed
    assert result.remaining == 2


def test_old_windows_are_cleaned_up(storage, clock):
    limiter = RateLimiter(storage, configs={"chat-send": QUOTA}, clock=clock)
    limiter.check_and_consume("u1", "chat-send")

    clock.advance(3 * 60_000)
    limiter.check_and_consume("u1", "chat-send")
    assert storage.get_window("u1", "chat-send", WINDOW_START_MS) is None


def test_concurrent_callers_never_exceed_quota(storage, clock):
    limit = 10
    limiter = RateLimiter(
        storage,
        configs={"chat-send": RateLimitConfig(max_requests=limit)},
        clock=clock,
    )
    results: list[RateLimitResult] = []
    lock = threading.Lock()
    barrier = threading.Barrier(limit + 5)

    def worker():
        barrier.wait()
        result = limiter.check_and_consume("u1", "chat-send")
        with lock:
            results.append(result)

    threads = [threading.Thread(target=worker) for _ in range(limit + 5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(r.allowed for r in results) == limit
    assert storage.get_window("u1", "chat-send", WINDOW_START_MS).request_count == limit


def test_escalation_blocks_past_window_end(storage, clock):
    config = RateLimitConfig(max_requests=2, window_ms=60_000, block_duration_ms=300_000, escalate=True)
    limiter = RateLimiter(storage, configs={"chat-send": config}, clock=clock)

    for _ in range(3):
        limiter.check_and_consume("u1", "chat-send")
    assert limiter.is_blocked("u1", "chat-send")

    clock.advance(60_000)
    denied = limiter.check_and_consume("u1", "chat-send")
    assert not denied.allowed
    assert denied.retry_after == 240

    clock.advance(240_000)
    assert limiter.check_and_consume("u1", "chat-send").allowed


def test_manual_block_and_reset(storage, clock):
    limiter = RateLimiter(storage, configs={"chat-send": QUOTA}, clock=clock)
    assert limiter.block_subject("u1", "chat-send", duration_ms=10_000)
    assert not limiter.check_and_consume("u1", "chat-send").allowed

    clock.advance(10_000)
    for _ in range(3):
        limiter.check_and_consume("u1", "chat-send")
    limiter.reset("u1", "chat-send")
    assert limiter.check_and_consume("u1", "chat-send").allowed


def test_zero_quota_always_denies(storage, clock):
    limiter = RateLimiter(
        storage, configs={"chat-send": RateLimitConfig(max_requests=0)}, clock=clock
    )
    result = limiter.check_and_consume("u1", "chat-send")
    assert not result.allowed
    assert result.retry_after >= 1


def test_storage_failure_fails_open(clock):
    limiter = RateLimiter(BrokenStorage(), configs={"chat-send": QUOTA}, clock=clock)
    result = limiter.check_and_consume("u1", "chat-send")
    assert result.allowed
    assert result.remaining == 2
    assert result.reset_time == clock.now + 60_000
    assert limiter.is_blocked("u1", "chat-send") is False


def test_peek_does_not_consume(storage, clock):
    limiter = RateLimiter(storage, configs={"chat-send": QUOTA}, clock=clock)
    limiter.check_and_consume("u1", "chat-send")
    for _ in range(3):
        status = limiter.peek("u1", "chat-send")
    assert status.remaining == 2
    assert status.limit == 3


def test_subject_status_lists_recent_windows(storage, clock):
    limiter = RateLimiter(storage, clock=clock)
    limiter.check_and_consume("u1", "chat-send")
    limiter.check_and_consume("u1", "chat-session")

    status = {w.endpoint: w for w in limiter.get_subject_status("u1")}
    assert status["chat-send"].remaining == RATE_LIMIT_CONFIGS["chat-send"].max_requests - 1
    assert status["chat-session"].request_count == 1


def test_unknown_endpoint_uses_default_config(memory_storage, clock):
    limiter = RateLimiter(memory_storage, clock=clock)
    assert limiter.config_for("something-else") == RateLimitConfig()


def test_denied_result_headers():
    result = RateLimitResult(allowed=False, remaining=0, reset_time=123, limit=10, retry_after=7)
    assert result.headers() == {
        "X-RateLimit-Limit": "10",
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": "123",
        "Retry-After": "7",
    }
    allowed = RateLimitResult(allowed=True, remaining=4, reset_time=123, limit=10)
    assert "Retry-After" not in allowed.headers()


def test_invalid_window_is_rejected():
    with pytest.raises(ValueError):
        RateLimitConfig(window_ms=0)
