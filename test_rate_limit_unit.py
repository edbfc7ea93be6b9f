"""
Unit tests for the fixed-window rate limiter and its RateLimitExceeded error.
Time is driven by a fake clock, so no test sleeps.
"""
import pytest

from agencychat.chat.rate_limit import RateLimiter
from agencychat.chat.router import RateLimitExceeded, RouteStatus


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# ─────────────────────────────────────────────
# RateLimitExceeded exception unit tests
# ─────────────────────────────────────────────

class TestRateLimitExceeded:
    def test_attributes(self):
        exc = RateLimitExceeded(limit=20, window=60, retry_after=42, scope="message")
        assert exc.limit == 20
        assert exc.window == 60
        assert exc.retry_after == 42
        assert exc.scope == "message"

    def test_str_contains_limit_and_window(self):
        exc = RateLimitExceeded(limit=5, window=60, retry_after=60, scope="file")
        assert "5" in str(exc)
        assert "60" in str(exc)

    def test_result_carries_retry_after(self):
        result = RateLimitExceeded(limit=5, window=60, retry_after=17, scope="message").to_result()
        assert result.status is RouteStatus.RATE_LIMITED
        assert result.retry_after == 17
        assert result.error_envelope()["data"]["retryAfter"] == 17


# ─────────────────────────────────────────────
# Limiter behaviour
# ─────────────────────────────────────────────

def test_twenty_messages_then_blocked_then_new_window(clock):
    limiter = RateLimiter(limits={"message": 20, "file": 10}, window_seconds=60, clock=clock)
    results = [limiter.allow("u1", "message") for _ in range(20)]
    assert results == [True] * 20
    assert limiter.allow("u1", "message") is False

    clock.advance(61)
    assert limiter.allow("u1", "message") is True


def test_window_boundary_is_still_inside(clock):
    limiter = RateLimiter(limits={"message": 1}, window_seconds=60, clock=clock)
    assert limiter.allow("u1", "message") is True
    clock.advance(60)
    assert limiter.allow("u1", "message") is False
    clock.advance(0.5)
    assert limiter.allow("u1", "message") is True


def test_file_class_has_its_own_budget(clock):
    limiter = RateLimiter(limits={"message": 20, "file": 10}, clock=clock)
    assert all(limiter.allow("u1", "file") for _ in range(10))
    assert limiter.allow("u1", "file") is False
    # message quota untouched
    assert limiter.allow("u1", "message") is True


def test_users_are_independent(clock):
    limiter = RateLimiter(limits={"message": 3}, clock=clock)
    for _ in range(3):
        assert limiter.allow("a", "message")
    assert limiter.allow("a", "message") is False
    assert limiter.allow("b", "message") is True


def test_denial_does_not_consume(clock):
    limiter = RateLimiter(limits={"message": 2}, clock=clock)
    limiter.allow("u1", "message")
    limiter.allow("u1", "message")
    for _ in range(5):
        assert limiter.allow("u1", "message") is False
    clock.advance(61)
    assert limiter.allow("u1", "message") is True
    assert limiter.allow("u1", "message") is True
    assert limiter.allow("u1", "message") is False


def test_per_call_limit_override(clock):
    limiter = RateLimiter(limits={"message": 20}, clock=clock)
    assert limiter.allow("u1", "message", limit=2)
    assert limiter.allow("u1", "message", limit=2)
    assert limiter.allow("u1", "message", limit=2) is False


def test_retry_after_counts_down(clock):
    limiter = RateLimiter(limits={"message": 1}, window_seconds=60, clock=clock)
    assert limiter.retry_after("u1", "message") == 0
    limiter.allow("u1", "message")
    clock.advance(20)
    assert limiter.retry_after("u1", "message") == 40


def test_sweep_drops_only_expired(clock):
    limiter = RateLimiter(clock=clock)
    limiter.allow("old", "message")
    clock.advance(30)
    limiter.allow("fresh", "message")
    clock.advance(31)
    assert limiter.sweep() == 1
    assert len(limiter) == 1


def test_reset_user(clock):
    limiter = RateLimiter(limits={"message": 1, "file": 1}, clock=clock)
    limiter.allow("u1", "message")
    limiter.allow("u1", "file")
    limiter.allow("u2", "message")
    limiter.reset("u1")
    assert len(limiter) == 1
    assert limiter.allow("u1", "message") is True


def test_unknown_action_rejected(clock):
    with pytest.raises(ValueError):
        RateLimiter(clock=clock).allow("u1", "upload")


@pytest.mark.parametrize("limit", [0, -3])
def test_non_positive_limit_blocks_from_first_call(clock, limit):
    limiter = RateLimiter(clock=clock)
    assert limiter.allow("u1", "message", limit=limit) is False
    assert limiter.allow("u1", "message", limit=limit) is False
    # the default quota for the same user is untouched
    assert limiter.allow("u1", "message") is True
