"""Tests for the process-wide fixed-window rate limiter."""

from dataclasses import replace

from chatnest.models import RateLimit, UsageProfile
from chatnest.service.profiles import PROFILES
from chatnest.service.rate_limit import FixedWindowRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _limits(max_requests: int, window_ms: int = 1000):
    return replace(
        PROFILES[UsageProfile.BALANCED],
        rate_limit=RateLimit(window_ms=window_ms, max_requests=max_requests),
    )


class TestFixedWindowRateLimiter:
    def test_request_over_ceiling_is_limited(self):
        limiter = FixedWindowRateLimiter(clock=FakeClock())
        limits = _limits(3)
        assert [limiter.is_limited(limits) for _ in range(4)] == [False, False, False, True]

    def test_limited_requests_still_count(self):
        limiter = FixedWindowRateLimiter(clock=FakeClock())
        limits = _limits(1)
        limiter.is_limited(limits)
        limiter.is_limited(limits)
        assert limiter.count == 2

    def test_boundary_crossing_starts_new_window(self):
        clock = FakeClock()
        limiter = FixedWindowRateLimiter(clock=clock)
        limits = _limits(2, window_ms=1000)
        for _ in range(3):
            limiter.is_limited(limits)
        clock.now += 1.001
        assert limiter.is_limited(limits) is False
        assert limiter.count == 1

    def test_exact_window_length_stays_in_window(self):
        clock = FakeClock()
        limiter = FixedWindowRateLimiter(clock=clock)
        limits = _limits(1, window_ms=1000)
        limiter.is_limited(limits)
        clock.now += 1.0
        assert limiter.is_limited(limits) is True

    def test_ceiling_follows_current_profile(self):
        limiter = FixedWindowRateLimiter(clock=FakeClock())
        for _ in range(15):
            assert not limiter.is_limited(PROFILES[UsageProfile.EXPANDED])
        # Shared counter: a constrained request now sees 16 > 15
        assert limiter.is_limited(PROFILES[UsageProfile.CONSTRAINED])
