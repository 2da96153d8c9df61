from __future__ import annotations

import time
from typing import Callable

from chatnest.models import ProfileLimits


class FixedWindowRateLimiter:
    """Single shared request counter with a fixed window.

    The window length and ceiling come from the limits passed on each call,
    so one bucket is checked against whichever profile the current request
    resolved to. A request that crosses the window boundary opens the new
    window and is counted as its first request.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.window_start_ms = self._now_ms()
        self.count = 0

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def is_limited(self, limits: ProfileLimits) -> bool:
        window_ms = limits.rate_limit.window_ms
        now = self._now_ms()
        if now - self.window_start_ms > window_ms:
            self.window_start_ms = now
            self.count = 0
        self.count += 1
        return self.count > limits.rate_limit.max_requests
