from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Minimum spacing between outbound requests to one site, plus a penalty that
    grows on 429/timeouts and decays on success.

    The spacing for each request is ``delay + uniform(0, jitter)``, counted from the
    moment the previous request finished (``mark_done``), so slow responses never
    eat into the pause. The first call never waits unless a penalty is active.
    """

    def __init__(
        self,
        delay_ms: int,
        jitter_ms: int = 0,
        *,
        penalty_initial_ms: int = 8000,
        penalty_max_ms: int = 60000,
        penalty_decay_mult: float = 0.66,
        retry_after_max_s: float = 120.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.delay_ms = max(0, int(delay_ms))
        self.jitter_ms = max(0, int(jitter_ms))
        self.penalty_initial_ms = max(0, int(penalty_initial_ms))
        self.penalty_max_ms = max(self.penalty_initial_ms, int(penalty_max_ms))
        self.penalty_decay_mult = min(1.0, max(0.0, float(penalty_decay_mult)))
        self.retry_after_max_s = float(retry_after_max_s)

        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()
        self._last_request_t: Optional[float] = None
        self._penalty_ms: float = 0.0
        self.total_slept_s: float = 0.0

    @property
    def penalty_ms(self) -> float:
        return self._penalty_ms

    def _interval_s(self) -> float:
        jitter = self._rng.uniform(0, self.jitter_ms) if self.jitter_ms else 0.0
        return (self.delay_ms + jitter) / 1000.0

    async def wait(self) -> float:
        """Sleep until the next request may go out. Returns seconds slept."""
        min_interval_s = self._interval_s()
        penalty_s = max(0.0, self._penalty_ms / 1000.0)
        async with self._lock:
            now = self._clock()
            delay = 0.0
            if self._last_request_t is not None and min_interval_s > 0:
                elapsed = now - self._last_request_t
                if elapsed < min_interval_s:
                    delay += (min_interval_s - elapsed)
            delay += penalty_s
            self._last_request_t = now + delay
        if delay > 0:
            self.total_slept_s += delay
            await self._sleep(delay)
        return delay

    def mark_done(self) -> None:
        """Record that the request released by ``wait`` has completed."""
        self._last_request_t = self._clock()

    def penalize(self, retry_after_s: Optional[float] = None, *, reason: str = "429") -> None:
        """Grow the penalty; an explicit Retry-After (capped) wins when it is larger."""
        if self._penalty_ms <= 0:
            penalty = float(self.penalty_initial_ms)
        else:
            penalty = min(float(self.penalty_max_ms), self._penalty_ms * 1.5)
        if retry_after_s:
            capped = min(self.retry_after_max_s, max(0.0, retry_after_s))
            penalty = max(penalty, capped * 1000.0)
        self._penalty_ms = penalty
        logger.info("Throttle: penalty now %.0fms (%s)", self._penalty_ms, reason)

    def penalize_timeout(self) -> None:
        """Smaller bump than 429: network slowness."""
        base = max(500.0, self._penalty_ms)
        self._penalty_ms = min(float(self.penalty_max_ms), base * 1.25)

    def relax(self) -> None:
        if self._penalty_ms > 0:
            self._penalty_ms *= self.penalty_decay_mult
            if self._penalty_ms < 50:
                self._penalty_ms = 0.0
