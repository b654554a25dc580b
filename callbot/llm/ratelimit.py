"""
Sliding-window rate limiters for the completion API.

Two flavors:
- RateLimiter: at most `max_requests` admissions in any trailing
  `time_window` seconds.
- TokenRateLimiter: at most `max_tokens` estimated tokens in any trailing
  `time_window` seconds.

State is process-local and resets on restart. Admission decisions are
serialized with an asyncio.Lock, so callers fanned out with
asyncio.gather queue up in arrival order.

Usage:
    limiter = RateLimiter(max_requests=50, time_window=1.0)
    await limiter.admit()
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class RateLimiter:
    """Request-count limiter over a sliding time window."""

    def __init__(
        self,
        max_requests: int,
        time_window: float,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if time_window <= 0:
            raise ValueError("time_window must be positive")

        self.max_requests = max_requests
        self.time_window = time_window
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.time_window:
            self._timestamps.popleft()

    async def admit(self) -> float:
        """
        Wait until one more request fits in the window, then record it.

        Returns:
            Total seconds spent waiting (0.0 when admitted immediately).
        """
        waited = 0.0
        async with self._lock:
            now = self._clock()
            self._prune(now)

            while len(self._timestamps) >= self.max_requests:
                wait = self.time_window - (now - self._timestamps[0])
                logger.debug(
                    "ratelimit.requests.waiting",
                    extra={
                        "action": "ratelimit.requests.waiting",
                        "wait_seconds": round(wait, 4),
                        "in_window": len(self._timestamps),
                    },
                )
                await self._sleep(wait)
                waited += wait
                now = self._clock()
                self._prune(now)

            self._timestamps.append(now)

        return waited

    @property
    def in_window(self) -> int:
        """Admissions currently counted against the window."""
        self._prune(self._clock())
        return len(self._timestamps)


class TokenRateLimiter:
    """
    Token-volume limiter over a sliding time window.

    A request estimated above the whole budget is admitted once the window
    has drained, otherwise it could never run.
    """

    def __init__(
        self,
        max_tokens: int,
        time_window: float,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        if max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")
        if time_window <= 0:
            raise ValueError("time_window must be positive")

        self.max_tokens = max_tokens
        self.time_window = time_window
        self._clock = clock
        self._sleep = sleep
        self._usage: deque[tuple[float, int]] = deque()
        self._total = 0
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._usage and now - self._usage[0][0] >= self.time_window:
            _, tokens = self._usage.popleft()
            self._total -= tokens

    async def admit(self, tokens: int) -> float:
        """
        Wait until `tokens` more fit in the rolling budget, then record them.

        Returns:
            Total seconds spent waiting.
        """
        tokens = max(0, int(tokens))
        waited = 0.0
        async with self._lock:
            now = self._clock()
            self._prune(now)

            while self._usage and self._total + tokens > self.max_tokens:
                wait = self.time_window - (now - self._usage[0][0])
                logger.debug(
                    "ratelimit.tokens.waiting",
                    extra={
                        "action": "ratelimit.tokens.waiting",
                        "wait_seconds": round(wait, 4),
                        "tokens_in_window": self._total,
                        "requested_tokens": tokens,
                    },
                )
                await self._sleep(wait)
                waited += wait
                now = self._clock()
                self._prune(now)

            self._usage.append((now, tokens))
            self._total += tokens

        return waited

    @property
    def tokens_in_window(self) -> int:
        self._prune(self._clock())
        return self._total
