"""Sliding-window request gate for the PracticePanther API quota."""
import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 300
DEFAULT_WINDOW_SECONDS = 300.0


class RateLimiter:
    """Delay outbound requests so no more than max_requests fall in any window.

    Requests are never dropped: at capacity, before_request() sleeps until the
    oldest recorded request leaves the window, then records the new one.

    Safe under asyncio's single-threaded model; state is per instance, so each
    process (or test) gets its own quota view.
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    @property
    def in_window(self) -> int:
        """Number of requests recorded in the current window."""
        self._prune(self._clock())
        return len(self._timestamps)

    async def before_request(self) -> None:
        """Wait until a request slot is free, then claim it."""
        while True:
            now = self._clock()
            self._prune(now)
            if len(self._timestamps) < self.max_requests:
                self._timestamps.append(now)
                return
            wait = self._timestamps[0] + self.window_seconds - now
            logger.info(
                "Rate limit reached (%d requests / %.0fs); waiting %.1fs",
                self.max_requests, self.window_seconds, wait,
            )
            await self._sleep(max(wait, 0.0))
