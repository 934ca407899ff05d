"""
Sliding Window Rate Limiter

Caps outbound vision calls at N per trailing 60-second window:
- acquire() blocks until one more call fits the window, then records it
- wait = window - (now - oldest_in_window) + safety margin
- a background sweep drops timestamps that fell out of the window
"""

import asyncio
import time
from typing import Awaitable, Callable, List, Optional
from capture_analysis.core.logging_config import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class SlidingWindowRateLimiter:
    """
    Rate limiter shared by every worker in the process.

    acquire() has no failure mode: it only delays. The timestamp list is
    the one structure mutated by concurrent workers and is guarded by a lock.
    """

    def __init__(
        self,
        max_calls: int = 30,
        window_seconds: float = 60.0,
        safety_margin: float = 1.0,
        sweep_interval: float = 10.0,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None
    ):
        """
        Initialize rate limiter.

        Args:
            max_calls: Maximum calls allowed inside one window
            window_seconds: Length of the trailing window
            safety_margin: Extra seconds added to every computed wait
            sweep_interval: Seconds between background sweeps
            clock: Monotonic time source (injectable for tests)
            sleep: Coroutine used to wait (injectable for tests)
        """
        self.max_calls = max(1, max_calls)
        self.window_seconds = window_seconds
        self.safety_margin = safety_margin
        self.sweep_interval = sweep_interval
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self._timestamps: List[float] = []
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

        # Metrics
        self._total_acquired = 0
        self._total_waits = 0
        self._total_wait_seconds = 0.0

        logger.info(
            f"SlidingWindowRateLimiter initialized: "
            f"{self.max_calls} calls per {window_seconds:.0f}s, margin={safety_margin}s"
        )

    async def acquire(self) -> None:
        """Wait until a call slot is free inside the window and claim it."""
        started = self._clock()
        waited = False

        while True:
            async with self._lock:
                now = self._clock()
                self._discard_expired(now)

                if len(self._timestamps) < self.max_calls:
                    self._timestamps.append(now)
                    self._total_acquired += 1
                    if waited:
                        self._total_wait_seconds += now - started
                    return

                oldest = self._timestamps[0]
                wait_time = self.window_seconds - (now - oldest) + self.safety_margin

            if not waited:
                self._total_waits += 1
                waited = True

            logger.warning(
                "Rate limit reached, waiting",
                calls_in_window=len(self._timestamps),
                wait_seconds=round(wait_time, 2)
            )
            await self._sleep(max(wait_time, 0.0))

    def sweep(self) -> int:
        """Drop timestamps older than the window. Returns how many were removed."""
        before = len(self._timestamps)
        self._discard_expired(self._clock())
        return before - len(self._timestamps)

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug(f"Rate limiter sweep removed {removed} timestamps")

    def _discard_expired(self, now: float) -> None:
        cutoff = now - self.window_seconds
        # Timestamps are appended in clock order, so expired ones form a prefix
        index = 0
        while index < len(self._timestamps) and self._timestamps[index] <= cutoff:
            index += 1
        if index:
            del self._timestamps[:index]

    def calls_in_window(self) -> int:
        cutoff = self._clock() - self.window_seconds
        return sum(1 for t in self._timestamps if t > cutoff)

    def get_metrics(self) -> dict:
        """Get rate limiter metrics."""
        avg_wait = (
            self._total_wait_seconds / self._total_waits
            if self._total_waits > 0
            else 0.0
        )

        return {
            "max_calls_per_window": self.max_calls,
            "window_seconds": self.window_seconds,
            "calls_in_window": self.calls_in_window(),
            "tracked_timestamps": len(self._timestamps),
            "total_acquired": self._total_acquired,
            "total_waits": self._total_waits,
            "avg_wait_seconds": round(avg_wait, 3)
        }
