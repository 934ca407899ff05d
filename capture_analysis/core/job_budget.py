"""
Per-job processing budget.

A worker gives each job `timeout_seconds` of processing time. Time spent
blocked on the shared rate limiter is not processing time: the limiter only
delays calls, so waiting for a slot must never make a job look stalled.
"""

import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator, Optional

_current_budget: ContextVar[Optional["JobBudget"]] = ContextVar('capture_analysis_job_budget', default=None)


class JobBudget:
    """Stopwatch that can be paused; `remaining()` excludes paused time."""

    def __init__(self, seconds: float, clock: Optional[Callable[[], float]] = None):
        self.seconds = seconds
        self._clock = clock or time.monotonic
        self._started = self._clock()
        self._paused_total = 0.0
        self._paused_at: Optional[float] = None

    @property
    def paused(self) -> bool:
        return self._paused_at is not None

    def pause(self) -> None:
        if self._paused_at is None:
            self._paused_at = self._clock()

    def resume(self) -> None:
        if self._paused_at is not None:
            self._paused_total += self._clock() - self._paused_at
            self._paused_at = None

    def used(self) -> float:
        now = self._clock()
        paused = self._paused_total
        if self._paused_at is not None:
            paused += now - self._paused_at
        return now - self._started - paused

    def remaining(self) -> float:
        return max(0.0, self.seconds - self.used())

    def exhausted(self) -> bool:
        return self.used() >= self.seconds


def bind_budget(budget: Optional[JobBudget]):
    """Make `budget` the current one; returns a token for `unbind_budget`."""
    return _current_budget.set(budget)


def unbind_budget(token) -> None:
    _current_budget.reset(token)


@contextmanager
def budget_paused() -> Iterator[None]:
    """Stop the current job's budget for the duration of the block."""
    budget = _current_budget.get()
    if budget is None or budget.paused:
        yield
        return

    budget.pause()
    try:
        yield
    finally:
        budget.resume()
