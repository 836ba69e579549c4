"""Wall-clock budgets shared by the transcription runner and pipeline stages."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


class DeadlineExceeded(Exception):
    """Raised when a stage runs past the budget it was handed."""

    def __init__(self, stage: str, budget_seconds: Optional[float] = None):
        self.stage = stage
        self.budget_seconds = budget_seconds
        if budget_seconds is not None:
            message = f"{stage} exceeded its {budget_seconds:.0f}s time budget"
        else:
            message = f"{stage} exceeded its time budget"
        super().__init__(message)


@dataclass(frozen=True)
class Deadline:
    """
    Absolute point on the monotonic clock after which work must stop.

    Deadlines nest: `child()` never outlives its parent, so the per-job ceiling and
    the runner's overall budget compose by taking whichever ends first.
    """

    expires_at: float
    budget_seconds: float
    clock: Callable[[], float] = time.monotonic

    @classmethod
    def after(cls, seconds: float, clock: Callable[[], float] = time.monotonic) -> "Deadline":
        seconds = max(float(seconds), 0.0)
        return cls(expires_at=clock() + seconds, budget_seconds=seconds, clock=clock)

    def remaining(self) -> float:
        return max(self.expires_at - self.clock(), 0.0)

    def expired(self) -> bool:
        return self.clock() >= self.expires_at

    def child(self, seconds: float) -> "Deadline":
        seconds = max(float(seconds), 0.0)
        expires_at = min(self.clock() + seconds, self.expires_at)
        return Deadline(expires_at=expires_at, budget_seconds=seconds, clock=self.clock)

    def check(self, stage: str) -> None:
        """Raise DeadlineExceeded if the budget is already spent before a stage starts."""
        if self.expired():
            raise DeadlineExceeded(stage, self.budget_seconds)

    async def run(self, awaitable: Awaitable[T], stage: str) -> T:
        """Await a suspension point, cancelling it when the budget runs out."""
        if self.expired():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise DeadlineExceeded(stage, self.budget_seconds)
        try:
            return await asyncio.wait_for(awaitable, timeout=self.remaining())
        except asyncio.TimeoutError as exc:
            raise DeadlineExceeded(stage, self.budget_seconds) from exc

    async def run_in_thread(self, stage: str, func: Callable[..., T], *args, **kwargs) -> T:
        """
        Run blocking I/O in a worker thread under this deadline.

        The thread itself cannot be interrupted; on expiry the caller stops waiting
        and the thread's result is discarded.
        """
        return await self.run(asyncio.to_thread(func, *args, **kwargs), stage)
