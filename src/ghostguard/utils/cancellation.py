"""
Cancellation and deadline propagation for a single pipeline session.

A ``CancellationToken`` is threaded through the route executor. It is checked
before every attempt and raced against every backend call and the retry
delay, so a disconnected client or an expired deadline stops the session at
the next suspension point instead of running the remaining attempts.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Optional

from ..errors import PipelineCancelled


class CancellationToken:
    """Explicit cancel flag plus an optional monotonic deadline."""

    def __init__(self, deadline: Optional[float] = None):
        self._event = asyncio.Event()
        self._deadline = deadline
        self.reason: Optional[str] = None

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self, reason: str = "cancelled by caller"):
        if self.reason is None:
            self.reason = reason
        self._event.set()

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def raise_if_cancelled(self, stage: str = "generation"):
        if self._event.is_set():
            raise PipelineCancelled(f"Pipeline session cancelled: {self.reason}", stage)
        if self.cancelled:
            raise PipelineCancelled("Pipeline session deadline exceeded", stage)

    async def _wait_cancelled(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def sleep(self, seconds: float):
        """Sleep unless cancelled first. Never sleeps past the deadline."""
        self.raise_if_cancelled()
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            await self._wait_cancelled(remaining)
            self.raise_if_cancelled()
            raise PipelineCancelled("Pipeline session deadline exceeded during retry delay")
        if await self._wait_cancelled(seconds):
            self.raise_if_cancelled()

    async def run(self, awaitable: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Await ``awaitable`` bounded by ``timeout`` and by this token.

        Raises ``asyncio.TimeoutError`` when the call's own timeout expires and
        ``PipelineCancelled`` when the token is cancelled or its deadline passes.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())

        remaining = self.remaining()
        deadline_first = remaining is not None and (timeout is None or remaining < timeout)
        limit = remaining if deadline_first else timeout

        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=limit, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        waiter.cancel()
        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if waiter in done:
            self.raise_if_cancelled()
        if deadline_first:
            raise PipelineCancelled("Pipeline session deadline exceeded")
        raise asyncio.TimeoutError(f"call exceeded {timeout}s")
