"""Admission control and fan-out helpers for concurrent upstream calls."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class ConcurrencyLimiter:
    """FIFO counting semaphore.

    A released slot is handed straight to the longest-waiting caller, so a
    late arrival can never jump the queue while others are waiting.
    """

    def __init__(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        if self._active < self.max_concurrent and not self._waiters:
            self._active += 1
            return

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was handed over just before cancellation; pass it on.
                self.release()
            elif fut in self._waiters:
                self._waiters.remove(fut)
            raise

    def release(self) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                # Slot ownership transfers; _active stays the same.
                fut.set_result(None)
                return
        if self._active <= 0:
            raise RuntimeError("release() called without a matching acquire()")
        self._active -= 1

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        async with self:
            return await fn()

    async def __aenter__(self) -> ConcurrencyLimiter:
        await self.acquire()
        return self

    async def __aexit__(self, *args: object) -> None:
        self.release()


@dataclass
class Outcome(Generic[T]):
    """Result of one task in a fan-out: a value or the error it raised."""

    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def gather_outcomes(aws: Iterable[Awaitable[T]]) -> list[Outcome[T]]:
    """Run awaitables concurrently and wait for all of them.

    One failure never cancels its siblings. Results keep input order.
    """
    results = await asyncio.gather(*aws, return_exceptions=True)
    outcomes: list[Outcome[T]] = []
    for res in results:
        if isinstance(res, asyncio.CancelledError):
            raise res
        if isinstance(res, BaseException):
            outcomes.append(Outcome(error=res))
        else:
            outcomes.append(Outcome(value=res))
    return outcomes
