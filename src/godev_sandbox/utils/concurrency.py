"""Async primitives that gate sandboxed executions.

``BoundedSemaphore`` hands slots over strictly in arrival order, ``WorkerPool`` runs a
batch with bounded concurrency, and ``run_with_timeout`` races an awaitable against
a deadline and a ``CancellationToken``.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Iterable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag that can also be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError("operation cancelled")


class BoundedSemaphore:
    """
    Slot limiter with strict FIFO hand-off.

    A released slot goes straight to the oldest waiter, so a newcomer can never
    overtake the queue. A waiter cancelled while queued never holds a slot; one
    cancelled just after being handed a slot passes it on.
    """

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._in_use = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    @property
    def available(self) -> int:
        return self._limit - self._in_use

    async def acquire(self) -> None:
        if self._in_use < self._limit and not self._waiters:
            self._in_use += 1
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                self._in_use -= 1
                self._hand_off()
            raise
        finally:
            with suppress(ValueError):
                self._waiters.remove(waiter)

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release called more times than acquire")
        self._in_use -= 1
        self._hand_off()

    def _hand_off(self) -> None:
        while self._waiters and self._in_use < self._limit:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._in_use += 1
                waiter.set_result(None)

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {
            "limit": self._limit,
            "in_use": self._in_use,
            "waiting": self.waiting,
            "available": self.available,
        }


@dataclass(slots=True)
class WorkerPool(Generic[T]):
    """Run a batch of coroutines, at most ``max_concurrency`` at a time."""

    max_concurrency: int
    cancel_token: CancellationToken | None = None
    _token: CancellationToken = field(init=False, repr=False)
    _slots: BoundedSemaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self._token = self.cancel_token or CancellationToken()
        self._slots = BoundedSemaphore(self.max_concurrency)

    async def run_ordered(self, coroutines: Iterable[Awaitable[T]]) -> list[T]:
        """Return results in input order; the first failure cancels the rest and is raised."""

        tasks: list[asyncio.Task[T]] = []
        for coroutine in coroutines:
            if self._token.is_cancelled:
                _discard(coroutine)
            else:
                tasks.append(asyncio.create_task(self._guarded(coroutine)))
        try:
            self._token.raise_if_cancelled()
            for finished in asyncio.as_completed(tasks):
                await finished
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return [task.result() for task in tasks]

    async def _guarded(self, coroutine: Awaitable[T]) -> T:
        async with self._slots.permit():
            self._token.raise_if_cancelled()
            return await coroutine


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``awaitable``; raise ``TimeoutError`` past the deadline, ``CancelledError`` on
    token cancellation. The awaitable is cancelled in both cases."""

    if timeout_seconds <= 0:
        _discard(awaitable)
        raise ValueError("timeout_seconds must be > 0")
    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _discard(awaitable)
        raise asyncio.CancelledError("operation cancelled")

    work: asyncio.Future[T] = asyncio.ensure_future(awaitable)
    stop = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {work, stop}, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
        )
        if work in done:
            return work.result()
        if stop in done:
            raise asyncio.CancelledError("operation cancelled")
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        for pending in (work, stop):
            if not pending.done():
                pending.cancel()
        await asyncio.gather(work, stop, return_exceptions=True)


def _discard(awaitable: Awaitable[object]) -> None:
    # Avoids "coroutine was never awaited" warnings for coroutines never scheduled.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "WorkerPool",
    "run_with_timeout",
]
