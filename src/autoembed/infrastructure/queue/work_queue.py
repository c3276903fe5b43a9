from __future__ import annotations

import asyncio
import contextlib
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]


@dataclass(order=True, slots=True)
class _QueuedJob:
    priority: int
    sequence: int
    job: Job = field(compare=False)
    context: Any = field(compare=False, default=None)
    on_timeout: Callable[[], None] | None = field(compare=False, default=None)


class TokenBucket:
    """Admits at most ``capacity`` starts per ``interval_seconds``."""

    def __init__(self, capacity: int, interval_seconds: float) -> None:
        self.capacity = capacity
        self.interval_seconds = interval_seconds
        self._tokens = float(capacity)
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await asyncio.sleep((1 - self._tokens) * self.interval_seconds / self.capacity)

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._updated
        self._updated = now
        self._tokens = min(
            float(self.capacity),
            self._tokens + elapsed * self.capacity / self.interval_seconds,
        )


class PriorityWorkQueue:
    """Async job queue with strict priorities, bounded concurrency and a start-rate cap.

    Lower ``priority`` values run first; jobs of equal priority run in
    submission order. ``add`` is synchronous so callers can enqueue and
    account for depth without yielding to the event loop.
    """

    def __init__(
        self,
        *,
        concurrency: int,
        interval_cap: int,
        interval_seconds: float,
        timeout_seconds: float | None = None,
        name: str = "work-queue",
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self.timeout_seconds = timeout_seconds
        self.name = name
        self._rate = TokenBucket(interval_cap, interval_seconds)
        self._heap: list[_QueuedJob] = []
        self._sequence = itertools.count()
        self._pending = 0
        self._has_work = asyncio.Event()
        self._running = asyncio.Event()
        self._running.set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._drained = asyncio.Event()
        self._drained.set()
        self._workers: list[asyncio.Task[None]] = []

    @property
    def size(self) -> int:
        return len(self._heap)

    @property
    def pending(self) -> int:
        return self._pending

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(), name=f"{self.name}-{index}")
            for index in range(self.concurrency)
        ]

    def add(
        self,
        job: Job,
        *,
        priority: int = 0,
        context: Any = None,
        on_timeout: Callable[[], None] | None = None,
    ) -> None:
        heapq.heappush(
            self._heap,
            _QueuedJob(priority, next(self._sequence), job, context, on_timeout),
        )
        self._idle.clear()
        self._has_work.set()

    def pause(self) -> None:
        self._running.clear()

    def resume(self) -> None:
        self._running.set()
        self._has_work.set()

    def clear(self) -> list[Any]:
        """Drop every queued (not yet started) job and return their contexts."""
        dropped = [item.context for item in sorted(self._heap)]
        self._heap.clear()
        self._update_idle()
        return dropped

    async def on_idle(self) -> None:
        await self._idle.wait()

    async def wait_for_pending(self) -> None:
        await self._drained.wait()

    async def stop(self) -> None:
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        for worker in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await worker

    def _update_idle(self) -> None:
        if self._pending == 0:
            self._drained.set()
            if not self._heap:
                self._idle.set()

    async def _next_job(self) -> _QueuedJob:
        while True:
            await self._running.wait()
            if self._heap:
                return heapq.heappop(self._heap)
            self._has_work.clear()
            await self._has_work.wait()

    async def _worker(self) -> None:
        while True:
            item = await self._next_job()
            self._pending += 1
            self._drained.clear()
            try:
                await self._rate.acquire()
                if self.timeout_seconds is None:
                    await item.job()
                else:
                    await asyncio.wait_for(item.job(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning("Job in %s timed out after %.1fs", self.name, self.timeout_seconds)
                if item.on_timeout is not None:
                    item.on_timeout()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unhandled error in %s job", self.name)
            finally:
                self._pending -= 1
                self._update_idle()
