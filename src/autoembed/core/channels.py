from __future__ import annotations

import asyncio
import logging
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventChannel(Generic[T]):
    """Bounded single-consumer channel; a full channel drops its oldest event."""

    def __init__(self, maxsize: int = 10_000, *, name: str = "events") -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.name = name
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def publish(self, event: T) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                self.dropped += 1
                if self.dropped == 1 or self.dropped % 1000 == 0:
                    logger.warning("Event channel %s is full; dropped %d event(s) so far", self.name, self.dropped)

    async def get(self) -> T:
        return await self._queue.get()

    def drain(self) -> list[T]:
        out: list[T] = []
        while True:
            try:
                out.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return out

    def __aiter__(self) -> EventChannel[T]:
        return self

    async def __anext__(self) -> T:
        return await self._queue.get()
