from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Sequence

from autoembed.core.config import VectorStoreConfig
from autoembed.domain.models.embedding import SearchOptions, SearchResult, StoredEmbedding
from autoembed.domain.models.status import BackendHealth, VectorStoreHealth
from autoembed.infrastructure.vector.base import VectorBackend

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _BackendSlot:
    role: str
    backend: VectorBackend | None
    enabled: bool
    connected: bool = False
    last_error: str | None = None
    retry_at: float = 0.0

    @property
    def usable(self) -> bool:
        return self.enabled and self.connected and self.backend is not None

    def health(self) -> BackendHealth:
        return BackendHealth(
            name=self.backend.name if self.backend is not None else self.role,
            enabled=self.enabled and self.backend is not None,
            connected=self.usable,
            last_error=self.last_error,
        )


class VectorStore:
    """Dual-write facade over the relational (sqlite-vec) and Qdrant backends.

    Writes fan out to every connected backend and succeed when at least one
    accepts. Searches try the relational backend first and fall back to
    Qdrant when it errors.
    """

    def __init__(
        self,
        *,
        relational: VectorBackend | None,
        qdrant: VectorBackend | None,
        config: VectorStoreConfig | None = None,
    ) -> None:
        self.config = config or VectorStoreConfig()
        self._relational = _BackendSlot("relational", relational, self.config.enable_relational)
        self._qdrant = _BackendSlot("qdrant", qdrant, self.config.enable_qdrant)
        self.initialized = False
        self._started = False

    @property
    def _slots(self) -> tuple[_BackendSlot, _BackendSlot]:
        return (self._relational, self._qdrant)

    async def initialize(self) -> bool:
        self._started = True
        await asyncio.gather(*(self._connect(slot) for slot in self._slots))
        self.initialized = self._relational.connected or self._qdrant.connected
        if self.initialized:
            logger.info(
                "Vector store ready (relational=%s, qdrant=%s)",
                self._relational.connected,
                self._qdrant.connected,
            )
        else:
            logger.error("Vector store unavailable: no backend could be initialized")
        return self.initialized

    async def shutdown(self) -> None:
        for slot in self._slots:
            if slot.backend is None or not slot.connected:
                continue
            try:
                await slot.backend.close()
            except Exception as exc:
                logger.warning("Error closing %s backend: %s", slot.role, exc)
            slot.connected = False
        self.initialized = False
        self._started = False

    async def store(self, embedding: StoredEmbedding) -> bool:
        return await self._write([embedding]) > 0

    async def store_batch(self, embeddings: Sequence[StoredEmbedding]) -> int:
        stored = 0
        size = self.config.batch_size
        for start in range(0, len(embeddings), size):
            stored += await self._write(list(embeddings[start : start + size]))
        return stored

    async def search(self, vector: Sequence[float], options: SearchOptions | None = None) -> list[SearchResult]:
        options = options or SearchOptions()
        await self._maybe_reconnect()
        for slot in self._slots:
            if not slot.usable:
                continue
            try:
                return await slot.backend.search(vector, options)
            except Exception as exc:
                self._mark_failed(slot, exc)
                logger.warning("Search on %s backend failed, trying fallback: %s", slot.role, exc)
        return []

    async def delete_by_source_id(self, source_id: str) -> int:
        return await self._delete(source_id=source_id)

    async def delete_by_session_id(self, session_id: str) -> int:
        return await self._delete(session_id=session_id)

    async def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {}
        for slot in self._slots:
            count: int | None = None
            if slot.usable:
                try:
                    count = await slot.backend.count()
                except Exception as exc:
                    self._mark_failed(slot, exc)
            stats[slot.role] = {
                "backend": slot.backend.name if slot.backend is not None else None,
                "connected": slot.usable,
                "count": count,
            }
        return stats

    def get_health(self) -> VectorStoreHealth:
        return VectorStoreHealth(
            initialized=self.initialized,
            relational=self._relational.health(),
            qdrant=self._qdrant.health(),
        )

    async def _connect(self, slot: _BackendSlot) -> bool:
        if not slot.enabled or slot.backend is None:
            return False
        try:
            await slot.backend.initialize()
        except Exception as exc:
            self._mark_failed(slot, exc)
            logger.warning("Failed to initialize %s backend %s: %s", slot.role, slot.backend.name, exc)
            return False
        slot.connected = True
        slot.last_error = None
        return True

    async def _maybe_reconnect(self) -> None:
        if not self._started:
            return
        now = time.monotonic()
        stale = [
            slot
            for slot in self._slots
            if slot.enabled and slot.backend is not None and not slot.connected and now >= slot.retry_at
        ]
        if stale:
            await asyncio.gather(*(self._connect(slot) for slot in stale))
            self.initialized = self._relational.connected or self._qdrant.connected

    def _mark_failed(self, slot: _BackendSlot, exc: BaseException) -> None:
        slot.connected = False
        slot.last_error = str(exc) or type(exc).__name__
        slot.retry_at = time.monotonic() + self.config.reconnect_interval_seconds

    async def _write(self, batch: list[StoredEmbedding]) -> int:
        if not batch:
            return 0
        await self._maybe_reconnect()
        slots = [slot for slot in self._slots if slot.usable]
        if not slots:
            logger.warning("Dropping %d embedding(s): no vector backend is connected", len(batch))
            return 0
        outcomes = await asyncio.gather(
            *(slot.backend.upsert(batch) for slot in slots),
            return_exceptions=True,
        )
        accepted = 0
        for slot, outcome in zip(slots, outcomes):
            if isinstance(outcome, BaseException):
                self._mark_failed(slot, outcome)
                logger.warning("Write to %s backend failed: %s", slot.role, outcome)
                continue
            accepted = max(accepted, int(outcome))
        return accepted

    async def _delete(self, **selector: str) -> int:
        await self._maybe_reconnect()
        slots = [slot for slot in self._slots if slot.usable]
        outcomes = await asyncio.gather(
            *(slot.backend.delete(**selector) for slot in slots),
            return_exceptions=True,
        )
        deleted = 0
        for slot, outcome in zip(slots, outcomes):
            if isinstance(outcome, BaseException):
                self._mark_failed(slot, outcome)
                logger.warning("Delete on %s backend failed: %s", slot.role, outcome)
                continue
            # Each backend reports its own count, so a record held by both counts twice.
            deleted += int(outcome)
        return deleted
