from __future__ import annotations

from typing import Protocol, Sequence

from autoembed.domain.models.embedding import SearchOptions, SearchResult, StoredEmbedding


class VectorBackend(Protocol):
    name: str

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def upsert(self, embeddings: Sequence[StoredEmbedding]) -> int: ...

    async def search(self, vector: Sequence[float], options: SearchOptions) -> list[SearchResult]: ...

    async def delete(self, *, source_id: str | None = None, session_id: str | None = None) -> int: ...

    async def count(self) -> int: ...
