from __future__ import annotations

import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Sequence

import pytest

from autoembed.application.services.manager_service import EmbeddingManager, build_stored_embedding
from autoembed.application.services.pipeline_service import EmbeddingPipeline
from autoembed.application.services.session_worker_service import SessionEmbeddingWorker
from autoembed.application.services.vector_store_service import VectorStore
from autoembed.core.config import AutoEmbedConfig, OllamaConfig, PipelineConfig, load_paths
from autoembed.core.hashing import content_hash
from autoembed.core.ids import stored_embedding_id
from autoembed.domain.models.chunk import ChunkMetadata, ContentType
from autoembed.domain.models.embedding import EmbeddingResult, SearchOptions
from autoembed.domain.models.status import OllamaStatus
from autoembed.infrastructure.cache.embedding_cache import EmbeddingCache
from autoembed.infrastructure.vector.chunking import ContentChunker
from autoembed.infrastructure.vector.qdrant_store import QdrantBackend
from autoembed.infrastructure.vector.sqlite_vec_store import SqliteVecBackend

DIMS = 4
VECTOR = [1.0, 0.5, 0.25, 0.125]
MODEL_DIMS = 1024


class _FakeModelClient:
    def __init__(self, *, available: bool = True, dimensions: int = DIMS) -> None:
        self.config = OllamaConfig(base_url="http://fake-ollama:11434", model="fake-embed", dimensions=dimensions)
        self.vector = list(VECTOR) if dimensions == DIMS else [1.0 / (index + 1) for index in range(dimensions)]
        self.available = available
        self.model_digest: str | None = "sha256:fake"
        self.embed_calls: list[str] = []
        self.batch_calls: list[list[str]] = []

    @property
    def model_name(self) -> str:
        return self.config.model

    async def initialize(self) -> bool:
        return self.available

    async def shutdown(self) -> None:
        return None

    async def health_check(self) -> bool:
        return self.available

    def get_status(self) -> OllamaStatus:
        return OllamaStatus(
            state="healthy" if self.available else "unhealthy",
            model_loaded=self.available,
            model=self.model_name,
            model_digest=self.model_digest,
            last_health_check=None,
        )

    async def embed(self, text: str) -> EmbeddingResult | None:
        if not self.available:
            return None
        self.embed_calls.append(text)
        return EmbeddingResult(
            idempotency_key=f"fake:{text}",
            embedding=list(self.vector),
            model=self.model_name,
            processing_time=0.0,
        )

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float] | None]:
        if not self.available:
            return [None] * len(texts)
        self.batch_calls.append(list(texts))
        return [list(self.vector) for _ in texts]


def _manager(
    tmp_path: Path,
    model: _FakeModelClient,
    *,
    relational: bool = True,
    qdrant: bool = True,
) -> EmbeddingManager:
    dims = model.config.dimensions
    paths = load_paths(tmp_path / "home")
    paths.sessions_root.mkdir(parents=True, exist_ok=True)
    cache = EmbeddingCache(paths.cache_db_path)
    chunker = ContentChunker()
    pipeline = EmbeddingPipeline(
        model,
        cache,
        PipelineConfig(interval_cap=1_000, base_backoff_seconds=0, state_save_debounce_seconds=0),
        checkpoint_path=paths.checkpoint_path,
        dead_letter_path=paths.dead_letter_path,
    )
    store = VectorStore(
        relational=SqliteVecBackend(paths.vector_db_path, dimensions=dims) if relational else None,
        qdrant=QdrantBackend(dimensions=dims, location=":memory:") if qdrant else None,
    )
    worker = SessionEmbeddingWorker(
        pipeline,
        chunker,
        AutoEmbedConfig(min_content_length=5, debounce_seconds=0),
        watch_root=paths.sessions_root,
        positions_path=paths.positions_path,
        state_debounce_seconds=0,
    )
    return EmbeddingManager(
        model_client=model,
        cache=cache,
        chunker=chunker,
        pipeline=pipeline,
        vector_store=store,
        session_worker=worker,
    )


async def _next_event(manager: EmbeddingManager, kind: str):
    while True:
        event = await asyncio.wait_for(manager.events.get(), timeout=5)
        if event.kind == kind:
            return event


def test_stored_embedding_ids_are_deterministic() -> None:
    metadata = ChunkMetadata(
        source_id="doc-1",
        source_type=ContentType.DOCUMENTATION,
        chunk_index=2,
        total_chunks=3,
        timestamp=0.0,
    )

    first = build_stored_embedding("same text", VECTOR, metadata, model="fake-embed")
    second = build_stored_embedding("same text", VECTOR, metadata, model="fake-embed")

    assert first.id == second.id == stored_embedding_id("doc-1", 2, first.content_hash)
    assert first.metadata.embedding_model == "fake-embed"
    assert first.source_type is ContentType.DOCUMENTATION


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("relational", "qdrant"),
    [(True, True), (True, False), (False, True)],
    ids=["both", "sqlite-vec", "qdrant"],
)
async def test_embed_and_store_then_search(tmp_path: Path, relational: bool, qdrant: bool) -> None:
    text = "function foo() { return 1 }"
    model = _FakeModelClient(dimensions=MODEL_DIMS)
    manager = _manager(tmp_path, model, relational=relational, qdrant=qdrant)
    assert await manager.initialize() is True
    chunks = manager.chunker.chunk(text, ContentType.CODE, {"source_id": "f1"})

    stored = await manager.embed_and_store(text, "code", {"source_id": "f1"})
    results = await manager.search("foo", SearchOptions(threshold=0.7, include_content=True))
    stats = await manager.get_vector_store_stats()
    await manager.shutdown()

    assert len(chunks) == 1
    assert chunks[0].content_hash == content_hash(text)
    assert stored == 1
    assert len(results) == 1
    assert results[0].id == stored_embedding_id("f1", 0, chunks[0].content_hash)
    assert results[0].score >= 0.7
    assert results[0].metadata.source_id == "f1"
    assert results[0].metadata.source_type is ContentType.CODE
    assert results[0].metadata.embedding_model == "fake-embed"
    assert results[0].content == text
    if relational:
        assert stats["relational"]["count"] == 1
        with sqlite3.connect(load_paths(tmp_path / "home").vector_db_path) as conn:
            rows = conn.execute("SELECT content_hash FROM embeddings").fetchall()
        assert rows == [(content_hash(text),)]
    if qdrant:
        assert stats["qdrant"]["count"] == 1


@pytest.mark.asyncio
async def test_embed_and_store_reuses_cached_vectors(tmp_path: Path) -> None:
    model = _FakeModelClient()
    manager = _manager(tmp_path, model)
    await manager.initialize()

    await manager.embed_and_store("Remember: the cache is keyed by model and text.", ContentType.LEARNING)
    await manager.embed_and_store("Remember: the cache is keyed by model and text.", ContentType.LEARNING)
    cache_stats = manager.get_cache_stats()
    await manager.shutdown()

    assert len(model.batch_calls) == 1
    assert cache_stats.total_entries == 1
    assert cache_stats.hit_count >= 1


@pytest.mark.asyncio
async def test_session_entries_flow_through_pipeline_into_storage(tmp_path: Path) -> None:
    model = _FakeModelClient()
    manager = _manager(tmp_path, model)
    await manager.initialize()
    session_file = manager.session_worker.watch_root / "sess-9.jsonl"
    session_file.write_text(
        json.dumps(
            {
                "type": "user",
                "sessionId": "sess-9",
                "timestamp": "2026-01-01T00:00:00Z",
                "message": {"role": "user", "content": "Why does the watcher debounce file events?"},
            }
        )
        + "\n",
        encoding="utf-8",
    )

    assert await manager.process_session_file(session_file) == 1
    await asyncio.wait_for(manager.pipeline.wait_until_idle(), timeout=5)
    stored_event = await _next_event(manager, "stored")
    results = await manager.search("debounce", SearchOptions(session_id="sess-9"))
    deleted = await manager.delete_session_embeddings("sess-9")
    await manager.shutdown()

    assert stored_event.payload == {"stored": 1, "received": 1}
    assert [result.metadata.session_id for result in results] == ["sess-9"]
    assert deleted == 2


@pytest.mark.asyncio
async def test_manager_without_model_still_serves_storage(tmp_path: Path) -> None:
    model = _FakeModelClient(available=False)
    manager = _manager(tmp_path, model)

    assert await manager.initialize() is True
    status = manager.get_status()
    results = await manager.search_by_embedding(VECTOR)
    await manager.shutdown()

    assert status.initialized is True
    assert status.pipeline.enabled is False
    assert status.vector_store.initialized is True
    assert results == []


@pytest.mark.asyncio
async def test_manager_fails_when_nothing_is_available(tmp_path: Path) -> None:
    model = _FakeModelClient(available=False)
    manager = _manager(tmp_path, model, relational=False, qdrant=False)

    assert await manager.initialize() is False
    assert await manager.embed_and_store("anything at all", "conversation") == 0
    await manager.shutdown()


@pytest.mark.asyncio
async def test_model_digest_change_invalidates_cache(tmp_path: Path) -> None:
    model = _FakeModelClient()
    manager = _manager(tmp_path, model)
    manager.cache.set("old vector", "fake-embed", [0.1, 0.2, 0.3, 0.4])
    manager.cache.check_model_version("fake-embed", "sha256:previous")

    await manager.initialize()
    remaining = manager.cache.has("old vector", "fake-embed")
    await manager.shutdown()

    assert remaining is False


@pytest.mark.asyncio
async def test_auto_embedding_starts_and_stops(tmp_path: Path) -> None:
    manager = _manager(tmp_path, _FakeModelClient())
    assert await manager.start_auto_embedding() is False

    await manager.initialize()
    assert await manager.start_auto_embedding() is True
    assert manager.get_status().worker.running is True
    await manager.stop_auto_embedding()
    assert manager.auto_embedding is False
    await manager.shutdown()
