from __future__ import annotations

import asyncio
import dataclasses
import logging
import sqlite3
from pathlib import Path
from typing import Any, Mapping, Sequence

from autoembed.application.services.pipeline_service import EmbeddingPipeline
from autoembed.application.services.session_worker_service import SessionEmbeddingWorker
from autoembed.application.services.vector_store_service import VectorStore
from autoembed.core.channels import EventChannel
from autoembed.core.config import AppPaths, ManagerConfig, load_manager_config, load_paths
from autoembed.core.errors import CacheError
from autoembed.core.hashing import content_hash
from autoembed.core.ids import stored_embedding_id
from autoembed.domain.models.chunk import ChunkMetadata, ContentType
from autoembed.domain.models.embedding import (
    EmbeddingResult,
    EmbeddingTask,
    SearchOptions,
    SearchResult,
    StoredEmbedding,
)
from autoembed.domain.models.pipeline import DeadLetterItem, PipelineEvent, PipelineMetrics
from autoembed.domain.models.status import CacheStats, ManagerStatus
from autoembed.infrastructure.cache.embedding_cache import EmbeddingCache
from autoembed.infrastructure.vector.chunking import ContentChunker
from autoembed.infrastructure.vector.embeddings import OllamaEmbeddingClient
from autoembed.infrastructure.vector.qdrant_store import QdrantBackend
from autoembed.infrastructure.vector.sqlite_vec_store import SqliteVecBackend

logger = logging.getLogger(__name__)

_STOP_CONSUMER = PipelineEvent(kind="progress", payload=None)


def build_stored_embedding(
    text: str,
    vector: Sequence[float],
    metadata: ChunkMetadata,
    *,
    model: str | None = None,
) -> StoredEmbedding:
    if model and metadata.embedding_model is None:
        metadata = dataclasses.replace(metadata, embedding_model=model)
    digest = content_hash(text)
    return StoredEmbedding(
        id=stored_embedding_id(metadata.source_id, metadata.chunk_index, digest),
        content_hash=digest,
        content=text,
        embedding=list(vector),
        source_type=metadata.source_type,
        source_id=metadata.source_id,
        metadata=metadata,
        session_id=metadata.session_id,
    )


class EmbeddingManager:
    """Facade that owns every embedding component and routes pipeline results to storage."""

    def __init__(
        self,
        *,
        model_client: OllamaEmbeddingClient,
        cache: EmbeddingCache,
        chunker: ContentChunker,
        pipeline: EmbeddingPipeline,
        vector_store: VectorStore,
        session_worker: SessionEmbeddingWorker,
        auto_start: bool = False,
    ) -> None:
        self.model_client = model_client
        self.cache = cache
        self.chunker = chunker
        self.pipeline = pipeline
        self.vector_store = vector_store
        self.session_worker = session_worker
        self.auto_start = auto_start
        self.events: EventChannel[PipelineEvent] = EventChannel(
            pipeline.config.event_channel_size,
            name="manager",
        )
        self.initialized = False
        self._auto_embedding = False
        self._consumer_task: asyncio.Task[None] | None = None

    @classmethod
    def create(cls, config: ManagerConfig | None = None, paths: AppPaths | None = None) -> EmbeddingManager:
        config = config or load_manager_config()
        paths = paths or load_paths()
        store_config = config.vector_store
        dimensions = config.ollama.dimensions

        model_client = OllamaEmbeddingClient(config.ollama)
        cache = EmbeddingCache(paths.cache_db_path)
        chunker = ContentChunker(config.chunking)
        pipeline = EmbeddingPipeline(
            model_client,
            cache,
            config.pipeline,
            checkpoint_path=paths.checkpoint_path,
            dead_letter_path=paths.dead_letter_path,
        )
        relational = (
            SqliteVecBackend(paths.vector_db_path, dimensions=dimensions)
            if store_config.enable_relational
            else None
        )
        qdrant = (
            QdrantBackend(
                dimensions=dimensions,
                collection_name=store_config.qdrant_collection,
                url=store_config.qdrant_url,
                api_key=store_config.qdrant_api_key,
                storage_path=None if store_config.qdrant_url else paths.qdrant_dir,
                timeout_seconds=store_config.qdrant_timeout_seconds,
            )
            if store_config.enable_qdrant
            else None
        )
        session_worker = SessionEmbeddingWorker(
            pipeline,
            chunker,
            config.auto_embed,
            watch_root=paths.sessions_root,
            positions_path=paths.positions_path,
            state_debounce_seconds=config.pipeline.state_save_debounce_seconds,
        )
        return cls(
            model_client=model_client,
            cache=cache,
            chunker=chunker,
            pipeline=pipeline,
            vector_store=VectorStore(relational=relational, qdrant=qdrant, config=store_config),
            session_worker=session_worker,
            auto_start=config.auto_start,
        )

    @property
    def auto_embedding(self) -> bool:
        return self._auto_embedding

    async def initialize(self) -> bool:
        if self.initialized:
            return True
        model_ok, store_ok = await asyncio.gather(
            self.model_client.initialize(),
            self.vector_store.initialize(),
        )
        if model_ok:
            await self.pipeline.initialize()
            self._check_model_version()
        else:
            logger.warning("Model server is unavailable; the embedding pipeline was not started")
        self._sync_connection_status()

        self.initialized = model_ok or store_ok
        if not self.initialized:
            logger.error("Embedding manager failed to initialize: no component is available")
            return False

        self._consumer_task = asyncio.create_task(self._consume_pipeline_events(), name="embedding-results")
        logger.info("Embedding manager ready (model=%s, storage=%s)", model_ok, store_ok)
        if self.auto_start:
            await self.start_auto_embedding()
        return True

    async def shutdown(self) -> None:
        await self.stop_auto_embedding()
        await self.pipeline.shutdown()
        await self._stop_consumer()
        await asyncio.gather(self.model_client.shutdown(), self.vector_store.shutdown())
        self.cache.close()
        self.initialized = False
        logger.info("Embedding manager shut down")

    async def start_auto_embedding(self) -> bool:
        if not self.initialized:
            logger.warning("Cannot start auto-embedding before the manager is initialized")
            return False
        if self._auto_embedding:
            return True
        self._auto_embedding = await self.session_worker.start()
        return self._auto_embedding

    async def stop_auto_embedding(self) -> None:
        if not self._auto_embedding:
            return
        await self.session_worker.stop()
        self._auto_embedding = False

    async def embed(self, text: str) -> EmbeddingResult | None:
        if not self.initialized:
            return None
        return await self.model_client.embed(text)

    async def embed_and_store(
        self,
        content: str,
        content_type: ContentType | str,
        metadata: Mapping[str, Any] | None = None,
    ) -> int:
        """Chunk, embed and store ``content`` synchronously; returns the number of chunks stored."""
        if not self.initialized:
            return 0
        model = self.model_client.model_name
        chunks = self.chunker.chunk(content, content_type, {**(metadata or {}), "embedding_model": model})
        if not chunks:
            return 0

        try:
            cached = self.cache.get_many([chunk.text for chunk in chunks], model)
        except (CacheError, sqlite3.Error) as exc:
            logger.warning("Embedding cache lookup failed: %s", exc)
            cached = {}
        misses = list(dict.fromkeys(chunk.text for chunk in chunks if chunk.text not in cached))
        if misses:
            vectors = await self.model_client.embed_batch(misses)
            for text, vector in zip(misses, vectors):
                if vector is None:
                    continue
                cached[text] = vector
                try:
                    self.cache.set(text, model, vector, self.model_client.model_digest)
                except (CacheError, sqlite3.Error) as exc:
                    logger.warning("Failed to cache embedding: %s", exc)

        embeddings = [
            build_stored_embedding(chunk.text, cached[chunk.text], chunk.metadata)
            for chunk in chunks
            if chunk.text in cached
        ]
        if len(embeddings) < len(chunks):
            logger.warning("Embedded %d of %d chunk(s)", len(embeddings), len(chunks))
        if not embeddings:
            return 0
        return await self.vector_store.store_batch(embeddings)

    async def search(self, query: str, options: SearchOptions | None = None) -> list[SearchResult]:
        if not self.initialized:
            return []
        result = await self.model_client.embed(query)
        if result is None:
            return []
        return await self.vector_store.search(result.embedding, options)

    async def search_by_embedding(
        self,
        vector: Sequence[float],
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        if not self.initialized:
            return []
        return await self.vector_store.search(vector, options)

    def get_status(self) -> ManagerStatus:
        return ManagerStatus(
            initialized=self.initialized,
            auto_embedding=self._auto_embedding,
            model=self.model_client.get_status(),
            pipeline=self.pipeline.get_status(),
            vector_store=self.vector_store.get_health(),
            worker=self.session_worker.get_status(),
        )

    def get_metrics(self) -> PipelineMetrics:
        return self.pipeline.get_metrics()

    def get_cache_stats(self) -> CacheStats:
        return self.cache.get_stats()

    async def get_vector_store_stats(self) -> dict[str, Any]:
        return await self.vector_store.get_stats()

    def reset_metrics(self) -> None:
        self.pipeline.reset_metrics()

    def get_dead_letter_queue(self) -> list[DeadLetterItem]:
        return self.pipeline.get_dead_letter_queue()

    def retry_dead_letter_queue(self) -> int:
        return self.pipeline.retry_dead_letter_queue()

    def clear_dead_letter_queue(self) -> int:
        return self.pipeline.clear_dead_letter_queue()

    async def process_session_file(self, path: Path) -> int:
        return await self.session_worker.process_file(path)

    def reset_session_position(self, path: Path | str) -> bool:
        return self.session_worker.reset_position(path)

    def reset_all_session_positions(self) -> int:
        return self.session_worker.reset_all_positions()

    async def delete_session_embeddings(self, session_id: str) -> int:
        return await self.vector_store.delete_by_session_id(session_id)

    async def delete_source_embeddings(self, source_id: str) -> int:
        return await self.vector_store.delete_by_source_id(source_id)

    async def warmup_model(self) -> bool:
        return await self.model_client.warmup_model()

    async def unload_model(self) -> bool:
        return await self.model_client.unload_model()

    async def update_model_config(self, **overrides: Any) -> None:
        await self.model_client.update_config(**overrides)
        if "model" in overrides:
            self._check_model_version()

    def prune_cache(self, max_entries: int = 100_000, max_age_seconds: float | None = None) -> int:
        return self.cache.prune(max_entries=max_entries, max_age_seconds=max_age_seconds)

    def clear_cache(self) -> int:
        return self.cache.clear_all()

    def _check_model_version(self) -> None:
        digest = self.model_client.model_digest
        if not digest:
            return
        try:
            self.cache.check_model_version(self.model_client.model_name, digest)
        except (CacheError, sqlite3.Error) as exc:
            logger.warning("Could not verify the cached model version: %s", exc)

    def _sync_connection_status(self) -> None:
        health = self.vector_store.get_health()
        self.pipeline.update_connection_status(
            relational=health.relational.connected,
            qdrant=health.qdrant.connected,
        )

    async def _consume_pipeline_events(self) -> None:
        while True:
            batch = [await self.pipeline.events.get()]
            batch.extend(self.pipeline.events.drain())
            stop = any(event is _STOP_CONSUMER for event in batch)
            try:
                await self._dispatch([event for event in batch if event is not _STOP_CONSUMER])
            except Exception:
                logger.exception("Failed to handle %d pipeline event(s)", len(batch))
            if stop:
                return

    async def _dispatch(self, events: list[PipelineEvent]) -> None:
        pending: list[StoredEmbedding] = []
        for event in events:
            if event.kind == "result" and isinstance(event.payload, EmbeddingResult) and event.task is not None:
                pending.append(self._stored_from_result(event.payload, event.task))
            else:
                self.events.publish(event)
        if not pending:
            return
        stored = await self.vector_store.store_batch(pending)
        self._sync_connection_status()
        if stored < len(pending):
            logger.warning("Stored %d of %d pipeline result(s)", stored, len(pending))
        self.events.publish(
            PipelineEvent(
                kind="stored",
                payload={"stored": stored, "received": len(pending)},
            )
        )

    @staticmethod
    def _stored_from_result(result: EmbeddingResult, task: EmbeddingTask) -> StoredEmbedding:
        return build_stored_embedding(task.text, result.embedding, task.metadata, model=result.model)

    async def _stop_consumer(self) -> None:
        task, self._consumer_task = self._consumer_task, None
        if task is None:
            return
        self.pipeline.events.publish(_STOP_CONSUMER)
        await task
