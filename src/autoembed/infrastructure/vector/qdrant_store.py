from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Sequence

from autoembed.core.errors import StorageError
from autoembed.domain.models.chunk import ChunkMetadata
from autoembed.domain.models.embedding import SearchOptions, SearchResult, StoredEmbedding

logger = logging.getLogger(__name__)

_PAYLOAD_INDEX_FIELDS = ("source_type", "session_id", "source_id", "project_path")


class QdrantBackend:
    """Qdrant collection holding one point per stored embedding.

    ``url`` selects a Qdrant server; otherwise ``storage_path`` opens an
    embedded local store, and ``location=":memory:"`` an ephemeral one.
    """

    def __init__(
        self,
        *,
        dimensions: int,
        collection_name: str = "autoembed_embeddings",
        url: str | None = None,
        api_key: str | None = None,
        storage_path: Path | None = None,
        location: str | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        if dimensions < 1:
            raise ValueError("dimensions must be positive")
        if url is None and storage_path is None and location is None:
            raise ValueError("QdrantBackend needs a url, storage_path or location")
        self.dimensions = dimensions
        self.collection_name = collection_name
        self.server_url = url
        self.api_key = api_key
        self.storage_path = storage_path
        self.location = location
        self.timeout_seconds = timeout_seconds
        if url:
            self.name = "qdrant-server"
        elif location:
            self.name = "qdrant-memory"
        else:
            self.name = "qdrant-local"
        self._client = None
        self._models = None

    async def initialize(self) -> None:
        client, models = self._client_and_models()
        try:
            exists = bool(await client.collection_exists(collection_name=self.collection_name))
            if not exists:
                await client.create_collection(
                    collection_name=self.collection_name,
                    vectors_config=models.VectorParams(size=self.dimensions, distance=models.Distance.COSINE),
                    quantization_config=(
                        models.ScalarQuantization(
                            scalar=models.ScalarQuantizationConfig(type=models.ScalarType.INT8, always_ram=True)
                        )
                        if self.server_url
                        else None
                    ),
                )
                if self.server_url:
                    for field_name in _PAYLOAD_INDEX_FIELDS:
                        await client.create_payload_index(
                            collection_name=self.collection_name,
                            field_name=field_name,
                            field_schema=models.PayloadSchemaType.KEYWORD,
                        )
                logger.info("Created Qdrant collection %s (%d dims)", self.collection_name, self.dimensions)
                return

            info = await client.get_collection(collection_name=self.collection_name)
        except Exception as exc:
            await self.close()
            raise StorageError(f"Qdrant initialization failed: {exc}") from exc

        params = getattr(getattr(info, "config", None), "params", None)
        configured_dim = getattr(getattr(params, "vectors", None), "size", None)
        if configured_dim is not None and int(configured_dim) != self.dimensions:
            raise StorageError(
                f"Qdrant collection '{self.collection_name}' has vector size {configured_dim}, "
                f"but the backend is configured for {self.dimensions}."
            )

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.close()

    async def upsert(self, embeddings: Sequence[StoredEmbedding]) -> int:
        if not embeddings:
            return 0
        client, models = self._client_and_models()
        points = [
            models.PointStruct(id=item.id, vector=list(item.embedding), payload=self._payload(item))
            for item in embeddings
        ]
        try:
            await client.upsert(collection_name=self.collection_name, wait=True, points=points)
        except Exception as exc:
            raise StorageError(f"Qdrant upsert failed: {exc}") from exc
        return len(points)

    async def search(self, vector: Sequence[float], options: SearchOptions) -> list[SearchResult]:
        client, models = self._client_and_models()
        clauses = []
        if options.source_type is not None:
            clauses.append(
                models.FieldCondition(key="source_type", match=models.MatchValue(value=options.source_type.value))
            )
        if options.session_id:
            clauses.append(models.FieldCondition(key="session_id", match=models.MatchValue(value=options.session_id)))
        if options.project_path:
            clauses.append(
                models.FieldCondition(key="project_path", match=models.MatchValue(value=options.project_path))
            )
        try:
            response = await client.query_points(
                collection_name=self.collection_name,
                query=list(vector),
                query_filter=models.Filter(must=clauses) if clauses else None,
                score_threshold=options.threshold,
                with_payload=True,
                with_vectors=False,
                limit=max(1, options.limit),
            )
        except Exception as exc:
            raise StorageError(f"Qdrant search failed: {exc}") from exc

        out: list[SearchResult] = []
        for hit in getattr(response, "points", []) or []:
            payload = dict(getattr(hit, "payload", {}) or {})
            out.append(
                SearchResult(
                    id=str(getattr(hit, "id", "")),
                    score=float(getattr(hit, "score", 0.0)),
                    metadata=ChunkMetadata.from_dict(payload.get("metadata") or {}),
                    content=payload.get("content") if options.include_content else None,
                )
            )
        return out

    async def delete(self, *, source_id: str | None = None, session_id: str | None = None) -> int:
        if (source_id is None) == (session_id is None):
            raise ValueError("Pass exactly one of source_id or session_id")
        client, models = self._client_and_models()
        key, value = ("source_id", source_id) if source_id is not None else ("session_id", session_id)
        selector = models.Filter(must=[models.FieldCondition(key=key, match=models.MatchValue(value=value))])
        try:
            matched = await client.count(collection_name=self.collection_name, count_filter=selector, exact=True)
            if not matched.count:
                return 0
            await client.delete(
                collection_name=self.collection_name,
                points_selector=models.FilterSelector(filter=selector),
                wait=True,
            )
        except Exception as exc:
            raise StorageError(f"Qdrant delete failed: {exc}") from exc
        return int(matched.count)

    async def count(self) -> int:
        client, _ = self._client_and_models()
        try:
            result = await client.count(collection_name=self.collection_name, exact=True)
        except Exception as exc:
            raise StorageError(f"Qdrant count failed: {exc}") from exc
        return int(getattr(result, "count", 0))

    @staticmethod
    def _payload(item: StoredEmbedding) -> dict[str, Any]:
        return {
            "content_hash": item.content_hash,
            "content": item.content,
            "source_type": item.source_type.value,
            "source_id": item.source_id,
            "session_id": item.session_id,
            "project_path": item.project_path,
            "metadata": item.metadata.to_dict(),
            "created_at": item.created_at,
            "updated_at": item.updated_at,
        }

    def _client_and_models(self):
        if self._client is not None and self._models is not None:
            return self._client, self._models

        try:
            from qdrant_client import AsyncQdrantClient
            from qdrant_client.http import models
        except ImportError as exc:  # pragma: no cover - dependency guard
            raise StorageError("Qdrant dependency is missing. Install with `pip install qdrant-client`.") from exc

        if self.server_url:
            self._client = AsyncQdrantClient(
                url=self.server_url,
                api_key=self.api_key,
                timeout=int(self.timeout_seconds),
            )
        elif self.location:
            self._client = AsyncQdrantClient(location=self.location)
        else:
            target = self.storage_path.expanduser().resolve()
            target.mkdir(parents=True, exist_ok=True)
            self._client = AsyncQdrantClient(path=str(target))
        self._models = models
        return self._client, self._models
