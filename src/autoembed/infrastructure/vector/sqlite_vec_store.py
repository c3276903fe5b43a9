from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence, TypeVar

import sqlite_vec

from autoembed.core.errors import StorageError
from autoembed.domain.models.chunk import ChunkMetadata
from autoembed.domain.models.embedding import SearchOptions, SearchResult, StoredEmbedding
from autoembed.infrastructure.db.sqlite import (
    VECTOR_SCHEMA_PATH,
    ensure_vec_table,
    get_connection,
    initialize_schema,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

VEC_TABLE = "embeddings_vec"
# vec0 rejects KNN queries with k above this.
MAX_KNN = 4096


class SqliteVecBackend:
    name = "sqlite-vec"

    def __init__(self, db_path: Path, *, dimensions: int) -> None:
        if dimensions < 1:
            raise ValueError("dimensions must be positive")
        self.db_path = db_path
        self.dimensions = dimensions

    async def initialize(self) -> None:
        await self._run(self._initialize_sync)

    async def close(self) -> None:
        return None

    async def upsert(self, embeddings: Sequence[StoredEmbedding]) -> int:
        if not embeddings:
            return 0
        return await self._run(self._upsert_sync, list(embeddings))

    async def search(self, vector: Sequence[float], options: SearchOptions) -> list[SearchResult]:
        return await self._run(self._search_sync, list(vector), options)

    async def delete(self, *, source_id: str | None = None, session_id: str | None = None) -> int:
        if (source_id is None) == (session_id is None):
            raise ValueError("Pass exactly one of source_id or session_id")
        column, value = ("source_id", source_id) if source_id is not None else ("session_id", session_id)
        return await self._run(self._delete_sync, column, value)

    async def count(self) -> int:
        return await self._run(self._count_sync)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            raise StorageError(f"{self.name} backend error: {exc}") from exc

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = get_connection(self.db_path, load_vector_extension=True)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _initialize_sync(self) -> None:
        initialize_schema(self.db_path, VECTOR_SCHEMA_PATH)
        with self._session() as conn:
            row = conn.execute("SELECT dimensions FROM embeddings LIMIT 1").fetchone()
            if row is not None and int(row["dimensions"]) != self.dimensions:
                raise StorageError(
                    f"{self.db_path} holds {row['dimensions']}-dimensional vectors, "
                    f"but the backend is configured for {self.dimensions}."
                )
            ensure_vec_table(conn, VEC_TABLE, self.dimensions)
        logger.info("sqlite-vec store ready at %s (%d dims)", self.db_path, self.dimensions)

    def _upsert_sync(self, embeddings: list[StoredEmbedding]) -> int:
        for item in embeddings:
            if len(item.embedding) != self.dimensions:
                raise StorageError(
                    f"Embedding {item.id} has {len(item.embedding)} dims, expected {self.dimensions}"
                )
        with self._session() as conn:
            for item in embeddings:
                conn.execute(
                    """
                    INSERT INTO embeddings (
                        id, content_hash, content, source_type, source_id, session_id,
                        project_path, metadata_json, dimensions, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        content_hash = excluded.content_hash,
                        content = excluded.content,
                        metadata_json = excluded.metadata_json,
                        updated_at = excluded.updated_at
                    """,
                    (
                        item.id,
                        item.content_hash,
                        item.content,
                        item.source_type.value,
                        item.source_id,
                        item.session_id,
                        item.project_path,
                        json.dumps(item.metadata.to_dict(), ensure_ascii=False),
                        len(item.embedding),
                        item.created_at,
                        item.updated_at,
                    ),
                )
                row_id = conn.execute("SELECT row_id FROM embeddings WHERE id = ?", (item.id,)).fetchone()[0]
                conn.execute(f"DELETE FROM {VEC_TABLE} WHERE rowid = ?", (row_id,))
                conn.execute(
                    f"""
                    INSERT INTO {VEC_TABLE} (rowid, embedding, source_type, session_id, project_path)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        row_id,
                        sqlite_vec.serialize_float32(item.embedding),
                        item.source_type.value,
                        item.session_id or "",
                        item.project_path or "",
                    ),
                )
        return len(embeddings)

    def _search_sync(self, vector: list[float], options: SearchOptions) -> list[SearchResult]:
        if len(vector) != self.dimensions:
            raise StorageError(f"Query vector has {len(vector)} dims, expected {self.dimensions}")
        clauses = ["embedding MATCH ?", "k = ?"]
        params: list[Any] = [sqlite_vec.serialize_float32(vector), min(max(1, options.limit), MAX_KNN)]
        if options.source_type is not None:
            clauses.append("source_type = ?")
            params.append(options.source_type.value)
        if options.session_id:
            clauses.append("session_id = ?")
            params.append(options.session_id)
        if options.project_path:
            clauses.append("project_path = ?")
            params.append(options.project_path)

        with self._session() as conn:
            hits = conn.execute(
                f"SELECT rowid, distance FROM {VEC_TABLE} WHERE {' AND '.join(clauses)} ORDER BY distance",
                params,
            ).fetchall()
            scores = {
                int(hit["rowid"]): 1.0 - float(hit["distance"])
                for hit in hits
                if 1.0 - float(hit["distance"]) >= options.threshold
            }
            if not scores:
                return []
            placeholders = ", ".join("?" for _ in scores)
            rows = conn.execute(
                f"SELECT row_id, id, content, metadata_json FROM embeddings WHERE row_id IN ({placeholders})",
                list(scores),
            ).fetchall()

        results = [
            SearchResult(
                id=row["id"],
                score=scores[int(row["row_id"])],
                metadata=ChunkMetadata.from_dict(json.loads(row["metadata_json"])),
                content=row["content"] if options.include_content else None,
            )
            for row in rows
        ]
        results.sort(key=lambda result: result.score, reverse=True)
        return results

    def _delete_sync(self, column: str, value: str) -> int:
        with self._session() as conn:
            row_ids = [
                int(row["row_id"])
                for row in conn.execute(f"SELECT row_id FROM embeddings WHERE {column} = ?", (value,))
            ]
            conn.executemany(f"DELETE FROM {VEC_TABLE} WHERE rowid = ?", [(row_id,) for row_id in row_ids])
            cursor = conn.execute(f"DELETE FROM embeddings WHERE {column} = ?", (value,))
        return cursor.rowcount

    def _count_sync(self) -> int:
        with self._session() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0])
