from __future__ import annotations

from pathlib import Path

import pytest

from autoembed.core.errors import StorageError
from autoembed.core.hashing import content_hash
from autoembed.core.ids import stored_embedding_id
from autoembed.domain.models.chunk import ChunkMetadata, ContentType
from autoembed.domain.models.embedding import SearchOptions, StoredEmbedding
from autoembed.infrastructure.vector.qdrant_store import QdrantBackend
from autoembed.infrastructure.vector.sqlite_vec_store import SqliteVecBackend


def _stored(
    text: str,
    vector: list[float],
    *,
    source_id: str = "src-1",
    session_id: str | None = None,
    source_type: ContentType = ContentType.CONVERSATION,
    chunk_index: int = 0,
) -> StoredEmbedding:
    digest = content_hash(text)
    metadata = ChunkMetadata(
        source_id=source_id,
        source_type=source_type,
        chunk_index=chunk_index,
        total_chunks=chunk_index + 1,
        timestamp=1_700_000_000.0,
        session_id=session_id,
        project_path="/work/project",
    )
    return StoredEmbedding(
        id=stored_embedding_id(source_id, chunk_index, digest),
        content_hash=digest,
        content=text,
        embedding=vector,
        source_type=source_type,
        source_id=source_id,
        metadata=metadata,
        session_id=session_id,
    )


def _corpus() -> list[StoredEmbedding]:
    return [
        _stored("north", [1.0, 0.0, 0.0, 0.0], source_id="a", session_id="s1"),
        _stored("north-east", [0.9, 0.1, 0.0, 0.0], source_id="b", session_id="s1", source_type=ContentType.CODE),
        _stored("east", [0.0, 1.0, 0.0, 0.0], source_id="c", session_id="s2"),
    ]


async def _sqlite_backend(tmp_path: Path) -> SqliteVecBackend:
    backend = SqliteVecBackend(tmp_path / "vectors.db", dimensions=4)
    await backend.initialize()
    return backend


async def _qdrant_backend(tmp_path: Path) -> QdrantBackend:
    backend = QdrantBackend(dimensions=4, location=":memory:")
    await backend.initialize()
    return backend


BACKEND_FACTORIES = [
    pytest.param(_sqlite_backend, id="sqlite-vec"),
    pytest.param(_qdrant_backend, id="qdrant"),
]


@pytest.mark.asyncio
@pytest.mark.parametrize("factory", BACKEND_FACTORIES)
async def test_search_ranks_by_cosine_similarity(tmp_path: Path, factory) -> None:
    backend = await factory(tmp_path)
    assert await backend.upsert(_corpus()) == 3

    results = await backend.search([1.0, 0.0, 0.0, 0.0], SearchOptions(limit=5, threshold=0.5, include_content=True))
    await backend.close()

    assert [result.content for result in results] == ["north", "north-east"]
    assert results[0].score == pytest.approx(1.0, abs=1e-4)
    assert results[0].score >= results[1].score
    assert results[0].metadata.source_id == "a"
    assert results[0].metadata.project_path == "/work/project"


@pytest.mark.asyncio
@pytest.mark.parametrize("factory", BACKEND_FACTORIES)
async def test_search_applies_filters(tmp_path: Path, factory) -> None:
    backend = await factory(tmp_path)
    await backend.upsert(_corpus())

    by_type = await backend.search(
        [1.0, 1.0, 0.0, 0.0],
        SearchOptions(threshold=0.0, source_type=ContentType.CODE),
    )
    by_session = await backend.search([1.0, 1.0, 0.0, 0.0], SearchOptions(threshold=0.0, session_id="s2"))
    await backend.close()

    assert [result.metadata.source_id for result in by_type] == ["b"]
    assert [result.metadata.source_id for result in by_session] == ["c"]
    assert all(result.content is None for result in by_type)


@pytest.mark.asyncio
@pytest.mark.parametrize("factory", BACKEND_FACTORIES)
async def test_upsert_is_idempotent_and_delete_reports_count(tmp_path: Path, factory) -> None:
    backend = await factory(tmp_path)
    await backend.upsert(_corpus())
    await backend.upsert(_corpus())

    assert await backend.count() == 3
    assert await backend.delete(session_id="s1") == 2
    assert await backend.delete(source_id="missing") == 0
    assert await backend.count() == 1
    await backend.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("factory", BACKEND_FACTORIES)
async def test_delete_requires_exactly_one_selector(tmp_path: Path, factory) -> None:
    backend = await factory(tmp_path)
    with pytest.raises(ValueError):
        await backend.delete()
    with pytest.raises(ValueError):
        await backend.delete(source_id="a", session_id="s1")
    await backend.close()


@pytest.mark.asyncio
async def test_sqlite_vec_rejects_wrong_dimensions(tmp_path: Path) -> None:
    backend = await _sqlite_backend(tmp_path)

    with pytest.raises(StorageError):
        await backend.upsert([_stored("short", [1.0, 0.0])])
    with pytest.raises(StorageError):
        await backend.search([1.0], SearchOptions())


@pytest.mark.asyncio
async def test_sqlite_vec_refuses_database_with_other_dimensions(tmp_path: Path) -> None:
    backend = await _sqlite_backend(tmp_path)
    await backend.upsert(_corpus())

    reopened = SqliteVecBackend(tmp_path / "vectors.db", dimensions=8)
    with pytest.raises(StorageError):
        await reopened.initialize()


def test_qdrant_backend_needs_a_target() -> None:
    with pytest.raises(ValueError):
        QdrantBackend(dimensions=4)
