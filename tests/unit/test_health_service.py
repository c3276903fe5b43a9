from __future__ import annotations

import json
from pathlib import Path

import pytest

from autoembed.application.services.health_service import HealthService
from autoembed.application.services.manager_service import EmbeddingManager
from autoembed.application.services.pipeline_service import EmbeddingPipeline
from autoembed.application.services.session_worker_service import SessionEmbeddingWorker
from autoembed.application.services.vector_store_service import VectorStore
from autoembed.core.config import AppPaths, OllamaConfig, VectorStoreConfig, load_paths
from autoembed.domain.models.status import OllamaStatus
from autoembed.infrastructure.cache.embedding_cache import EmbeddingCache
from autoembed.infrastructure.vector.chunking import ContentChunker
from autoembed.infrastructure.vector.sqlite_vec_store import SqliteVecBackend


class _FakeModelClient:
    def __init__(self, *, available: bool) -> None:
        self.config = OllamaConfig(base_url="http://fake-ollama:11434", model="fake-embed", dimensions=4)
        self.available = available
        self.model_digest = "sha256:fake" if available else None

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
            last_error=None if self.available else "connection refused",
        )


def _manager(paths: AppPaths, model: _FakeModelClient) -> EmbeddingManager:
    cache = EmbeddingCache(paths.cache_db_path)
    chunker = ContentChunker()
    pipeline = EmbeddingPipeline(
        model,
        cache,
        checkpoint_path=paths.checkpoint_path,
        dead_letter_path=paths.dead_letter_path,
    )
    return EmbeddingManager(
        model_client=model,
        cache=cache,
        chunker=chunker,
        pipeline=pipeline,
        vector_store=VectorStore(
            relational=SqliteVecBackend(paths.vector_db_path, dimensions=4),
            qdrant=None,
            config=VectorStoreConfig(enable_qdrant=False),
        ),
        session_worker=SessionEmbeddingWorker(
            pipeline,
            chunker,
            watch_root=paths.sessions_root,
            positions_path=paths.positions_path,
        ),
    )


@pytest.mark.asyncio
async def test_doctor_passes_for_basic_clean_state(tmp_path: Path) -> None:
    paths = load_paths(tmp_path / "home")
    manager = _manager(paths, _FakeModelClient(available=True))
    await manager.initialize()

    report = await HealthService(manager, paths).run_doctor()
    await manager.shutdown()

    assert report.ok is True
    assert report.checks_run == 5
    assert report.db_runtime["journal_mode"] == "wal"
    assert int(report.db_runtime["busy_timeout_ms"]) >= 30_000
    assert report.issues == []


@pytest.mark.asyncio
async def test_doctor_reports_unreachable_model_and_leftover_state(tmp_path: Path) -> None:
    paths = load_paths(tmp_path / "home")
    paths.state_dir.mkdir(parents=True, exist_ok=True)
    paths.checkpoint_path.write_text(json.dumps({"version": 99, "timestamp": 1.0}), encoding="utf-8")
    paths.dead_letter_path.write_text(json.dumps([{"error": "boom"}, {"error": "boom"}]), encoding="utf-8")
    manager = _manager(paths, _FakeModelClient(available=False))

    report = await HealthService(manager, paths).run_doctor()
    await manager.shutdown()

    by_check = {issue.check: issue for issue in report.issues}
    assert report.ok is False
    assert by_check["model_server"].level == "error"
    assert "connection refused" in by_check["model_server"].message
    assert by_check["checkpoint"].level == "warning"
    assert by_check["dead_letter_queue"].level == "warning"
    assert by_check["dead_letter_queue"].message.startswith("2 task(s)")
    assert by_check["vector_store"].level == "error"


@pytest.mark.asyncio
async def test_doctor_flags_corrupt_state_file(tmp_path: Path) -> None:
    paths = load_paths(tmp_path / "home")
    paths.state_dir.mkdir(parents=True, exist_ok=True)
    paths.checkpoint_path.write_text("{not json", encoding="utf-8")
    manager = _manager(paths, _FakeModelClient(available=True))
    await manager.initialize()

    report = await HealthService(manager, paths).run_doctor()
    await manager.shutdown()

    assert report.ok is False
    assert [issue.check for issue in report.issues] == ["checkpoint"]
