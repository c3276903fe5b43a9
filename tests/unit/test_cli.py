from __future__ import annotations

import json
from pathlib import Path

import pytest

from autoembed.cli.main import main
from autoembed.core.config import load_paths
from autoembed.domain.models.chunk import ChunkMetadata, ContentType
from autoembed.domain.models.embedding import EmbeddingTask
from autoembed.domain.models.pipeline import DeadLetterItem
from autoembed.infrastructure.cache.embedding_cache import EmbeddingCache


def _dead_letter(key: str) -> dict:
    task = EmbeddingTask(
        idempotency_key=key,
        text="text that failed",
        metadata=ChunkMetadata(
            source_id="src",
            source_type=ContentType.TOOL_RESULT,
            chunk_index=0,
            total_chunks=1,
            timestamp=0.0,
        ),
    )
    return DeadLetterItem(original_task=task, error="model offline", attempt_count=3).to_dict()


def test_cache_stats_prune_and_clear(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    paths = load_paths(tmp_path)
    cache = EmbeddingCache(paths.cache_db_path)
    cache.set("a", "fake-embed", [1.0])
    cache.set("b", "fake-embed", [2.0])
    cache.set("c", "other-embed", [3.0])
    cache.close()

    assert main(["--home", str(tmp_path), "cache", "stats"]) == 0
    assert "Entries: 3" in capsys.readouterr().out

    assert main(["--home", str(tmp_path), "cache", "prune", "--max-entries", "2"]) == 0
    assert "Pruned 1 cache entry" in capsys.readouterr().out

    assert main(["--home", str(tmp_path), "cache", "clear", "--model", "other-embed"]) == 0
    out = capsys.readouterr().out
    assert "Cleared" in out


def test_dlq_list_and_clear_work_without_services(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    paths = load_paths(tmp_path)
    paths.dead_letter_path.parent.mkdir(parents=True, exist_ok=True)
    paths.dead_letter_path.write_text(
        json.dumps([_dead_letter("key-1"), _dead_letter("key-2")]),
        encoding="utf-8",
    )

    assert main(["--home", str(tmp_path), "dlq", "list"]) == 0
    out = capsys.readouterr().out
    assert "Dead-Letter Queue (2)" in out
    assert "key-1" in out

    assert main(["--home", str(tmp_path), "dlq", "clear"]) == 0
    assert "Cleared 2" in capsys.readouterr().out
    assert json.loads(paths.dead_letter_path.read_text(encoding="utf-8")) == []


def test_embed_requires_a_source(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        main(["--home", str(tmp_path), "embed"])
