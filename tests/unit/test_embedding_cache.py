from __future__ import annotations

import random
from pathlib import Path

import pytest

from autoembed.core.errors import CacheError
from autoembed.infrastructure.cache.embedding_cache import CacheWrite, EmbeddingCache


MODEL = "mxbai-embed-large"


@pytest.mark.parametrize("dims", [1, 3, 384, 1024, 4096])
def test_vectors_come_back_exactly(tmp_path: Path, dims: int) -> None:
    cache = EmbeddingCache(tmp_path / "cache.db")
    rng = random.Random(dims)
    vector = [rng.uniform(-1.0, 1.0) for _ in range(dims)]

    cache.set("some text", MODEL, vector)

    assert cache.get("some text", MODEL) == vector
    cache.close()


def test_lookup_is_scoped_by_model(tmp_path: Path) -> None:
    cache = EmbeddingCache(tmp_path / "cache.db")
    cache.set("hello", MODEL, [0.1, 0.2])

    assert cache.has("hello", MODEL)
    assert not cache.has("hello", "nomic-embed-text")
    assert cache.get("hello", "nomic-embed-text") is None


def test_empty_embedding_is_rejected(tmp_path: Path) -> None:
    cache = EmbeddingCache(tmp_path / "cache.db")
    with pytest.raises(CacheError):
        cache.set("hello", MODEL, [])


def test_get_many_omits_misses_and_counts_hits(tmp_path: Path) -> None:
    cache = EmbeddingCache(tmp_path / "cache.db")
    written = cache.set_many(
        [
            CacheWrite(text="a", model=MODEL, embedding=[1.0]),
            CacheWrite(text="b", model=MODEL, embedding=[2.0]),
            CacheWrite(text="empty", model=MODEL, embedding=[]),
        ]
    )

    found = cache.get_many(["a", "b", "c"], MODEL)
    stats = cache.get_stats()

    assert written == 2
    assert found == {"a": [1.0], "b": [2.0]}
    assert stats.total_entries == 2
    assert stats.hit_count == 2
    assert stats.miss_count == 1
    assert stats.hit_rate == pytest.approx(2 / 3)
    assert stats.total_size == 16


def test_prune_keeps_newest_entries(tmp_path: Path, monkeypatch) -> None:
    cache = EmbeddingCache(tmp_path / "cache.db")
    clock = iter([100.0, 200.0, 300.0, 400.0])
    monkeypatch.setattr("autoembed.infrastructure.cache.embedding_cache.now_epoch", lambda: next(clock))
    cache.set("first", MODEL, [1.0])
    cache.set("second", MODEL, [2.0])
    cache.set("third", MODEL, [3.0])

    deleted = cache.prune(max_entries=2)

    assert deleted == 1
    assert not cache.has("first", MODEL)
    assert cache.has("second", MODEL)
    assert cache.has("third", MODEL)


def test_prune_drops_entries_older_than_max_age(tmp_path: Path, monkeypatch) -> None:
    cache = EmbeddingCache(tmp_path / "cache.db")
    times = {"now": 1_000.0}
    monkeypatch.setattr("autoembed.infrastructure.cache.embedding_cache.now_epoch", lambda: times["now"])
    cache.set("old", MODEL, [1.0])
    times["now"] = 5_000.0
    cache.set("fresh", MODEL, [2.0])

    deleted = cache.prune(max_entries=100, max_age_seconds=1_000)

    assert deleted == 1
    assert cache.has("fresh", MODEL)
    assert not cache.has("old", MODEL)


def test_digest_change_invalidates_only_that_model(tmp_path: Path) -> None:
    cache = EmbeddingCache(tmp_path / "cache.db")
    cache.set("a", MODEL, [1.0])
    cache.set("a", "other-model", [2.0])

    assert cache.check_model_version(MODEL, "sha256:one") is False
    assert cache.check_model_version(MODEL, "sha256:one") is False
    assert cache.has("a", MODEL)

    assert cache.check_model_version(MODEL, "sha256:two") is True
    assert not cache.has("a", MODEL)
    assert cache.has("a", "other-model")


def test_clear_model_and_clear_all(tmp_path: Path) -> None:
    cache = EmbeddingCache(tmp_path / "cache.db")
    cache.set("a", MODEL, [1.0])
    cache.set("b", MODEL, [1.0])
    cache.set("a", "other-model", [2.0])

    assert cache.clear_model(MODEL) == 2
    assert cache.clear_all() == 1
    assert cache.get_stats().total_entries == 0


def test_entries_survive_reopen(tmp_path: Path) -> None:
    db_path = tmp_path / "cache.db"
    first = EmbeddingCache(db_path)
    first.set("persisted", MODEL, [0.5, -0.25])
    first.close()

    second = EmbeddingCache(db_path)
    assert second.get("persisted", MODEL) == [0.5, -0.25]


def test_closed_cache_raises(tmp_path: Path) -> None:
    cache = EmbeddingCache(tmp_path / "cache.db")
    cache.close()
    with pytest.raises(CacheError):
        cache.get("a", MODEL)


def test_runtime_pragmas_report_wal(tmp_path: Path) -> None:
    cache = EmbeddingCache(tmp_path / "cache.db")
    pragmas = cache.runtime_pragmas()
    assert pragmas["journal_mode"] == "wal"
    assert int(pragmas["busy_timeout_ms"]) > 0
