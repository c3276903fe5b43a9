from __future__ import annotations

import logging
import sqlite3
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from autoembed.core.errors import CacheError
from autoembed.core.hashing import embedding_cache_key
from autoembed.core.time import now_epoch
from autoembed.domain.models.status import CacheStats
from autoembed.infrastructure.db.sqlite import CACHE_SCHEMA_PATH, get_connection, initialize_schema

logger = logging.getLogger(__name__)

DEFAULT_PRUNE_MAX_ENTRIES = 100_000
# SQLite caps bound parameters per statement.
_LOOKUP_BATCH = 500


def encode_vector(vector: Sequence[float]) -> bytes:
    return struct.pack(f"<{len(vector)}d", *vector)


def decode_vector(blob: bytes) -> list[float]:
    count = len(blob) // 8
    return list(struct.unpack(f"<{count}d", blob))


@dataclass(slots=True)
class CacheWrite:
    text: str
    model: str
    embedding: list[float]
    model_digest: str | None = None


class EmbeddingCache:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        initialize_schema(db_path, CACHE_SCHEMA_PATH)
        self._conn: sqlite3.Connection | None = get_connection(db_path)
        self._hits = 0
        self._misses = 0

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise CacheError(f"Embedding cache at {self.db_path} is closed.")
        return self._conn

    def get(self, text: str, model: str) -> list[float] | None:
        row = self.conn.execute(
            "SELECT embedding FROM embedding_cache WHERE cache_key = ?",
            (embedding_cache_key(model, text),),
        ).fetchone()
        if row is None:
            self._misses += 1
            return None
        self._hits += 1
        return decode_vector(row["embedding"])

    def has(self, text: str, model: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM embedding_cache WHERE cache_key = ? LIMIT 1",
            (embedding_cache_key(model, text),),
        ).fetchone()
        return row is not None

    def set(
        self,
        text: str,
        model: str,
        embedding: Sequence[float],
        model_digest: str | None = None,
    ) -> None:
        if not embedding:
            raise CacheError("Refusing to cache an empty embedding.")
        with self.conn:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO embedding_cache (
                    cache_key, model, model_digest, embedding, dimensions, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    embedding_cache_key(model, text),
                    model,
                    model_digest,
                    encode_vector(embedding),
                    len(embedding),
                    now_epoch(),
                ),
            )

    def get_many(self, texts: Sequence[str], model: str) -> dict[str, list[float]]:
        """Look up several texts at once; the result is keyed by text, misses omitted."""
        keys = {embedding_cache_key(model, text): text for text in texts}
        found: dict[str, list[float]] = {}
        key_list = list(keys)
        for start in range(0, len(key_list), _LOOKUP_BATCH):
            batch = key_list[start : start + _LOOKUP_BATCH]
            placeholders = ", ".join("?" for _ in batch)
            rows = self.conn.execute(
                f"SELECT cache_key, embedding FROM embedding_cache WHERE cache_key IN ({placeholders})",
                batch,
            ).fetchall()
            for row in rows:
                found[keys[row["cache_key"]]] = decode_vector(row["embedding"])
        self._hits += len(found)
        self._misses += len(keys) - len(found)
        return found

    def set_many(self, entries: Iterable[CacheWrite]) -> int:
        now = now_epoch()
        rows = [
            (
                embedding_cache_key(entry.model, entry.text),
                entry.model,
                entry.model_digest,
                encode_vector(entry.embedding),
                len(entry.embedding),
                now,
            )
            for entry in entries
            if entry.embedding
        ]
        if not rows:
            return 0
        with self.conn:
            self.conn.executemany(
                """
                INSERT OR REPLACE INTO embedding_cache (
                    cache_key, model, model_digest, embedding, dimensions, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def delete(self, text: str, model: str) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                "DELETE FROM embedding_cache WHERE cache_key = ?",
                (embedding_cache_key(model, text),),
            )
        return cursor.rowcount > 0

    def clear_model(self, model: str) -> int:
        with self.conn:
            cursor = self.conn.execute("DELETE FROM embedding_cache WHERE model = ?", (model,))
        return cursor.rowcount

    def clear_all(self) -> int:
        with self.conn:
            cursor = self.conn.execute("DELETE FROM embedding_cache")
        self._hits = 0
        self._misses = 0
        return cursor.rowcount

    def prune(
        self,
        max_entries: int = DEFAULT_PRUNE_MAX_ENTRIES,
        max_age_seconds: float | None = None,
    ) -> int:
        deleted = 0
        with self.conn:
            if max_age_seconds is not None:
                cutoff = now_epoch() - max_age_seconds
                cursor = self.conn.execute("DELETE FROM embedding_cache WHERE created_at < ?", (cutoff,))
                deleted += cursor.rowcount

            total = int(self.conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0])
            if total > max_entries:
                cursor = self.conn.execute(
                    """
                    DELETE FROM embedding_cache
                    WHERE cache_key IN (
                        SELECT cache_key FROM embedding_cache
                        ORDER BY created_at ASC
                        LIMIT ?
                    )
                    """,
                    (total - max_entries,),
                )
                deleted += cursor.rowcount
        if deleted:
            logger.info("Pruned %d embedding cache entries", deleted)
        return deleted

    def check_model_version(self, model: str, digest: str) -> bool:
        """Record ``digest`` for ``model``; return True when a digest change purged stale entries."""
        row = self.conn.execute("SELECT digest FROM model_versions WHERE model = ?", (model,)).fetchone()
        now = now_epoch()
        if row is None:
            with self.conn:
                self.conn.execute(
                    "INSERT INTO model_versions (model, digest, updated_at) VALUES (?, ?, ?)",
                    (model, digest, now),
                )
            return False
        if row["digest"] == digest:
            return False

        with self.conn:
            cursor = self.conn.execute("DELETE FROM embedding_cache WHERE model = ?", (model,))
            self.conn.execute(
                "UPDATE model_versions SET digest = ?, updated_at = ? WHERE model = ?",
                (digest, now, model),
            )
        logger.warning(
            "Model %s changed digest (%s -> %s); invalidated %d cached embeddings",
            model,
            row["digest"],
            digest,
            cursor.rowcount,
        )
        return True

    def get_stats(self) -> CacheStats:
        row = self.conn.execute(
            "SELECT COUNT(*) AS entries, COALESCE(SUM(LENGTH(embedding)), 0) AS size FROM embedding_cache"
        ).fetchone()
        lookups = self._hits + self._misses
        return CacheStats(
            total_entries=int(row["entries"]),
            total_size=int(row["size"]),
            hit_count=self._hits,
            miss_count=self._misses,
            hit_rate=self._hits / lookups if lookups else 0.0,
        )

    def runtime_pragmas(self) -> dict[str, object]:
        journal_mode = self.conn.execute("PRAGMA journal_mode;").fetchone()[0]
        busy_timeout = self.conn.execute("PRAGMA busy_timeout;").fetchone()[0]
        synchronous = self.conn.execute("PRAGMA synchronous;").fetchone()[0]
        return {
            "journal_mode": str(journal_mode).lower(),
            "busy_timeout_ms": int(busy_timeout),
            "synchronous": int(synchronous),
        }

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
